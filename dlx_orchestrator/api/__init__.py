"""HTTP surface: a thin FastAPI wrapper around Orchestrator."""
