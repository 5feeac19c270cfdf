"""Provider calls and streamed output handling."""

from dlx_orchestrator.llm.channel import ChannelClosedError, FragmentChannel
from dlx_orchestrator.llm.executor import RequestExecutor
from dlx_orchestrator.llm.stream_optimizer import (
    BufferConfig,
    StreamMetrics,
    StreamOptimizer,
    optimize_stream,
)

__all__ = [
    "BufferConfig",
    "ChannelClosedError",
    "FragmentChannel",
    "RequestExecutor",
    "StreamMetrics",
    "StreamOptimizer",
    "optimize_stream",
]
