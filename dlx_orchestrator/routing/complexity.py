"""Task complexity estimation for model routing.

The ComplexityEstimator scores the newest user message on a 0-100 scale
from additive heuristic signals:

Factors analyzed:
- Message length
- "Complex" vocabulary (architecture, scalable, optimize, ...)
- Expert vocabulary (algorithm, machine learning, ...)
- Code fences
- Action verbs (implement, build, create, ...)
- "Simple" vocabulary (fix, typo, rename, ...) subtracts

Score -> level mapping:
- 0-25:   simple
- 25-50:  moderate
- 50-75:  complex
- 75-100: expert

The level tunes routing constraints: simple work prefers local models,
harder work asks for larger context windows and ranks capability first.
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence

import structlog

from dlx_orchestrator.models.conversation import Message, Role
from dlx_orchestrator.models.provider import UseCase
from dlx_orchestrator.models.routing import ComplexityLevel, RoutingConstraints, TaskComplexity

log = structlog.get_logger(__name__)

TOKENS_PER_CHAR = 0.75

# Minimum estimated tokens per level
_MIN_TOKENS = {
    ComplexityLevel.SIMPLE: 300,
    ComplexityLevel.MODERATE: 0,
    ComplexityLevel.COMPLEX: 1000,
    ComplexityLevel.EXPERT: 2000,
}

# Minimum context window requested per level (soft constraint)
_MIN_CONTEXT = {
    ComplexityLevel.SIMPLE: None,
    ComplexityLevel.MODERATE: 8_000,
    ComplexityLevel.COMPLEX: 16_000,
    ComplexityLevel.EXPERT: 32_000,
}

_CODE_FENCE_RE = re.compile(r"```")


class ComplexityEstimator:
    """Estimates task complexity using additive keyword and length signals."""

    MODERATE_THRESHOLD = 25.0
    COMPLEX_THRESHOLD = 50.0
    EXPERT_THRESHOLD = 75.0

    # 1 point per 20 characters
    LENGTH_DIVISOR = 20.0
    LENGTH_CAP = 25.0

    COMPLEX_KEYWORDS = (
        "architecture",
        "optimize",
        "scalable",
        "scalability",
        "microservice",
        "distributed",
        "design",
        "analyze",
        "compare",
        "research",
        "comprehensive",
        "detailed",
        "concurrency",
        "performance",
        "security",
    )
    COMPLEX_WEIGHT = 10.0
    COMPLEX_CAP = 40.0

    EXPERT_KEYWORDS = ("algorithm", "optimization", "machine learning", "advanced")
    EXPERT_WEIGHT = 20.0

    ACTION_VERBS = ("implement", "build", "create", "develop", "integrate", "migrate")
    ACTION_WEIGHT = 5.0
    ACTION_CAP = 15.0

    CODE_FENCE_WEIGHT = 15.0

    SIMPLE_KEYWORDS = (
        "fix",
        "typo",
        "rename",
        "simple",
        "quick",
        "small",
        "minor",
        "hello",
        "list",
        "format",
    )
    SIMPLE_WEIGHT = 10.0
    SIMPLE_CAP = 30.0

    def __init__(self) -> None:
        self._complex = _keyword_patterns(self.COMPLEX_KEYWORDS)
        self._expert = _keyword_patterns(self.EXPERT_KEYWORDS)
        self._actions = _keyword_patterns(self.ACTION_VERBS)
        self._simple = _keyword_patterns(self.SIMPLE_KEYWORDS)

    def estimate(self, message: str) -> TaskComplexity:
        """Score a single message.

        Args:
            message: Text to analyze (normally the newest user message)

        Returns:
            TaskComplexity with score, level, factor breakdown and
            estimated token count
        """
        factors: dict[str, float] = {
            "length": min(len(message) / self.LENGTH_DIVISOR, self.LENGTH_CAP),
            "complex_vocabulary": min(
                _count(self._complex, message) * self.COMPLEX_WEIGHT, self.COMPLEX_CAP
            ),
            "expert_vocabulary": (
                self.EXPERT_WEIGHT if _count(self._expert, message) else 0.0
            ),
            "code_fence": self.CODE_FENCE_WEIGHT if _CODE_FENCE_RE.search(message) else 0.0,
            "action_verbs": min(
                _count(self._actions, message) * self.ACTION_WEIGHT, self.ACTION_CAP
            ),
            "simple_vocabulary": -min(
                _count(self._simple, message) * self.SIMPLE_WEIGHT, self.SIMPLE_CAP
            ),
        }

        score = max(0.0, min(100.0, sum(factors.values())))
        level = self.level_for(score)
        estimated_tokens = max(math.ceil(len(message) * TOKENS_PER_CHAR), _MIN_TOKENS[level])

        log.debug(
            "complexity.estimated",
            score=round(score, 2),
            level=level.value,
            factors=factors,
            estimated_tokens=estimated_tokens,
        )

        return TaskComplexity(
            score=score,
            level=level,
            factors=factors,
            estimated_tokens=estimated_tokens,
        )

    def estimate_history(self, history: Sequence[Message]) -> TaskComplexity:
        """Score the newest user message of a conversation (empty if none)."""
        newest = next((m for m in reversed(history) if m.role == Role.USER), None)
        return self.estimate(newest.content if newest else "")

    def level_for(self, score: float) -> ComplexityLevel:
        if score < self.MODERATE_THRESHOLD:
            return ComplexityLevel.SIMPLE
        if score < self.COMPLEX_THRESHOLD:
            return ComplexityLevel.MODERATE
        if score < self.EXPERT_THRESHOLD:
            return ComplexityLevel.COMPLEX
        return ComplexityLevel.EXPERT

    @staticmethod
    def constraints_for(
        complexity: TaskComplexity,
        use_case: UseCase | None = None,
    ) -> RoutingConstraints:
        """Routing constraints scoped to a complexity level."""
        level = complexity.level
        return RoutingConstraints(
            use_case=use_case,
            min_context_window=_MIN_CONTEXT[level],
            prefer_local=level == ComplexityLevel.SIMPLE,
            prefer_capability=level in (ComplexityLevel.COMPLEX, ComplexityLevel.EXPERT),
        )


def _keyword_patterns(keywords: Sequence[str]) -> list[re.Pattern[str]]:
    # Word-boundary prefix match so inflections ("designs", "optimized") count
    return [re.compile(rf"\b{re.escape(k)}", re.IGNORECASE) for k in keywords]


def _count(patterns: list[re.Pattern[str]], text: str) -> int:
    """Number of distinct keywords present."""
    return sum(1 for pattern in patterns if pattern.search(text))
