"""Tests for task complexity estimation and the routing metrics windows."""

from __future__ import annotations

import pytest

from dlx_orchestrator.models.conversation import Message
from dlx_orchestrator.models.provider import UseCase
from dlx_orchestrator.models.routing import ComplexityLevel
from dlx_orchestrator.routing import ComplexityEstimator, RoutingMetrics

ARCHITECTURE_REQUEST = (
    "Please design a scalable microservice architecture for our order pipeline. "
    "```python\nclass OrderService:\n    pass\n```\n"
    + "The system handles payments, inventory and shipping events. " * 9
)


class TestComplexityEstimator:
    @pytest.fixture
    def estimator(self):
        return ComplexityEstimator()

    def test_trivial_edit_is_simple(self, estimator):
        result = estimator.estimate("fix typo in README")

        assert result.level == ComplexityLevel.SIMPLE
        assert result.score == 0.0
        assert result.factors["simple_vocabulary"] == -20.0
        # Floored per level
        assert result.estimated_tokens == 300

    def test_architecture_request_is_at_least_complex(self, estimator):
        assert len(ARCHITECTURE_REQUEST) >= 600
        result = estimator.estimate(ARCHITECTURE_REQUEST)

        assert result.level in (ComplexityLevel.COMPLEX, ComplexityLevel.EXPERT)
        assert result.score >= 50.0
        assert result.factors["code_fence"] == 15.0
        assert result.factors["complex_vocabulary"] == 40.0
        assert result.factors["length"] == 25.0

    def test_analysis_question_is_moderate(self, estimator):
        result = estimator.estimate("Analyze and compare the performance of these two query plans")
        assert result.level == ComplexityLevel.MODERATE

    def test_keywords_match_word_prefixes(self, estimator):
        assert estimator.estimate("designs").factors["complex_vocabulary"] == 10.0
        assert estimator.estimate("redesign").factors["complex_vocabulary"] == 0.0

    def test_expert_vocabulary_counted_once(self, estimator):
        result = estimator.estimate("advanced machine learning algorithm")
        assert result.factors["expert_vocabulary"] == 20.0

    def test_score_clamped_to_range(self, estimator):
        result = estimator.estimate(
            ARCHITECTURE_REQUEST + " implement build create advanced algorithm"
        )
        assert result.score == 100.0
        assert result.level == ComplexityLevel.EXPERT

    def test_history_uses_newest_user_message(self, estimator):
        history = [
            Message.user(ARCHITECTURE_REQUEST),
            Message.assistant("Here is a design..."),
            Message.user("fix typo in README"),
        ]
        assert estimator.estimate_history(history).level == ComplexityLevel.SIMPLE

    def test_history_without_user_message(self, estimator):
        result = estimator.estimate_history([Message.system("Be brief.")])
        assert result.score == 0.0

    @pytest.mark.parametrize(
        ("score", "level"),
        [
            (0.0, ComplexityLevel.SIMPLE),
            (24.9, ComplexityLevel.SIMPLE),
            (25.0, ComplexityLevel.MODERATE),
            (50.0, ComplexityLevel.COMPLEX),
            (75.0, ComplexityLevel.EXPERT),
        ],
    )
    def test_level_bands(self, estimator, score, level):
        assert estimator.level_for(score) == level


class TestConstraintsForComplexity:
    def test_simple_prefers_local(self):
        complexity = ComplexityEstimator().estimate("fix typo in README")
        constraints = ComplexityEstimator.constraints_for(complexity)

        assert constraints.prefer_local is True
        assert constraints.min_context_window is None
        assert constraints.prefer_capability is False

    def test_complex_prefers_capability(self):
        complexity = ComplexityEstimator().estimate(ARCHITECTURE_REQUEST)
        constraints = ComplexityEstimator.constraints_for(complexity, UseCase.CODING)

        assert constraints.prefer_local is False
        assert constraints.prefer_capability is True
        assert constraints.min_context_window >= 16_000
        assert constraints.use_case == UseCase.CODING


class TestRoutingMetrics:
    def test_no_history_reports_none(self):
        metrics = RoutingMetrics()
        assert metrics.success_rate("p", "m") is None
        assert metrics.average_latency("p", "m") is None
        assert metrics.performance("p", "m") is None

    def test_success_rate_over_trailing_window(self):
        metrics = RoutingMetrics(window_size=4)
        for _ in range(4):
            metrics.record_outcome("p", "m", success=False, latency_ms=0.0)
        for _ in range(3):
            metrics.record_outcome("p", "m", success=True, latency_ms=100.0)

        # Only the newest four outcomes count: 3 successes, 1 failure
        assert metrics.success_rate("p", "m") == 0.75

    def test_average_latency_ignores_failures(self):
        metrics = RoutingMetrics()
        metrics.record_outcome("p", "m", success=True, latency_ms=100.0)
        metrics.record_outcome("p", "m", success=True, latency_ms=300.0)
        metrics.record_outcome("p", "m", success=False, latency_ms=5000.0)

        assert metrics.average_latency("p", "m") == 200.0

    def test_snapshot_sorted_and_reset(self):
        metrics = RoutingMetrics()
        metrics.record_outcome("b", "m", success=True, latency_ms=1.0)
        metrics.record_outcome("a", "m", success=True, latency_ms=1.0)

        assert [p.provider_id for p in metrics.snapshot()] == ["a", "b"]
        metrics.reset()
        assert metrics.snapshot() == []
