"""Unit tests for the shared model invocation fallback engine."""
import asyncio

import pytest

from scene_assistant.core.exceptions import ProviderError, QuotaExhaustedError, RateLimitError
from scene_assistant.services.model_orchestrator import (
    CandidateChain, FailureClass, FailureKind, ModelInvoker, QuotaAwareClassifier, parse_retry_delay,
)


class ScriptedCall:
    """Fake candidate call: each model maps to a list of outcomes consumed in order."""

    def __init__(self, script):
        self.script = {model: list(outcomes) for model, outcomes in script.items()}
        self.calls = []

    async def __call__(self, model, payload):
        self.calls.append(model)
        outcome = self.script[model].pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def chain(*models, timeout=5.0, backoff=0.5, **kwargs):
    return CandidateChain("test", models, timeout, backoff, **kwargs)


class TestParseRetryDelay:

    @pytest.mark.parametrize("message,expected", [
        ('{"retryDelay": "34s"}', 34),
        ("Please retry in 34.07s.", 35),
        ("'retryDelay': '7s'", 7),
        ("quota exceeded, no hint", None),
        ("", None),
    ])
    def test_parses_provider_formats(self, message, expected):
        assert parse_retry_delay(message) == expected


class TestQuotaAwareClassifier:

    def test_rate_limit_error_carries_delay(self):
        failure = QuotaAwareClassifier().classify(RateLimitError("busy", retry_after=12))
        assert failure == FailureClass(FailureKind.RATE_LIMITED, 12)

    def test_resource_exhausted_text_is_rate_signal(self):
        failure = QuotaAwareClassifier().classify(Exception('429 RESOURCE_EXHAUSTED {"retryDelay": "3s"}'))
        assert failure.kind is FailureKind.RATE_LIMITED
        assert failure.retry_after == 3

    def test_other_errors_are_plain_failures(self):
        assert QuotaAwareClassifier().classify(ValueError("bad json")).kind is FailureKind.FAILED


class TestCandidateChain:

    def test_empty_candidate_list_rejected(self):
        with pytest.raises(ValueError):
            CandidateChain("detection", (), 8.0, 0.5)


class TestModelInvoker:

    @pytest.mark.asyncio
    async def test_first_success_wins_without_further_calls(self, invoker, sleep_recorder):
        call = ScriptedCall({"a": ["from-a"], "b": ["from-b"]})

        result = await invoker.invoke(chain("a", "b"), call, "payload")

        assert result.output == "from-a"
        assert result.model == "a"
        assert result.attempts == 1
        assert call.calls == ["a"]
        assert sleep_recorder.calls == []

    @pytest.mark.asyncio
    async def test_advances_after_failure_with_backoff(self, invoker, sleep_recorder):
        call = ScriptedCall({"a": [ValueError("malformed")], "b": ["from-b"], "c": ["from-c"]})

        result = await invoker.invoke(chain("a", "b", "c", backoff=0.3), call)

        assert result.output == "from-b"
        assert call.calls == ["a", "b"]
        assert sleep_recorder.calls == [0.3]

    @pytest.mark.asyncio
    async def test_all_fail_tries_each_candidate_once(self, invoker, sleep_recorder):
        errors = {m: [RuntimeError(f"{m} down")] for m in ("a", "b", "c")}
        call = ScriptedCall(errors)

        with pytest.raises(ProviderError) as exc_info:
            await invoker.invoke(chain("a", "b", "c"), call)

        assert not isinstance(exc_info.value, QuotaExhaustedError)
        assert call.calls == ["a", "b", "c"]
        assert exc_info.value.attempts == 3
        assert str(exc_info.value.last_error) == "c down"
        # No backoff after the final candidate
        assert sleep_recorder.calls == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_short_retry_delay_retries_same_candidate_once(self, invoker, sleep_recorder):
        call = ScriptedCall({"a": [RateLimitError("429", retry_after=5), "second-try"], "b": ["from-b"]})

        result = await invoker.invoke(chain("a", "b"), call)

        assert result.output == "second-try"
        assert result.model == "a"
        assert call.calls == ["a", "a"]
        assert sleep_recorder.calls == [5]

    @pytest.mark.asyncio
    async def test_same_candidate_retried_at_most_once(self, invoker, sleep_recorder):
        call = ScriptedCall({
            "a": [RateLimitError("429", retry_after=2), RateLimitError("429", retry_after=2)],
            "b": ["from-b"],
        })

        result = await invoker.invoke(chain("a", "b", backoff=0.5), call)

        assert result.model == "b"
        assert call.calls == ["a", "a", "b"]
        assert sleep_recorder.calls == [2, 0.5]

    @pytest.mark.asyncio
    async def test_delay_above_ceiling_advances_immediately(self, invoker, sleep_recorder):
        call = ScriptedCall({"a": [RateLimitError("429", retry_after=90)], "b": ["from-b"]})

        result = await invoker.invoke(chain("a", "b"), call)

        assert result.model == "b"
        assert call.calls == ["a", "b"]
        assert 90 not in sleep_recorder.calls

    @pytest.mark.asyncio
    async def test_all_rate_limited_raises_quota_exhausted(self, invoker):
        call = ScriptedCall({"a": [RateLimitError("429")], "b": [RateLimitError("429", retry_after=120)]})

        with pytest.raises(QuotaExhaustedError) as exc_info:
            await invoker.invoke(chain("a", "b"), call)

        assert exc_info.value.retry_after == 120
        assert call.calls == ["a", "b"]

    @pytest.mark.asyncio
    async def test_mixed_failures_raise_provider_error(self, invoker):
        call = ScriptedCall({"a": [RateLimitError("429")], "b": [ValueError("garbled")]})

        with pytest.raises(ProviderError) as exc_info:
            await invoker.invoke(chain("a", "b"), call)

        assert not isinstance(exc_info.value, QuotaExhaustedError)

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, sleep_recorder):
        invoker = ModelInvoker(sleep=sleep_recorder)

        async def call(model, payload):
            if model == "slow":
                await asyncio.sleep(5)
            return model

        result = await invoker.invoke(chain("slow", "fast", timeout=0.01), call)

        assert result.model == "fast"

    @pytest.mark.asyncio
    async def test_candidates_are_never_called_concurrently(self, invoker):
        in_flight = 0
        peak = 0

        async def call(model, payload):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            raise RuntimeError("down")

        with pytest.raises(ProviderError):
            await invoker.invoke(chain("a", "b", "c", "d"), call)

        assert peak == 1

    @pytest.mark.asyncio
    async def test_pluggable_classifier(self, invoker, sleep_recorder):
        class AlwaysRetry:
            def classify(self, error):
                return FailureClass(FailureKind.RATE_LIMITED, 1)

        call = ScriptedCall({"a": [ValueError("x"), "ok"]})

        result = await invoker.invoke(chain("a", classifier=AlwaysRetry()), call)

        assert result.output == "ok"
        assert sleep_recorder.calls == [1]

    @pytest.mark.asyncio
    async def test_elapsed_uses_injected_clock(self, sleep_recorder):
        ticks = iter([10.0, 12.5])
        invoker = ModelInvoker(sleep=sleep_recorder, clock=lambda: next(ticks))

        result = await invoker.invoke(chain("a"), ScriptedCall({"a": ["ok"]}))

        assert result.elapsed == pytest.approx(2.5)
