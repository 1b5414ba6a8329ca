"""
Tests for ModelGateway retry, timeout and circuit breaker behavior.

The Anthropic client is replaced by a scripted fake that raises the SDK's
real exception types.
"""

import asyncio
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from teamflow.agents.metrics import MetricsCollector
from teamflow.errors import ModelRejected, ModelUnavailable
from teamflow.gateway import (
    CircuitBreaker,
    CircuitState,
    GatewayConfig,
    ModelGateway,
    append_user_message,
    is_transient,
    turns_to_messages,
)
from teamflow.records import ConversationTurn, Role

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
MESSAGES = [{"role": "user", "content": "hello"}]


def status_error(cls, code, message="upstream said no"):
    return cls(message, response=httpx.Response(code, request=REQUEST), body=None)


def text_response(*parts):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=p) for p in parts])


class FakeMessages:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if callable(outcome):
            outcome = await outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeClient:
    def __init__(self, *outcomes):
        self.messages = FakeMessages(outcomes)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_gateway(client, sleeps=None, clock=None, metrics=None, **overrides):
    sleeps = [] if sleeps is None else sleeps

    async def record_sleep(delay):
        sleeps.append(delay)

    config = GatewayConfig(api_key="test-key", **overrides)
    return ModelGateway(config, client=client, metrics=metrics, sleep=record_sleep, clock=clock or FakeClock())


class TestModelGateway:
    """Single-call behavior."""

    @pytest.mark.asyncio
    async def test_success_joins_text_blocks(self):
        client = FakeClient(SimpleNamespace(content=[
            SimpleNamespace(type="text", text="Hello "),
            SimpleNamespace(type="tool_use", id="t1"),
            SimpleNamespace(type="text", text="world"),
        ]))
        gateway = make_gateway(client)

        assert await gateway.complete("You are helpful.", MESSAGES) == "Hello world"

    @pytest.mark.asyncio
    async def test_request_shape(self):
        client = FakeClient(text_response("ok"))
        gateway = make_gateway(client, model="claude-test", max_tokens=256)

        await gateway.complete("", MESSAGES, purpose="classify", temperature=0.0)

        request = client.messages.requests[0]
        assert request["model"] == "claude-test"
        assert request["max_tokens"] == 256
        assert request["temperature"] == 0.0
        assert "system" not in request

    @pytest.mark.asyncio
    async def test_per_call_overrides(self):
        client = FakeClient(text_response("ok"))
        gateway = make_gateway(client)

        await gateway.complete("persona", MESSAGES, model="claude-other", max_tokens=10)

        request = client.messages.requests[0]
        assert request["model"] == "claude-other"
        assert request["max_tokens"] == 10
        assert request["system"] == "persona"

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried_with_backoff(self):
        sleeps = []
        client = FakeClient(
            status_error(anthropic.RateLimitError, 429),
            anthropic.APIConnectionError(request=REQUEST),
            text_response("third time lucky"),
        )
        gateway = make_gateway(client, sleeps=sleeps)

        assert await gateway.complete("", MESSAGES) == "third time lucky"
        assert sleeps == [0.5, 1.0]
        assert len(client.messages.requests) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_model_unavailable(self):
        sleeps = []
        client = FakeClient(anthropic.APITimeoutError(request=REQUEST))
        gateway = make_gateway(client, sleeps=sleeps, max_retries=2)

        with pytest.raises(ModelUnavailable):
            await gateway.complete("", MESSAGES)

        assert len(client.messages.requests) == 3
        assert sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_overloaded_is_transient(self):
        client = FakeClient(
            status_error(anthropic.APIStatusError, 529, "overloaded"),
            text_response("ok"),
        )
        gateway = make_gateway(client)

        assert await gateway.complete("", MESSAGES) == "ok"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cls,code", [
        (anthropic.BadRequestError, 400),
        (anthropic.AuthenticationError, 401),
        (anthropic.PermissionDeniedError, 403),
    ])
    async def test_permanent_errors_are_not_retried(self, cls, code):
        client = FakeClient(status_error(cls, code))
        gateway = make_gateway(client)

        with pytest.raises(ModelRejected):
            await gateway.complete("", MESSAGES)

        assert len(client.messages.requests) == 1
        assert gateway.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_slow_upstream_times_out(self):
        async def hang():
            await asyncio.sleep(5)

        client = FakeClient(hang)
        gateway = make_gateway(client, timeout_seconds=0.01, max_retries=1)

        with pytest.raises(ModelUnavailable):
            await gateway.complete("", MESSAGES)

        assert len(client.messages.requests) == 2

    @pytest.mark.asyncio
    async def test_non_idempotent_call_is_not_retried(self):
        client = FakeClient(status_error(anthropic.RateLimitError, 429), text_response("late"))
        gateway = make_gateway(client)

        with pytest.raises(ModelUnavailable):
            await gateway.complete("", MESSAGES, idempotent=False)

        assert len(client.messages.requests) == 1

    @pytest.mark.asyncio
    async def test_empty_messages_rejected(self):
        gateway = make_gateway(FakeClient(text_response("ok")))
        with pytest.raises(ValueError):
            await gateway.complete("", [])

    @pytest.mark.asyncio
    async def test_missing_api_key_is_rejected(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        gateway = ModelGateway(GatewayConfig(api_key=None))

        with pytest.raises(ModelRejected):
            await gateway.complete("", MESSAGES)

    @pytest.mark.asyncio
    async def test_metrics_record_attempts(self):
        metrics = MetricsCollector()
        client = FakeClient(status_error(anthropic.RateLimitError, 429), text_response("ok"))
        gateway = make_gateway(client, metrics=metrics)

        await gateway.complete("", MESSAGES, purpose="step:1")

        calls = metrics.summary()["calls"]
        assert calls["step"]["calls"] == 1
        assert calls["step"]["retries"] == 1
        assert calls["step"]["failures"] == 0


class TestGatewayCircuitBreaker:
    """Fail-fast after repeated exhaustion."""

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast_then_recovers(self):
        clock = FakeClock()
        client = FakeClient(status_error(anthropic.InternalServerError, 500))
        gateway = make_gateway(client, clock=clock, max_retries=0, failure_threshold=2, cooldown_seconds=30)

        for _ in range(2):
            with pytest.raises(ModelUnavailable):
                await gateway.complete("", MESSAGES)
        assert gateway.breaker.state == CircuitState.OPEN

        with pytest.raises(ModelUnavailable):
            await gateway.complete("", MESSAGES)
        assert len(client.messages.requests) == 2

        clock.now += 31
        client.messages.outcomes = [text_response("back")]
        assert await gateway.complete("", MESSAGES) == "back"
        assert gateway.breaker.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=10, clock=clock)

        breaker.record_failure()
        assert breaker.can_attempt() is False

        clock.now += 10
        assert breaker.can_attempt() is True
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.get_status()["cooldown_remaining"] == 10

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker(failure_threshold=3, clock=FakeClock())
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()

        assert breaker.failure_count == 0
        assert breaker.state == CircuitState.CLOSED


class TestErrorClassification:
    def test_transient_classification(self):
        assert is_transient(asyncio.TimeoutError())
        assert is_transient(anthropic.APIConnectionError(request=REQUEST))
        assert is_transient(status_error(anthropic.RateLimitError, 429))
        assert is_transient(status_error(anthropic.APIStatusError, 503))
        assert not is_transient(status_error(anthropic.BadRequestError, 400))
        assert not is_transient(ValueError("nope"))


class TestMessageMapping:
    """Conversation turns onto Messages API roles."""

    def turn(self, participant, content, role=None):
        if role is None:
            role = Role.USER if participant == "user" else Role.ASSISTANT
        return ConversationTurn("c1", "alice", participant, role, content)

    def test_speaker_turns_become_assistant(self):
        turns = [
            self.turn("user", "build a contract"),
            self.turn("coder", "here is the code"),
            self.turn("reviewer", "found a bug"),
        ]

        messages = turns_to_messages(turns, speaker="coder")

        assert messages == [
            {"role": "user", "content": "build a contract"},
            {"role": "assistant", "content": "here is the code"},
            {"role": "user", "content": "[reviewer]: found a bug"},
        ]

    def test_consecutive_roles_merge_and_system_is_skipped(self):
        turns = [
            self.turn("user", "one"),
            self.turn("system", "note", role=Role.SYSTEM),
            self.turn("writer", "two"),
        ]

        messages = turns_to_messages(turns, speaker="coder")

        assert messages == [{"role": "user", "content": "one\n\n[writer]: two"}]

    def test_leading_assistant_gets_placeholder(self):
        messages = turns_to_messages([self.turn("coder", "earlier work")], speaker="coder")

        assert messages[0] == {"role": "user", "content": "(earlier conversation)"}
        assert messages[1]["role"] == "assistant"

    def test_append_user_message_copies(self):
        original = [{"role": "assistant", "content": "a"}]

        result = append_user_message(original, "next")

        assert result[-1] == {"role": "user", "content": "next"}
        assert original == [{"role": "assistant", "content": "a"}]
