"""
ModelGateway - the single path to the upstream Anthropic Messages API.

Every attempt is bounded by a timeout. Transient failures (rate limits,
connection errors, timeouts, 5xx/overloaded) are retried with exponential
backoff and surface as ModelUnavailable once exhausted; permanent failures
surface immediately as ModelRejected. A circuit breaker fails calls fast
while the upstream keeps exhausting its retries.
"""

import asyncio
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import anthropic
import httpx

from .agents.error_context import create_gateway_error_context, format_error_summary
from .agents.logging_config import get_logger
from .agents.metrics import MetricsCollector
from .errors import ModelRejected, ModelUnavailable
from .records import ConversationTurn, Role, USER_PARTICIPANT

logger = get_logger("gateway")

DEFAULT_MODEL = "claude-sonnet-4-20250514"

# Status codes worth retrying besides 5xx
RETRYABLE_STATUS = {408, 409, 429}


@dataclass
class GatewayConfig:
    """Configuration for upstream model calls."""
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    max_tokens: int = 1024
    temperature: float = 0.7
    timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 10.0
    max_retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    failure_threshold: int = 5
    cooldown_seconds: float = 30.0


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"       # Normal operation
    OPEN = "open"           # Failing fast
    HALF_OPEN = "half_open"  # Probing recovery


class CircuitBreaker:
    """
    Circuit breaker over exhausted upstream calls.

    Transitions:
    - CLOSED → OPEN: After N consecutive exhausted calls
    - OPEN → HALF_OPEN: After cooldown period
    - HALF_OPEN → CLOSED: After successful call
    - HALF_OPEN → OPEN: If call fails
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None

    def can_attempt(self) -> bool:
        """Check if a call may proceed."""
        if self.state == CircuitState.OPEN:
            if self.last_failure_time is not None:
                elapsed = self._clock() - self.last_failure_time
                if elapsed >= self.cooldown_seconds:
                    logger.info("[CircuitBreaker] Cooldown expired, entering HALF_OPEN")
                    self.state = CircuitState.HALF_OPEN
                    return True
            return False
        return True

    def record_success(self):
        if self.state == CircuitState.HALF_OPEN:
            logger.info("[CircuitBreaker] Closing circuit after successful recovery")
        elif self.failure_count > 0:
            logger.info(f"[CircuitBreaker] Success after {self.failure_count} failures, resetting counter")
        self.state = CircuitState.CLOSED
        self.failure_count = 0

    def record_failure(self):
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN:
            logger.warning("[CircuitBreaker] Failure in HALF_OPEN, reopening circuit")
            self.state = CircuitState.OPEN
            return

        self.failure_count += 1
        logger.warning(f"[CircuitBreaker] Failure {self.failure_count}/{self.failure_threshold}")
        if self.failure_count >= self.failure_threshold:
            logger.error(f"[CircuitBreaker] Opening circuit after {self.failure_count} consecutive failures")
            self.state = CircuitState.OPEN

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "cooldown_remaining": (
                max(0.0, self.cooldown_seconds - (self._clock() - self.last_failure_time))
                if self.state == CircuitState.OPEN and self.last_failure_time is not None else 0.0
            ),
        }


def is_transient(error: BaseException) -> bool:
    """Timeouts, connection errors, 408/409/429 and 5xx are transient."""
    if isinstance(error, (asyncio.TimeoutError, anthropic.APIConnectionError)):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code in RETRYABLE_STATUS or error.status_code >= 500
    return False


def describe_error(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "request timed out"
    if isinstance(error, anthropic.APIStatusError):
        return f"{type(error).__name__} (HTTP {error.status_code}): {error.message}"
    return f"{type(error).__name__}: {error}"


def turns_to_messages(turns: Iterable[ConversationTurn], speaker: str) -> List[Dict[str, str]]:
    """
    Map stored turns onto alternating user/assistant messages.

    Turns spoken by `speaker` become assistant messages; everything else is
    user input, attributed by name when another agent said it. Consecutive
    messages with the same role are merged, and a leading assistant message
    gets a user placeholder in front so the sequence opens with the user.
    """
    messages: List[Dict[str, str]] = []
    for turn in turns:
        if turn.role == Role.SYSTEM:
            continue
        if turn.participant == speaker:
            role, content = "assistant", turn.content
        elif turn.participant == USER_PARTICIPANT:
            role, content = "user", turn.content
        else:
            role, content = "user", f"[{turn.participant}]: {turn.content}"

        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + content
        else:
            messages.append({"role": role, "content": content})

    if messages and messages[0]["role"] == "assistant":
        messages.insert(0, {"role": "user", "content": "(earlier conversation)"})
    return messages


def append_user_message(messages: List[Dict[str, str]], content: str) -> List[Dict[str, str]]:
    """Return a copy of `messages` ending with `content` as user input."""
    result = [dict(m) for m in messages]
    if result and result[-1]["role"] == "user":
        result[-1]["content"] += "\n\n" + content
    else:
        result.append({"role": "user", "content": content})
    return result


class ModelGateway:
    """
    Wrapper around AsyncAnthropic with retry, timeout and fail-fast.

    Example:
        ```python
        gateway = ModelGateway(GatewayConfig(max_retries=2))
        text = await gateway.complete(
            "You are a planner.",
            [{"role": "user", "content": "Plan a launch"}],
            purpose="decompose",
        )
        ```
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        client: Any = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or GatewayConfig()
        self._client = client
        self.metrics = metrics
        self._sleep = sleep
        self.breaker = CircuitBreaker(
            failure_threshold=self.config.failure_threshold,
            cooldown_seconds=self.config.cooldown_seconds,
            clock=clock,
        )

    def _get_client(self):
        if self._client is None:
            api_key = self.config.api_key or os.environ.get("ANTHROPIC_API_KEY")
            if not api_key:
                raise ModelRejected(
                    "ANTHROPIC_API_KEY is not configured. "
                    "Get your API key from: https://console.anthropic.com/settings/keys"
                )
            self._client = anthropic.AsyncAnthropic(
                api_key=api_key,
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=self.config.connect_timeout_seconds),
                max_retries=0,
            )
        return self._client

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt + 1`."""
        return min(self.config.backoff_base * (2 ** attempt), self.config.backoff_max)

    def _record(self, purpose: str, attempts: int, success: bool):
        if self.metrics is not None:
            self.metrics.record_call(purpose, attempts, success)

    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        *,
        purpose: str = "chat",
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        idempotent: bool = True,
    ) -> str:
        """
        Run one completion.

        Args:
            system_prompt: System prompt (persona or instructions)
            messages: Alternating user/assistant messages, ending with user
            purpose: Label for logs and metrics ("classify", "step:2", ...)
            max_tokens: Output cap, defaults to config
            model: Model id, defaults to config
            temperature: Sampling temperature, defaults to config
            idempotent: False disables retries for calls with side effects

        Returns:
            Concatenated text of the response

        Raises:
            ModelUnavailable: Transient failures outlived the retries, or the circuit is open
            ModelRejected: Upstream refused the request
        """
        if not messages:
            raise ValueError("messages must not be empty")

        if not self.breaker.can_attempt():
            self._record(purpose, 0, False)
            raise ModelUnavailable(f"{purpose}: circuit open, upstream calls suspended")

        client = self._get_client()
        request: Dict[str, Any] = {
            "model": model or self.config.model,
            "max_tokens": max_tokens or self.config.max_tokens,
            "messages": messages,
            "temperature": self.config.temperature if temperature is None else temperature,
        }
        if system_prompt:
            request["system"] = system_prompt

        attempts_allowed = 1 + (self.config.max_retries if idempotent else 0)
        last_error: Optional[BaseException] = None

        for attempt in range(attempts_allowed):
            try:
                response = await asyncio.wait_for(
                    client.messages.create(**request),
                    timeout=self.config.timeout_seconds,
                )
            except (asyncio.TimeoutError, anthropic.APIError) as e:
                if not is_transient(e):
                    self._record(purpose, attempt + 1, False)
                    logger.error(f"[{purpose}] Rejected by upstream: {describe_error(e)}")
                    raise ModelRejected(f"{purpose}: {describe_error(e)}") from e

                last_error = e
                if attempt + 1 < attempts_allowed:
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        f"[{purpose}] Attempt {attempt + 1}/{attempts_allowed} failed "
                        f"({describe_error(e)}), retrying in {delay:.2f}s"
                    )
                    await self._sleep(delay)
                continue

            self.breaker.record_success()
            self._record(purpose, attempt + 1, True)
            return "".join(
                block.text for block in response.content
                if getattr(block, "type", None) == "text"
            )

        self.breaker.record_failure()
        self._record(purpose, attempts_allowed, False)
        error = ModelUnavailable(
            f"{purpose}: gave up after {attempts_allowed} attempt(s): {describe_error(last_error)}"
        )
        logger.error(format_error_summary(create_gateway_error_context(purpose, error, attempts_allowed)))
        raise error from last_error
