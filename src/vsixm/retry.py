"""Escalating recovery strategies for a failing unit of work.

A task is a callable taking a :class:`RetryContext`. When it raises, the
:class:`RetryChain` picks the first strategy (lowest priority number) able to
handle the error, lets it prepare the context, and re-runs the task. Each
re-run increments ``attempt_count`` and records the new ``last_error`` so the
next selection sees the updated state.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Sequence, TypeVar

from vsixm.exceptions import ErrorKind, classify_error, is_fatal
from vsixm.internal_config import (
    RETRY_BACKOFF_BASE_SECONDS,
    RETRY_BACKOFF_MAX_SECONDS,
    RETRY_DEFAULT_TIMEOUT_SECONDS,
    RETRY_FALLBACK_PAUSE_SECONDS,
    RETRY_TIMEOUT_PAUSE_SECONDS,
)

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], None]


class Intervention(str, enum.Enum):
    CONTINUE = "continue"
    SKIP_ITEM = "skip"
    ABORT_BATCH = "abort"


@dataclass
class RetryContext:
    attempt_count: int = 0
    last_error: BaseException | None = None
    start_time: float = field(default_factory=time.monotonic)
    timeout: float | None = None
    max_attempts: int = 3
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.start_time) * 1000)


@dataclass
class RetryResult(Generic[T]):
    success: bool
    value: T | None = None
    error: BaseException | None = None
    strategy: str | None = None
    attempts: int = 0
    elapsed_ms: int = 0
    intervention: Intervention = Intervention.CONTINUE


Task = Callable[[RetryContext], T]
Prompter = Callable[[str, BaseException], Intervention]


class RetryStrategy:
    name: str = ""
    priority: int = 0

    def __init__(self, sleep: Sleep = time.sleep) -> None:
        self.sleep = sleep

    def can_handle(self, error: BaseException, context: RetryContext) -> bool:
        raise NotImplementedError

    def prepare(self, task_name: str, context: RetryContext) -> Intervention:
        """Mutate ``context`` for the next attempt and decide how to proceed."""
        raise NotImplementedError

    def describe(self, context: RetryContext) -> str:
        return self.name

    @staticmethod
    def backoff(attempt_count: int, base: float = RETRY_BACKOFF_BASE_SECONDS) -> float:
        return min(base * 2 ** max(attempt_count - 1, 0), RETRY_BACKOFF_MAX_SECONDS)


class NetworkRetryStrategy(RetryStrategy):
    name = "network-retry"
    priority = 5

    def __init__(
        self, sleep: Sleep = time.sleep, base_delay: float = RETRY_BACKOFF_BASE_SECONDS
    ) -> None:
        super().__init__(sleep)
        self.base_delay = base_delay

    def can_handle(self, error: BaseException, context: RetryContext) -> bool:
        return classify_error(error) is ErrorKind.NETWORK and context.attempt_count < 5

    def prepare(self, task_name: str, context: RetryContext) -> Intervention:
        self.sleep(self.backoff(context.attempt_count, self.base_delay))
        return Intervention.CONTINUE

    def describe(self, context: RetryContext) -> str:
        delay = self.backoff(context.attempt_count, self.base_delay)
        return f"Network error detected. Retrying in {delay:g}s"


class TimeoutIncreaseStrategy(RetryStrategy):
    name = "timeout-increase"
    priority = 10

    def can_handle(self, error: BaseException, context: RetryContext) -> bool:
        return classify_error(error) is ErrorKind.TIMEOUT and context.attempt_count < 3

    def prepare(self, task_name: str, context: RetryContext) -> Intervention:
        context.timeout = (context.timeout or RETRY_DEFAULT_TIMEOUT_SECONDS) * 2
        self.sleep(RETRY_TIMEOUT_PAUSE_SECONDS)
        return Intervention.CONTINUE

    def describe(self, context: RetryContext) -> str:
        new_timeout = (context.timeout or RETRY_DEFAULT_TIMEOUT_SECONDS) * 2
        return f"Increasing timeout to {new_timeout:g}s and retrying"


class DirectFallbackStrategy(RetryStrategy):
    name = "direct-fallback"
    priority = 20

    def can_handle(self, error: BaseException, context: RetryContext) -> bool:
        already_direct = "direct" in str(context.metadata.get("strategy", ""))
        return (
            classify_error(error) in (ErrorKind.INSTALL, ErrorKind.CLI)
            and not already_direct
            and context.attempt_count < 2
        )

    def prepare(self, task_name: str, context: RetryContext) -> Intervention:
        context.metadata["strategy"] = "direct"
        context.metadata["fallback"] = True
        self.sleep(RETRY_FALLBACK_PAUSE_SECONDS)
        return Intervention.CONTINUE

    def describe(self, context: RetryContext) -> str:
        return "Falling back to direct installation method"


class DownloadOnlyStrategy(RetryStrategy):
    name = "download-only-fallback"
    priority = 30

    def can_handle(self, error: BaseException, context: RetryContext) -> bool:
        return (
            classify_error(error) in (ErrorKind.INSTALL, ErrorKind.CLI)
            and context.metadata.get("supports_download_only") is True
            and context.attempt_count >= 2
        )

    def prepare(self, task_name: str, context: RetryContext) -> Intervention:
        context.metadata["download_only"] = True
        context.metadata["skip_install"] = True
        return Intervention.CONTINUE

    def describe(self, context: RetryContext) -> str:
        return "Installation failed. Downloading only (manual install required)"


class UserInterventionStrategy(RetryStrategy):
    name = "user-intervention"
    priority = 100

    # one prompt at a time, workers share the terminal
    _prompt_lock = threading.Lock()

    def __init__(self, prompter: Prompter | None = None, sleep: Sleep = time.sleep) -> None:
        super().__init__(sleep)
        self.prompter = prompter

    def can_handle(self, error: BaseException, context: RetryContext) -> bool:
        return (
            self.prompter is not None
            and context.attempt_count >= 2
            and not context.metadata.get("unattended", False)
        )

    def prepare(self, task_name: str, context: RetryContext) -> Intervention:
        if self.prompter is None:
            return Intervention.SKIP_ITEM
        error = context.last_error or RuntimeError("Unknown error")
        with self._prompt_lock:
            decision = self.prompter(task_name, error)
        if decision is Intervention.CONTINUE:
            self.sleep(RETRY_FALLBACK_PAUSE_SECONDS)
        return decision

    def describe(self, context: RetryContext) -> str:
        return "Requesting user intervention"


def default_strategies(
    prompter: Prompter | None = None, sleep: Sleep = time.sleep
) -> list[RetryStrategy]:
    return [
        NetworkRetryStrategy(sleep=sleep),
        TimeoutIncreaseStrategy(sleep=sleep),
        DirectFallbackStrategy(sleep=sleep),
        DownloadOnlyStrategy(sleep=sleep),
        UserInterventionStrategy(prompter=prompter, sleep=sleep),
    ]


class RetryChain(object):
    """Run a task, escalating through recovery strategies when it fails."""

    def __init__(
        self,
        strategies: Sequence[RetryStrategy] | None = None,
        prompter: Prompter | None = None,
        sleep: Sleep = time.sleep,
    ) -> None:
        chosen = (
            list(strategies)
            if strategies is not None
            else default_strategies(prompter=prompter, sleep=sleep)
        )
        self.strategies: list[RetryStrategy] = sorted(chosen, key=lambda s: s.priority)

    def select(self, error: BaseException, context: RetryContext) -> RetryStrategy | None:
        for strategy in self.strategies:
            if strategy.can_handle(error, context):
                return strategy
        return None

    def execute(
        self,
        task: Task[T],
        *,
        name: str = "task",
        max_attempts: int = 3,
        timeout: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RetryResult[T]:
        context = RetryContext(
            timeout=timeout,
            max_attempts=max_attempts,
            metadata=dict(metadata or {}),
        )

        try:
            value = task(context)
            return RetryResult(
                success=True, value=value, attempts=1, elapsed_ms=context.elapsed_ms
            )
        except Exception as exc:
            error: BaseException = exc
            context.last_error = exc
            context.attempt_count = 1

        last_strategy: str | None = None
        while context.attempt_count < context.max_attempts:
            if is_fatal(error):
                logger.debug(f"{name}: fatal error, not retrying: {error}")
                break

            strategy = self.select(error, context)
            if strategy is None:
                break

            if not context.metadata.get("quiet", False):
                logger.warning(f"{name}: {strategy.describe(context)}...")
            last_strategy = strategy.name

            decision = strategy.prepare(name, context)
            if decision is not Intervention.CONTINUE:
                return RetryResult(
                    success=False,
                    error=error,
                    strategy=strategy.name,
                    attempts=context.attempt_count,
                    elapsed_ms=context.elapsed_ms,
                    intervention=decision,
                )

            context.attempt_count += 1
            try:
                value = task(context)
                return RetryResult(
                    success=True,
                    value=value,
                    strategy=strategy.name,
                    attempts=context.attempt_count,
                    elapsed_ms=context.elapsed_ms,
                )
            except Exception as exc:
                error = exc
                context.last_error = exc

        return RetryResult(
            success=False,
            error=error,
            strategy=last_strategy,
            attempts=context.attempt_count,
            elapsed_ms=context.elapsed_ms,
        )
