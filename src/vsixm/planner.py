from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Protocol, Sequence

from vsixm.exceptions import PlanValidationError
from vsixm.executor import ConcurrentTaskExecutor
from vsixm.installed import is_valid_extension_id
from vsixm.internal_config import (
    DEFAULT_RESOLUTION_CONCURRENCY,
    DEFAULT_RESOLUTION_DELAY_SECONDS,
    DEFAULT_RESOLUTION_MAX_ATTEMPTS,
    HTTP_REQUEST_TIMEOUT_SECONDS,
)
from vsixm.models import ChangePlan, InstalledItem, OutcomeStatus, UnitOutcome
from vsixm.retry import NetworkRetryStrategy, RetryChain, TimeoutIncreaseStrategy
from vsixm.versioning import deduplicate, is_newer

logger: logging.Logger = logging.getLogger(__name__)


class VersionSource(Protocol):
    def resolve_latest_version(
        self,
        extension_id: str,
        prefer_prerelease: bool = False,
        source: str = "auto",
        timeout: float | None = None,
    ) -> str: ...


@dataclass(frozen=True)
class Resolution:
    id: str
    version: str = ""
    error: str | None = None
    elapsed_ms: int = 0


@dataclass
class PlanResult:
    plans: list[ChangePlan] = field(default_factory=list)
    up_to_date: list[UnitOutcome] = field(default_factory=list)
    failed: list[UnitOutcome] = field(default_factory=list)
    total_scanned: int = 0


def validate_plans(plans: Iterable[ChangePlan]) -> None:
    """Raise :class:`PlanValidationError` on the first malformed plan."""
    seen: set[str] = set()
    for plan in plans:
        if not is_valid_extension_id(plan.id):
            raise PlanValidationError(f"Invalid extension id in plan: {plan.id!r}")
        if not plan.target_version:
            raise PlanValidationError(f"Plan for {plan.id} has no target version")
        if plan.id.lower() in seen:
            raise PlanValidationError(f"Duplicate plan for {plan.id}")
        seen.add(plan.id.lower())


class UpdatePlanner(object):
    """Decide which installed extensions need an update, and to what."""

    def __init__(
        self,
        registry: VersionSource,
        concurrency: int = DEFAULT_RESOLUTION_CONCURRENCY,
        delay: float = DEFAULT_RESOLUTION_DELAY_SECONDS,
        max_attempts: int = DEFAULT_RESOLUTION_MAX_ATTEMPTS,
        prefer_prerelease: bool = False,
        source: str = "auto",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.delay = delay
        self.max_attempts = max_attempts
        self.prefer_prerelease = prefer_prerelease
        self.source = source
        self.executor = ConcurrentTaskExecutor(concurrency=concurrency, sleep=sleep)
        # lookups only need the transient-error strategies, and never prompt
        self.chain = RetryChain(
            strategies=[
                NetworkRetryStrategy(sleep=sleep),
                TimeoutIncreaseStrategy(sleep=sleep),
            ]
        )

    def _resolve_one(self, extension_id: str) -> Resolution:
        result = self.chain.execute(
            lambda context: self.registry.resolve_latest_version(
                extension_id,
                prefer_prerelease=self.prefer_prerelease,
                source=self.source,
                timeout=context.timeout,
            ),
            name=f"resolve {extension_id}",
            max_attempts=self.max_attempts,
            timeout=HTTP_REQUEST_TIMEOUT_SECONDS,
            metadata={"unattended": True},
        )
        if result.success and result.value:
            return Resolution(
                id=extension_id, version=str(result.value), elapsed_ms=result.elapsed_ms
            )
        error = result.error or RuntimeError("No version returned")
        return Resolution(id=extension_id, error=f"{error}", elapsed_ms=result.elapsed_ms)

    def resolve_versions(self, extension_ids: Sequence[str]) -> list[Resolution]:
        """Look up the latest version of each id, in input order."""
        report = self.executor.run(
            list(extension_ids),
            self._resolve_one,
            on_error=lambda extension_id, exc: Resolution(id=extension_id, error=f"{exc}"),
            delay=self.delay,
        )
        return report.ordered()

    def plan(
        self,
        installed: Iterable[InstalledItem],
        selection: Sequence[str] | None = None,
        force_selection: bool = True,
    ) -> PlanResult:
        result = PlanResult()
        items = list(installed)

        selected: set[str] = set()
        if selection:
            selected = {extension_id.lower() for extension_id in selection}
            items = [item for item in items if item.id.lower() in selected]
            present = {item.id.lower() for item in items}
            for extension_id in selection:
                if extension_id.lower() not in present:
                    result.failed.append(
                        UnitOutcome(
                            id=extension_id,
                            status=OutcomeStatus.FAILED,
                            error="Extension is not installed",
                        )
                    )
                    present.add(extension_id.lower())

        items = deduplicate(items)
        result.total_scanned = len(items)
        logger.info(f"Checking {len(items)} extension(s) for updates")

        resolutions = self.resolve_versions([item.id for item in items])
        for item, resolution in zip(items, resolutions):
            if resolution.error or not resolution.version:
                logger.warning(f"Could not resolve {item.id}: {resolution.error}")
                result.failed.append(
                    UnitOutcome(
                        id=item.id,
                        status=OutcomeStatus.FAILED,
                        current_version=item.version,
                        error=resolution.error or "No version available",
                        elapsed_ms=resolution.elapsed_ms,
                    )
                )
                continue

            forced = force_selection and item.id.lower() in selected
            if is_newer(resolution.version, item.version) or forced:
                result.plans.append(
                    ChangePlan(
                        id=item.id,
                        current_version=item.version,
                        target_version=resolution.version,
                    )
                )
            else:
                logger.debug(f"{item.id} is up to date ({item.version})")
                result.up_to_date.append(
                    UnitOutcome(
                        id=item.id,
                        status=OutcomeStatus.UP_TO_DATE,
                        current_version=item.version,
                        target_version=resolution.version,
                        elapsed_ms=resolution.elapsed_ms,
                    )
                )

        validate_plans(result.plans)
        logger.info(
            f"{len(result.plans)} update(s) planned, {len(result.up_to_date)} up to date, "
            f"{len(result.failed)} failed"
        )
        return result
