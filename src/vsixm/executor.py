from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Generic, Sequence, TypeVar

logger: logging.Logger = logging.getLogger(__name__)

Item = TypeVar("Item")
Outcome = TypeVar("Outcome")


@dataclass
class ExecutionReport(Generic[Outcome]):
    """Outcomes in completion order plus the indices never started."""

    outcomes: list[tuple[int, Outcome]] = field(default_factory=list)
    unclaimed: list[int] = field(default_factory=list)
    aborted: bool = False

    def ordered(self) -> list[Outcome]:
        """Outcomes sorted back into input order."""
        return [outcome for _index, outcome in sorted(self.outcomes, key=lambda x: x[0])]


class ConcurrentTaskExecutor(object):
    """Bounded worker pool over a shared cursor.

    ``concurrency`` workers each loop claiming the next index, running the
    unit and appending its outcome, until the list is exhausted or a unit
    asks for the batch to stop.
    """

    def __init__(self, concurrency: int = 1, sleep: Callable[[float], None] = time.sleep) -> None:
        self.concurrency = max(1, int(concurrency))
        self.sleep = sleep

    def run(
        self,
        items: Sequence[Item],
        work: Callable[[Item], Outcome],
        on_error: Callable[[Item, Exception], Outcome],
        should_abort: Callable[[Outcome], bool] | None = None,
        delay: float = 0.0,
    ) -> ExecutionReport[Outcome]:
        report: ExecutionReport[Outcome] = ExecutionReport()
        total = len(items)
        if total == 0:
            return report

        lock = threading.Lock()
        cursor = 0
        stop = threading.Event()

        def _claim() -> int | None:
            nonlocal cursor
            with lock:
                if stop.is_set() or cursor >= total:
                    return None
                index = cursor
                cursor += 1
                return index

        def _worker() -> None:
            while True:
                index = _claim()
                if index is None:
                    return
                item = items[index]
                try:
                    outcome = work(item)
                except Exception as exc:
                    logger.exception(f"Unexpected error while processing item {index}")
                    outcome = on_error(item, exc)

                with lock:
                    report.outcomes.append((index, outcome))
                    if should_abort is not None and should_abort(outcome):
                        stop.set()

                if delay > 0 and index < total - 1 and not stop.is_set():
                    self.sleep(delay)

        workers = min(self.concurrency, total)
        if workers == 1:
            _worker()
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [pool.submit(_worker) for _ in range(workers)]
                for future in futures:
                    future.result()

        report.aborted = stop.is_set()
        report.unclaimed = list(range(cursor, total))
        return report
