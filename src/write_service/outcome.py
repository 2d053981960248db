"""
outcome.py
----------
Tally returned by every batch operation (ingest batch, daily refresh range,
summary refresh, chaos score pass). A failed unit is recorded here and the
batch keeps going.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List

SUCCEEDED = "succeeded"
SKIPPED = "skipped"
FAILED = "failed"

# Cap on how many failure details we keep; counts are always exact.
MAX_FAILURE_DETAILS = 50


@dataclass
class BatchOutcome:
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.succeeded + self.skipped + self.failed

    def record_success(self) -> None:
        self.succeeded += 1

    def record_skip(self) -> None:
        self.skipped += 1

    def record_failure(self, unit: Any, error: Any) -> None:
        self.failed += 1
        if len(self.failures) < MAX_FAILURE_DETAILS:
            self.failures.append({"unit": str(unit), "error": str(error)})

    def merge(self, other: "BatchOutcome") -> "BatchOutcome":
        self.succeeded += other.succeeded
        self.skipped += other.skipped
        self.failed += other.failed
        room = MAX_FAILURE_DETAILS - len(self.failures)
        if room > 0:
            self.failures.extend(other.failures[:room])
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "failures": list(self.failures),
        }


def run_batch(units: Iterable[Any], work: Callable[[Any], str], max_workers: int = 1) -> BatchOutcome:
    """
    Run ``work(unit)`` for every unit and fan the results into one outcome.

    ``work`` returns SUCCEEDED or SKIPPED; any exception it raises marks that
    unit failed without cancelling the others. With ``max_workers <= 1`` the
    units run inline, in order.
    """
    outcome = BatchOutcome()
    units = list(units)

    def _tally(unit, status):
        if status == SKIPPED:
            outcome.record_skip()
        else:
            outcome.record_success()

    if max_workers <= 1 or len(units) <= 1:
        for unit in units:
            try:
                _tally(unit, work(unit))
            except Exception as e:
                outcome.record_failure(unit, e)
        return outcome

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(work, unit): unit for unit in units}
        for future in as_completed(futures):
            unit = futures[future]
            try:
                _tally(unit, future.result())
            except Exception as e:
                outcome.record_failure(unit, e)

    return outcome
