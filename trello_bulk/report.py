from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import ExecutorError, TrelloApiError
from .selection import Candidate


@dataclass(frozen=True)
class ItemSuccess:
    candidate: Candidate
    result: Any


@dataclass(frozen=True)
class ItemFailure:
    candidate: Candidate
    error: BaseException

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__


ItemOutcome = Union[ItemSuccess, ItemFailure]


def _summarize_result(result: Any) -> Any:
    if isinstance(result, dict):
        keys = ("id", "name", "shortUrl", "url", "idList", "closed")
        summary = {k: result[k] for k in keys if k in result}
        return summary or result
    return result


@dataclass
class BulkReport:
    requested: int
    succeeded: int
    failed: int
    successes: list[ItemSuccess] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)
    safety_limit_applied: bool = False
    unresolved: list[tuple[str, TrelloApiError]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": {
                "requested": self.requested,
                "succeeded": self.succeeded,
                "failed": self.failed,
                "safetyLimitApplied": self.safety_limit_applied,
                "unresolved": len(self.unresolved),
            },
            "succeeded": [
                {
                    "index": s.candidate.index,
                    "id": s.candidate.id,
                    "name": s.candidate.name,
                    "result": _summarize_result(s.result),
                }
                for s in self.successes
            ],
            "failed": [
                {
                    "index": f.candidate.index,
                    "id": f.candidate.id,
                    "name": f.candidate.name,
                    "error": f.message,
                    "errorType": type(f.error).__name__,
                    "status": f.error.status if isinstance(f.error, ExecutorError) else None,
                }
                for f in self.failures
            ],
            "unresolved": [
                {"id": entity_id, "error": str(error)}
                for entity_id, error in self.unresolved
            ],
        }


def aggregate(
    outcomes: Sequence[ItemOutcome],
    *,
    safety_limit_applied: bool = False,
    unresolved: Iterable[tuple[str, TrelloApiError]] = (),
) -> BulkReport:
    """Split outcomes into successes and failures, ordered by candidate index.

    Partial failure is data, not an exception: the report always comes back.
    """
    successes = sorted(
        (o for o in outcomes if isinstance(o, ItemSuccess)),
        key=lambda o: o.candidate.index,
    )
    failures = sorted(
        (o for o in outcomes if isinstance(o, ItemFailure)),
        key=lambda o: o.candidate.index,
    )
    return BulkReport(
        requested=len(outcomes),
        succeeded=len(successes),
        failed=len(failures),
        successes=successes,
        failures=failures,
        safety_limit_applied=safety_limit_applied,
        unresolved=list(unresolved),
    )
