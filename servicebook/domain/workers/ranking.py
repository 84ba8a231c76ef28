from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Candidate:
    worker_id: int
    rating: float
    last_assigned_at: datetime | None
    is_preferred: bool = False


def _sort_key(candidate: Candidate) -> tuple:
    last = candidate.last_assigned_at or _NEVER
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return (not candidate.is_preferred, -candidate.rating, last, candidate.worker_id)


def rank_candidates(candidates: list[Candidate]) -> list[Candidate]:
    """Preferred worker first, then best rated, then least recently assigned."""

    return sorted(candidates, key=_sort_key)
