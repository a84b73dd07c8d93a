"""Candidate repository with optimistic concurrency.

Candidates are shared between users, so every mutation of ``learning_weight``
or ``fatigue_score`` goes through :meth:`CandidateRepository.compare_and_swap`,
which only writes when the row still carries the version the caller read.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update

from resonance_loop.errors import NotFoundError
from resonance_loop.personalization.models import Candidate, _utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateSnapshot:
    """Immutable read of a candidate row, including the version it was read at."""
    id: str
    name: str
    state_filter: Optional[str]
    pattern_vector: Optional[List[float]]
    learning_weight: float
    fatigue_score: float
    outcome_payload: Dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @classmethod
    def from_row(cls, row: Candidate) -> "CandidateSnapshot":
        return cls(
            id=row.id,
            name=row.name,
            state_filter=row.state_filter,
            pattern_vector=list(row.pattern_vector) if row.pattern_vector is not None else None,
            learning_weight=float(row.learning_weight),
            fatigue_score=float(row.fatigue_score),
            outcome_payload=dict(row.outcome_payload or {}),
            version=int(row.version or 0),
        )


class CandidateRepository:
    """Reads candidates and applies versioned compare-and-swap writes."""

    def __init__(self, session_factory):
        self.Session = session_factory

    def get(self, candidate_id: str, session=None) -> CandidateSnapshot:
        s = session or self.Session()
        try:
            row = s.get(Candidate, candidate_id, populate_existing=True)
            if row is None:
                raise NotFoundError(f"Candidate not found: {candidate_id}")
            return CandidateSnapshot.from_row(row)
        finally:
            if session is None:
                s.close()

    def find_applicable(self, state_tag: Optional[str]) -> List[CandidateSnapshot]:
        """Candidates with no state filter or a filter equal to ``state_tag``."""
        s = self.Session()
        try:
            condition = Candidate.state_filter.is_(None)
            if state_tag is not None:
                condition = or_(condition, Candidate.state_filter == state_tag)
            rows = s.execute(select(Candidate).where(condition).order_by(Candidate.id)).scalars().all()
            return [CandidateSnapshot.from_row(r) for r in rows]
        finally:
            s.close()

    def get_many(self, candidate_ids, session=None) -> List[CandidateSnapshot]:
        ids = sorted(set(candidate_ids))
        if not ids:
            return []
        s = session or self.Session()
        try:
            rows = s.execute(
                select(Candidate).where(Candidate.id.in_(ids)).order_by(Candidate.id)
                .execution_options(populate_existing=True)
            ).scalars().all()
            return [CandidateSnapshot.from_row(r) for r in rows]
        finally:
            if session is None:
                s.close()

    def add(self, candidate: Candidate) -> CandidateSnapshot:
        s = self.Session()
        try:
            s.add(candidate)
            s.commit()
            return CandidateSnapshot.from_row(candidate)
        finally:
            s.close()

    def compare_and_swap(self, candidate_id: str, expected_version: int, session=None, **values) -> bool:
        """Write ``values`` only if the row is still at ``expected_version``.

        Args:
            candidate_id: Candidate to update
            expected_version: Version observed when the caller read the row
            session: Optional open session; when given the caller owns the commit
            **values: Columns to set (learning_weight, fatigue_score)

        Returns:
            bool: True if the swap happened, False if another writer got there first
        """
        if "learning_weight" in values:
            values["learning_weight"] = max(0.0, min(1.0, float(values["learning_weight"])))
        if "fatigue_score" in values:
            values["fatigue_score"] = max(0.0, float(values["fatigue_score"]))
        values["version"] = expected_version + 1
        values["updated_at"] = _utcnow()

        stmt = (
            update(Candidate)
            .where(Candidate.id == candidate_id, Candidate.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if session is not None:
            result = session.execute(stmt)
            return result.rowcount == 1

        s = self.Session()
        try:
            result = s.execute(stmt)
            if result.rowcount != 1:
                s.rollback()
                return False
            s.commit()
            return True
        finally:
            s.close()
