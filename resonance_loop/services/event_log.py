"""Append-only event log for selection and feedback records.

Writes are best effort: a failed append is logged as a warning and reported
to the caller as ``False`` instead of failing the request. Reads return each
user's stream in causal order (newest first, ties broken by insert id).
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from resonance_loop.personalization.models import SelectionEvent, FeedbackRecord

logger = logging.getLogger(__name__)


class EventLog:
    """Append-only sink and reader for the engine's records."""

    def __init__(self, session_factory):
        self.Session = session_factory

    def append(self, record) -> bool:
        """Persist one record in its own transaction.

        Returns:
            bool: True if stored, False if the write failed (already logged)
        """
        s = self.Session()
        try:
            s.add(record)
            s.commit()
            return True
        except SQLAlchemyError as e:
            s.rollback()
            logger.warning(f"Event log write failed for {type(record).__name__}: {e}")
            return False
        finally:
            s.close()

    def recent_selections(self, user_id: str, limit: int = 50, session=None) -> List[SelectionEvent]:
        s = session or self.Session()
        try:
            stmt = (
                select(SelectionEvent)
                .where(SelectionEvent.user_id == user_id)
                .order_by(SelectionEvent.created_at.desc(), SelectionEvent.id.desc())
                .limit(limit)
            )
            return list(s.execute(stmt).scalars().all())
        finally:
            if session is None:
                s.close()

    def latest_resonance(self, user_id: str) -> Optional[float]:
        events = self.recent_selections(user_id, limit=1)
        return events[0].resonance if events else None

    def touched_candidates(self, user_id: str, session=None) -> List[str]:
        """Every distinct candidate the user has ever been given."""
        s = session or self.Session()
        try:
            stmt = (
                select(SelectionEvent.candidate_id)
                .where(SelectionEvent.user_id == user_id)
                .distinct()
                .order_by(SelectionEvent.candidate_id)
            )
            return [row for row in s.execute(stmt).scalars().all() if row]
        finally:
            if session is None:
                s.close()

    def active_users(self) -> List[str]:
        """Users with at least one selection event."""
        s = self.Session()
        try:
            stmt = select(SelectionEvent.user_id).distinct().order_by(SelectionEvent.user_id)
            return list(s.execute(stmt).scalars().all())
        finally:
            s.close()

    def feedback_for(self, user_id: str, limit: int = 50) -> List[FeedbackRecord]:
        s = self.Session()
        try:
            stmt = (
                select(FeedbackRecord)
                .where(FeedbackRecord.user_id == user_id)
                .order_by(FeedbackRecord.created_at.desc(), FeedbackRecord.id.desc())
                .limit(limit)
            )
            return list(s.execute(stmt).scalars().all())
        finally:
            s.close()
