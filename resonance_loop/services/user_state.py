"""Read-only access to user state (state tag, profile and resonance)."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from resonance_loop.errors import NotFoundError, DependencyError
from resonance_loop.personalization.models import UserState
from resonance_loop.personalization.signals import clamp

logger = logging.getLogger(__name__)

DEFAULT_RESONANCE = 0.5


@dataclass(frozen=True)
class UserStateSnapshot:
    user_id: str
    state_tag: Optional[str]
    profile_id: Optional[str]
    resonance: Optional[float]
    regulation_level: Optional[str] = None

    def describe(self, text: Optional[str] = None, emotion_hint: Optional[str] = None) -> str:
        """Text handed to the embedding service to build the user-state vector."""
        parts = [
            f"Profile: {self.profile_id}",
            f"State: {self.state_tag}",
            f"Regulation level: {self.regulation_level or 'unknown'}",
            text or "",
            f"Feeling: {emotion_hint}" if emotion_hint else "",
        ]
        return ". ".join(p for p in parts if p)


class UserStateStore:
    def __init__(self, session_factory, event_log=None):
        self.Session = session_factory
        self.event_log = event_log

    def get(self, user_id: str) -> UserStateSnapshot:
        s = self.Session()
        try:
            row = s.get(UserState, user_id)
        except SQLAlchemyError as e:
            raise DependencyError(f"User state store unavailable: {e}") from e
        finally:
            s.close()
        if row is None:
            raise NotFoundError(f"User state not found: {user_id}")
        return UserStateSnapshot(
            user_id=row.user_id,
            state_tag=row.state_tag,
            profile_id=row.profile_id,
            resonance=row.resonance,
            regulation_level=row.regulation_level,
        )

    def current_resonance(self, state: UserStateSnapshot) -> float:
        """Stored resonance, else the last selection's, else 0.5; always in [0, 1]."""
        if state.resonance is not None:
            return clamp(float(state.resonance))
        if self.event_log is not None:
            latest = self.event_log.latest_resonance(state.user_id)
            if latest is not None:
                return clamp(float(latest))
        return DEFAULT_RESONANCE
