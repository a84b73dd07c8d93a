from __future__ import annotations

import datetime
import random

import pytest

from resonance_loop.personalization.models import Candidate, SelectionEvent, UserState, create_session
from resonance_loop.services.resonance_service import ResonanceService
from resonance_loop.services.state_service import EngineState
from resonance_loop.utils.embedding import EmbeddingService


T0 = datetime.datetime(2025, 1, 1, 12, 0, 0)


class FixedClock:
    """Manually advanced clock returning naive UTC datetimes."""

    def __init__(self, start: datetime.datetime = T0):
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + datetime.timedelta(**kwargs)


class StubRandom:
    """Random source that replays fixed draws (last one repeats)."""

    def __init__(self, *draws: float):
        self.draws = list(draws) or [0.0]
        self.calls = 0

    def random(self) -> float:
        value = self.draws[min(self.calls, len(self.draws) - 1)]
        self.calls += 1
        return value


@pytest.fixture
def session_factory(monkeypatch):
    monkeypatch.delenv("ROE_DB_URL", raising=False)
    return create_session("sqlite://")


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def add_candidate(session_factory):
    def _add(candidate_id: str, weight: float = 0.5, fatigue: float = 0.0, state_filter=None,
             vector=None, payload=None) -> None:
        s = session_factory()
        s.add(Candidate(
            id=candidate_id,
            name=candidate_id.title(),
            state_filter=state_filter,
            pattern_vector=vector,
            learning_weight=weight,
            fatigue_score=fatigue,
            outcome_payload=payload or {"type": "ritual", "id": candidate_id},
            version=0,
        ))
        s.commit()
        s.close()
    return _add


@pytest.fixture
def add_user(session_factory):
    def _add(user_id: str = "u1", state_tag: str | None = "calm", profile_id: str | None = "p1",
             resonance: float | None = 0.7) -> None:
        s = session_factory()
        s.add(UserState(user_id=user_id, state_tag=state_tag, profile_id=profile_id, resonance=resonance))
        s.commit()
        s.close()
    return _add


@pytest.fixture
def add_selection(session_factory):
    def _add(user_id: str, candidate_id: str, resonance: float, created_at: datetime.datetime,
             state_tag: str = "calm", profile_id: str = "p1") -> None:
        s = session_factory()
        s.add(SelectionEvent(user_id=user_id, candidate_id=candidate_id, resonance=resonance,
                             state_tag=state_tag, profile_id=profile_id, created_at=created_at))
        s.commit()
        s.close()
    return _add


@pytest.fixture
def get_weight(session_factory):
    def _get(candidate_id: str) -> float:
        s = session_factory()
        try:
            return s.get(Candidate, candidate_id).learning_weight
        finally:
            s.close()
    return _get


@pytest.fixture
def service(session_factory, clock):
    return ResonanceService(
        session_factory=session_factory,
        state=EngineState(),
        embedding_service=EmbeddingService(method="none"),
        rng=random.Random(7),
        clock=clock,
    )
