import os
import datetime
from sqlalchemy import (
    create_engine, Column, Integer, String, DateTime, JSON, Float, Boolean, Index
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

DEFAULT_DB_URL = "sqlite:///resonance_loop.db"
DB_TIMEOUT_SECONDS = 5


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class UserState(Base):
    """Read-only view of a user's current state, owned by the assessment side."""
    __tablename__ = "user_states"
    user_id = Column(String, primary_key=True)
    state_tag = Column(String, nullable=True)       # e.g. "anxious", "grounded"
    profile_id = Column(String, nullable=True)
    resonance = Column(Float, nullable=True)        # 0–1, null until first computed
    regulation_level = Column(String, nullable=True)
    updated_at = Column(DateTime, default=_utcnow)


class Candidate(Base):
    __tablename__ = "candidates"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    state_filter = Column(String, nullable=True)    # null = applies to every state
    pattern_vector = Column(JSON, nullable=True)    # list[float]
    learning_weight = Column(Float, nullable=False, default=0.5)
    fatigue_score = Column(Float, nullable=False, default=0.0)
    outcome_payload = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=0)  # CAS token
    updated_at = Column(DateTime, default=_utcnow)


class SelectionEvent(Base):
    __tablename__ = "selection_events"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=_utcnow)
    user_id = Column(String, nullable=False)
    candidate_id = Column(String, nullable=False)
    resonance = Column(Float, nullable=False)
    state_tag = Column(String, nullable=True)
    profile_id = Column(String, nullable=True)
    intent = Column(String, nullable=True)
    score = Column(Float, nullable=True)

    __table_args__ = (Index("ix_selection_events_user_time", "user_id", "created_at"),)


class FeedbackRecord(Base):
    __tablename__ = "feedback_records"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=_utcnow)
    user_id = Column(String, nullable=False)
    candidate_id = Column(String, nullable=False)
    signals = Column(JSON, nullable=False)          # {"self_report":..,"behavioral":..,"biometric":[..]}
    fulfillment_score = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    weight_delta = Column(Float, nullable=False)
    resonance_delta = Column(Float, nullable=True)


class HarmonizationEvent(Base):
    __tablename__ = "harmonization_events"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=_utcnow)
    user_id = Column(String, nullable=False)
    entropy = Column(JSON, nullable=False)
    actions = Column(JSON, nullable=False)          # [{"type":..,"reason":..,"metadata":..}]
    forced = Column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("ix_harmonization_events_user_time", "user_id", "created_at"),)


class HarmonizationGuard(Base):
    """One row per user; ``version`` is the CAS token for claiming a cycle."""
    __tablename__ = "harmonization_guards"
    user_id = Column(String, primary_key=True)
    last_run = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False, default=0)


def create_session(db_url: str | None = None):
    """Create a SQLAlchemy session factory.

    Priority: env var ROE_DB_URL -> provided db_url -> sqlite fallback.
    In-memory SQLite shares a single connection so every session sees the same data.
    """
    effective_url = os.environ.get("ROE_DB_URL", db_url or DEFAULT_DB_URL)
    if effective_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": DB_TIMEOUT_SECONDS}}
        if effective_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(effective_url, **kwargs)
    else:
        engine = create_engine(effective_url, pool_timeout=DB_TIMEOUT_SECONDS, pool_pre_ping=True)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
