"""Entropy monitor and harmonization cycle.

Looks at a user's recent selection trajectory, scores how unstable it is and,
when the entropy crosses a threshold, applies bounded corrective actions to
the candidates the user has been exposed to.

Weight mutations, the per-user guard stamp and the harmonization record are
written in a single transaction with per-row compare-and-swap; a conflict
rolls everything back and the cycle is re-planned from fresh reads.
"""

import math
import logging
import statistics
import datetime
from collections import Counter
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from resonance_loop.errors import ConcurrencyConflict, DependencyError
from resonance_loop.personalization.models import HarmonizationEvent, HarmonizationGuard, _utcnow
from resonance_loop.personalization.weights import reset_weight, decay_weight
from resonance_loop.services.candidate_store import CandidateRepository
from resonance_loop.services.event_log import EventLog

logger = logging.getLogger(__name__)

STABLE, ELEVATED, CRITICAL = "stable", "elevated", "critical"

DEFAULT_WINDOW = 50
NEIGHBOR_SPAN = 4
DEFAULT_THRESHOLDS = {"elevated": 0.6, "critical": 0.8}
DEFAULT_INTERVAL = datetime.timedelta(hours=24)

GROUNDING_BOOST = "grounding_boost"
FIELD_RESET = "field_reset"
INTENTION_NUDGE = "intention_nudge"
WEIGHT_DECAY = "weight_decay"

# Actions that change candidate weights; the rest are recommendations
MUTATING_ACTIONS = {FIELD_RESET: reset_weight, WEIGHT_DECAY: decay_weight}


@dataclass
class EntropyMetrics:
    branch_divergence: float = 0.0
    ri_variance: float = 0.0
    field_fragmentation: float = 0.0
    overall_entropy: float = 0.0
    status: str = STABLE
    window_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HarmonizationAction:
    type: str
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HarmonizationReport:
    user_id: str
    status: str                       # "completed" or "not_due"
    entropy: Optional[EntropyMetrics] = None
    actions: List[HarmonizationAction] = field(default_factory=list)
    timestamp: Optional[datetime.datetime] = None
    next_check: Optional[datetime.datetime] = None
    mutated_candidates: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status,
            "entropy": self.entropy.to_dict() if self.entropy else None,
            "actions": [a.to_dict() for a in self.actions],
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "next_check": self.next_check.isoformat() if self.next_check else None,
            "mutated_candidates": list(self.mutated_candidates),
        }


def branch_divergence(events: Sequence[Any], span: int = NEIGHBOR_SPAN) -> float:
    """Mean pairwise divergence of each event against its next ``span`` neighbors."""
    if len(events) < 2:
        return 0.0
    total = 0.0
    comparisons = 0
    for i in range(len(events) - 1):
        for j in range(i + 1, min(i + 1 + span, len(events))):
            a, b = events[i], events[j]
            ri_diff = abs(a.resonance - b.resonance)
            state_diff = 1.0 if a.state_tag != b.state_tag else 0.0
            profile_diff = 1.0 if a.profile_id != b.profile_id else 0.0
            total += (ri_diff + state_diff + profile_diff) / 3.0
            comparisons += 1
    return total / comparisons if comparisons else 0.0


def resonance_spread(events: Sequence[Any]) -> float:
    """Population standard deviation of resonance across the window."""
    if not events:
        return 0.0
    return float(statistics.pstdev(float(e.resonance) for e in events))


def field_fragmentation(events: Sequence[Any]) -> float:
    """Shannon entropy of selection frequencies, normalized by log2(#distinct)."""
    counts = Counter(e.candidate_id for e in events if e.candidate_id)
    total = sum(counts.values())
    if total == 0 or len(counts) < 2:
        return 0.0
    entropy = -sum((c / total) * math.log2(c / total) for c in counts.values())
    return entropy / math.log2(len(counts))


def classify(overall: float, thresholds: Dict[str, float] = DEFAULT_THRESHOLDS) -> str:
    if overall >= thresholds["critical"]:
        return CRITICAL
    if overall >= thresholds["elevated"]:
        return ELEVATED
    return STABLE


def compute_entropy(events: Sequence[Any], thresholds: Dict[str, float] = DEFAULT_THRESHOLDS) -> EntropyMetrics:
    if len(events) < 2:
        return EntropyMetrics(window_size=len(events))
    bd = branch_divergence(events)
    rv = resonance_spread(events)
    ff = field_fragmentation(events)
    overall = 0.4 * bd + 0.3 * rv + 0.3 * ff
    return EntropyMetrics(
        branch_divergence=bd,
        ri_variance=rv,
        field_fragmentation=ff,
        overall_entropy=overall,
        status=classify(overall, thresholds),
        window_size=len(events),
    )


def plan_actions(entropy: EntropyMetrics) -> List[HarmonizationAction]:
    actions = []
    if entropy.status == CRITICAL:
        if entropy.ri_variance > 0.3:
            actions.append(HarmonizationAction(GROUNDING_BOOST, "High RI instability detected",
                                               {"variance": entropy.ri_variance}))
        if entropy.field_fragmentation > 0.8:
            actions.append(HarmonizationAction(FIELD_RESET, "Excessive field fragmentation",
                                               {"fragmentation": entropy.field_fragmentation}))
        actions.append(HarmonizationAction(INTENTION_NUDGE, "Critical entropy level - system recalibration",
                                           {"entropy": entropy.overall_entropy}))
    elif entropy.status == ELEVATED:
        if entropy.branch_divergence > 0.5:
            actions.append(HarmonizationAction(WEIGHT_DECAY, "High branch divergence",
                                               {"divergence": entropy.branch_divergence}))
        if entropy.ri_variance > 0.2:
            actions.append(HarmonizationAction(GROUNDING_BOOST, "Moderate RI instability",
                                               {"variance": entropy.ri_variance}))
    return actions


class Harmonizer:
    """Runs guarded harmonization cycles for one user at a time."""

    def __init__(
        self,
        session_factory,
        repository: CandidateRepository,
        event_log: EventLog,
        window: int = DEFAULT_WINDOW,
        interval: datetime.timedelta = DEFAULT_INTERVAL,
        thresholds: Optional[Dict[str, float]] = None,
        max_attempts: int = 3,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ):
        self.Session = session_factory
        self.repository = repository
        self.event_log = event_log
        self.window = window
        self.interval = interval
        self.thresholds = thresholds or dict(DEFAULT_THRESHOLDS)
        self.max_attempts = max(1, int(max_attempts))
        self.clock = clock or _utcnow

    def _read_guard(self, user_id: str, session) -> Optional[HarmonizationGuard]:
        return session.execute(
            select(HarmonizationGuard).where(HarmonizationGuard.user_id == user_id)
            .execution_options(populate_existing=True)
        ).scalars().first()

    def _due_after(self, guard: Optional[HarmonizationGuard]) -> Optional[datetime.datetime]:
        if guard is None:
            return None
        due = guard.last_run + self.interval
        return due if self.clock() - guard.last_run <= self.interval else None

    def _claim_guard(self, user_id: str, guard: Optional[HarmonizationGuard], now: datetime.datetime,
                     session) -> bool:
        """Stamp the guard row at the version read earlier; False if another cycle got there first."""
        if guard is None:
            session.add(HarmonizationGuard(user_id=user_id, last_run=now, version=0))
            try:
                session.flush()
            except IntegrityError:
                return False
            return True
        result = session.execute(
            update(HarmonizationGuard)
            .where(HarmonizationGuard.user_id == user_id, HarmonizationGuard.version == guard.version)
            .values(last_run=now, version=guard.version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def next_due(self, user_id: str, session=None) -> Optional[datetime.datetime]:
        """When the next unforced cycle may run, or None if it may run now."""
        s = session or self.Session()
        try:
            return self._due_after(self._read_guard(user_id, s))
        finally:
            if session is None:
                s.close()

    def evaluate(self, user_id: str) -> EntropyMetrics:
        events = self.event_log.recent_selections(user_id, limit=self.window)
        return compute_entropy(events, self.thresholds)

    def run_cycle(self, user_id: str, force: bool = False) -> HarmonizationReport:
        """Evaluate entropy and apply the resulting actions.

        Args:
            user_id: User whose trajectory is inspected
            force: Skip the re-execution guard

        Returns:
            HarmonizationReport with status "completed" or "not_due"
        """
        if not force:
            next_check = self.next_due(user_id)
            if next_check is not None:
                logger.info(f"Harmonization not due for {user_id} until {next_check.isoformat()}")
                return HarmonizationReport(user_id=user_id, status="not_due", next_check=next_check)

        for attempt in range(1, self.max_attempts + 1):
            report = self._attempt(user_id, force)
            if report is not None:
                return report
            logger.info(f"Harmonization for {user_id} hit a CAS conflict (attempt {attempt}/{self.max_attempts})")

        raise ConcurrencyConflict(f"Harmonization for {user_id} conflicted {self.max_attempts} times")

    def _attempt(self, user_id: str, force: bool) -> Optional[HarmonizationReport]:
        s = self.Session()
        try:
            guard = self._read_guard(user_id, s)
            if not force:
                next_check = self._due_after(guard)
                if next_check is not None:
                    return HarmonizationReport(user_id=user_id, status="not_due", next_check=next_check)

            events = self.event_log.recent_selections(user_id, limit=self.window, session=s)
            entropy = compute_entropy(events, self.thresholds)
            actions = plan_actions(entropy)

            mutated = []
            mutations = [MUTATING_ACTIONS[a.type] for a in actions if a.type in MUTATING_ACTIONS]
            if mutations:
                touched = self.event_log.touched_candidates(user_id, session=s)
                for snapshot in self.repository.get_many(touched, session=s):
                    weight = snapshot.learning_weight
                    for fn in mutations:
                        weight = fn(weight)
                    if not self.repository.compare_and_swap(snapshot.id, snapshot.version, session=s,
                                                            learning_weight=weight):
                        s.rollback()
                        return None
                    mutated.append(snapshot.id)

            now = self.clock()
            # Losing the guard means another cycle ran since our read
            if not self._claim_guard(user_id, guard, now, s):
                s.rollback()
                return None
            s.add(HarmonizationEvent(
                user_id=user_id,
                created_at=now,
                entropy=entropy.to_dict(),
                actions=[a.to_dict() for a in actions],
                forced=bool(force),
            ))
            s.commit()
        except SQLAlchemyError as e:
            s.rollback()
            logger.error(f"Harmonization for {user_id} failed, nothing applied: {e}")
            raise DependencyError(f"Harmonization storage failure: {e}") from e
        finally:
            s.close()

        for action in actions:
            if action.type not in MUTATING_ACTIONS:
                logger.info(f"Harmonization recommendation for {user_id}: {action.type} ({action.reason})")

        logger.info(
            f"Harmonization for {user_id}: status={entropy.status}, entropy={entropy.overall_entropy:.3f}, "
            f"actions={[a.type for a in actions]}, mutated={len(mutated)}"
        )
        return HarmonizationReport(
            user_id=user_id,
            status="completed",
            entropy=entropy,
            actions=actions,
            timestamp=now,
            mutated_candidates=mutated,
        )
