"""Learning-weight updates for candidates.

All mutations are compare-and-swap writes through the candidate repository,
retried a bounded number of times when another writer bumps the version first.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from resonance_loop.errors import ConcurrencyConflict
from resonance_loop.personalization.signals import clamp
from resonance_loop.services.candidate_store import CandidateRepository, CandidateSnapshot

logger = logging.getLogger(__name__)

DEFAULT_BASE_ETA = 0.05
DEFAULT_MAX_ATTEMPTS = 3
FIELD_RESET_WEIGHT = 0.5
DECAY_FACTOR = 0.9
DECAY_FLOOR = 0.1


@dataclass(frozen=True)
class WeightUpdate:
    candidate_id: str
    old_weight: float
    new_weight: float
    delta: float
    adaptive_eta: float


def adaptive_learning_rate(base_eta: float, confidence: float) -> float:
    return base_eta * (0.5 + 0.5 * clamp(confidence))


def compute_new_weight(current: float, fulfillment: float, confidence: float,
                       base_eta: float = DEFAULT_BASE_ETA) -> float:
    eta = adaptive_learning_rate(base_eta, confidence)
    return clamp(current + eta * fulfillment)


def reset_weight(_current: float) -> float:
    return FIELD_RESET_WEIGHT


def decay_weight(current: float, factor: float = DECAY_FACTOR) -> float:
    # The floor applies even when the weight already sits below it
    return clamp(max(DECAY_FLOOR, current * factor))


class WeightUpdater:
    """Applies confidence-scaled gradient steps and harmonizer primitives."""

    def __init__(self, repository: CandidateRepository, base_eta: float = DEFAULT_BASE_ETA,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.repository = repository
        self.base_eta = base_eta
        self.max_attempts = max(1, int(max_attempts))

    def _mutate(self, candidate_id: str, fn: Callable[[CandidateSnapshot], dict]) -> tuple:
        for attempt in range(1, self.max_attempts + 1):
            snapshot = self.repository.get(candidate_id)
            values = fn(snapshot)
            if self.repository.compare_and_swap(candidate_id, snapshot.version, **values):
                return snapshot, values
            logger.info(f"CAS conflict on candidate {candidate_id} (attempt {attempt}/{self.max_attempts})")
        raise ConcurrencyConflict(
            f"Candidate {candidate_id} changed concurrently {self.max_attempts} times; giving up"
        )

    def apply_feedback(self, candidate_id: str, fulfillment: float, confidence: float) -> WeightUpdate:
        """Move the candidate's weight by ``eta(confidence) * fulfillment``."""
        eta = adaptive_learning_rate(self.base_eta, confidence)

        snapshot, values = self._mutate(
            candidate_id,
            lambda snap: {"learning_weight": clamp(snap.learning_weight + eta * fulfillment)},
        )
        new_weight = values["learning_weight"]
        update = WeightUpdate(
            candidate_id=candidate_id,
            old_weight=snapshot.learning_weight,
            new_weight=new_weight,
            delta=new_weight - snapshot.learning_weight,
            adaptive_eta=eta,
        )
        logger.info(
            f"Weight update on {candidate_id}: {update.old_weight:.4f} -> {update.new_weight:.4f} "
            f"(eta={eta:.4f}, fulfillment={fulfillment:.3f})"
        )
        return update

    def increment_fatigue(self, candidate_id: str, amount: float = 1.0) -> float:
        _, values = self._mutate(
            candidate_id,
            lambda snap: {"fatigue_score": max(0.0, snap.fatigue_score + amount)},
        )
        return values["fatigue_score"]
