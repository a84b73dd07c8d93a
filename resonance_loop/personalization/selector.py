"""Candidate selection.

Score(c) = alpha * cosine(user_vec, c.pattern_vector)
         + beta  * resonance
         + gamma * c.learning_weight
         - delta * (exp(c.fatigue_score / 10) - 1)

The top-K candidates are turned into a low-temperature softmax distribution and
one is drawn by inverse CDF. When no user embedding is available the pattern
term is skipped instead of failing.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from resonance_loop.errors import NotFoundError
from resonance_loop.personalization.signals import clamp
from resonance_loop.services.candidate_store import CandidateSnapshot

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = {"alpha": 0.4, "beta": 0.3, "gamma": 0.2, "delta": 0.1}
DEFAULT_TOP_K = 5
DEFAULT_TEMPERATURE = 0.2
FATIGUE_EXPONENT_CAP = 50.0


@dataclass
class ScoredCandidate:
    candidate: CandidateSnapshot
    score: float
    pattern_match: float
    resonance: float
    learning_weight: float
    fatigue_penalty: float
    probability: float = 0.0

    @property
    def components(self) -> Dict[str, float]:
        return {
            "pattern_match": self.pattern_match,
            "resonance_contribution": self.resonance,
            "learning_prior": self.learning_weight,
            "fatigue_penalty": self.fatigue_penalty,
        }


@dataclass
class SelectionResult:
    selected: ScoredCandidate
    alternatives: List[ScoredCandidate] = field(default_factory=list)
    reasoning: str = ""
    vectorized: bool = False


def fatigue_penalty(fatigue_score: float) -> float:
    # Fatigue never decreases; capping the exponent keeps the penalty finite
    exponent = min(max(0.0, fatigue_score) / 10.0, FATIGUE_EXPONENT_CAP)
    return float(np.exp(exponent) - 1.0)


def cosine_similarity(a, b) -> float:
    """Cosine similarity, or 0 for missing, mismatched or zero-norm vectors."""
    if a is None or b is None:
        return 0.0
    a = np.asarray(a, dtype=float).ravel()
    b = np.asarray(b, dtype=float).ravel()
    if a.size == 0 or a.shape != b.shape:
        return 0.0
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0 or not np.isfinite(denom):
        return 0.0
    return float(np.dot(a, b) / denom)


def batch_pattern_match(user_vec, candidates: Sequence[CandidateSnapshot]) -> np.ndarray:
    """Cosine similarity of ``user_vec`` against every candidate's pattern vector.

    Candidates without a vector or with a different dimension score 0.
    """
    matches = np.zeros(len(candidates), dtype=float)
    if user_vec is None:
        return matches
    user = np.asarray(user_vec, dtype=float).ravel()
    user_norm = np.linalg.norm(user)
    if user.size == 0 or user_norm == 0 or not np.isfinite(user_norm):
        return matches

    idx = [i for i, c in enumerate(candidates)
           if c.pattern_vector is not None and len(c.pattern_vector) == user.size]
    if not idx:
        return matches

    matrix = np.asarray([candidates[i].pattern_vector for i in idx], dtype=float)
    norms = np.linalg.norm(matrix, axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = (matrix @ user) / (norms * user_norm)
    sims = np.where((norms > 0) & np.isfinite(sims), sims, 0.0)
    matches[idx] = sims
    return matches


def softmax(scores: Sequence[float], temperature: float) -> np.ndarray:
    """Max-shifted softmax. Non-finite scores get probability 0; if none is finite, uniform."""
    with np.errstate(over="ignore", invalid="ignore"):
        values = np.asarray(scores, dtype=float) / max(float(temperature), 1e-9)
    finite = np.isfinite(values)
    if not finite.any():
        return np.full(len(values), 1.0 / len(values))
    values = np.where(finite, values - values[finite].max(), -np.inf)
    exp = np.exp(values)
    return exp / exp.sum()


def sample_index(probabilities: Sequence[float], draw: float) -> int:
    """Inverse-CDF lookup: first index whose cumulative probability reaches ``draw``."""
    cdf = np.cumsum(probabilities)
    index = int(np.searchsorted(cdf, draw, side="left"))
    return min(index, len(cdf) - 1)


def filter_applicable(candidates: Sequence[CandidateSnapshot], state_tag: Optional[str]) -> List[CandidateSnapshot]:
    return [c for c in candidates if c.state_filter is None or c.state_filter == state_tag]


class SelectionEngine:
    """Scores and stochastically picks one candidate per request."""

    def __init__(self, alpha: float = 0.4, beta: float = 0.3, gamma: float = 0.2, delta: float = 0.1,
                 top_k: int = DEFAULT_TOP_K, temperature: float = DEFAULT_TEMPERATURE, rng=None):
        self.alpha = alpha
        self.beta = beta
        self.gamma = gamma
        self.delta = delta
        self.top_k = max(1, int(top_k))
        self.temperature = temperature
        self.rng = rng if rng is not None else np.random.default_rng()

    @classmethod
    def from_config(cls, config: Dict, rng=None) -> "SelectionEngine":
        return cls(
            alpha=config.get("alpha", DEFAULT_WEIGHTS["alpha"]),
            beta=config.get("beta", DEFAULT_WEIGHTS["beta"]),
            gamma=config.get("gamma", DEFAULT_WEIGHTS["gamma"]),
            delta=config.get("delta", DEFAULT_WEIGHTS["delta"]),
            top_k=config.get("top_k", DEFAULT_TOP_K),
            temperature=config.get("temperature", DEFAULT_TEMPERATURE),
            rng=rng,
        )

    def score(self, candidates: Sequence[CandidateSnapshot], resonance: float,
              user_vec=None) -> List[ScoredCandidate]:
        """Score every candidate, highest first. Ties keep input order."""
        resonance = clamp(resonance)
        matches = batch_pattern_match(user_vec, candidates)
        scored = []
        for candidate, match in zip(candidates, matches):
            penalty = fatigue_penalty(candidate.fatigue_score)
            total = (self.alpha * match + self.beta * resonance
                     + self.gamma * candidate.learning_weight - self.delta * penalty)
            scored.append(ScoredCandidate(
                candidate=candidate,
                score=float(total),
                pattern_match=float(match),
                resonance=resonance,
                learning_weight=candidate.learning_weight,
                fatigue_penalty=penalty,
            ))
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored

    def select(self, candidates: Sequence[CandidateSnapshot], resonance: float, state_tag: Optional[str] = None,
               user_vec=None) -> SelectionResult:
        """Filter, score, take the top-K and sample one candidate.

        Raises:
            NotFoundError: No candidate applies to ``state_tag``
        """
        applicable = filter_applicable(candidates, state_tag)
        if not applicable:
            raise NotFoundError(f"No candidates available for state {state_tag!r}")

        top = self.score(applicable, resonance, user_vec)[:self.top_k]
        probabilities = softmax([s.score for s in top], self.temperature)
        for scored, p in zip(top, probabilities):
            scored.probability = float(p)

        index = sample_index(probabilities, float(self.rng.random()))
        selected = top[index]
        alternatives = [s for i, s in enumerate(top) if i != index]

        logger.info(
            f"Selected {selected.candidate.id} (score={selected.score:.3f}, p={selected.probability:.3f}) "
            f"from {len(applicable)} applicable candidates"
        )
        return SelectionResult(
            selected=selected,
            alternatives=alternatives,
            reasoning=generate_reasoning(selected),
            vectorized=user_vec is not None,
        )


def _dominant_component(scored: ScoredCandidate) -> Optional[str]:
    values = {
        "pattern resonance": scored.pattern_match,
        "current state coherence": scored.resonance,
        "evidence-based effectiveness": scored.learning_weight,
    }
    name, value = max(values.items(), key=lambda kv: kv[1])
    return name if value >= 0.6 else None


def generate_reasoning(scored: ScoredCandidate) -> str:
    reasons = []
    if scored.pattern_match > 0.7:
        reasons.append(f"Strong pattern alignment ({scored.pattern_match * 100:.0f}%)")
    if scored.resonance > 0.75:
        reasons.append(f"High coherence state (RI: {scored.resonance:.2f})")
    elif scored.resonance < 0.4:
        reasons.append(f"Supporting stabilization (RI: {scored.resonance:.2f})")
    if scored.learning_weight > 0.7:
        reasons.append("Previously effective pathway")
    if scored.fatigue_penalty > 1.0:
        reasons.append("Introducing variety to prevent habituation")
    dominant = _dominant_component(scored)
    if dominant:
        reasons.append(f"Primary driver: {dominant}")
    if not reasons:
        return f"Selected via weighted sampling (score: {scored.score:.3f})"
    return ". ".join(reasons)
