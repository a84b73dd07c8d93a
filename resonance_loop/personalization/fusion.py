"""Multi-signal feedback fusion.

Fuses a self-report, behavioral interaction metrics and biometric samples into
a single fulfillment score in [-1, 1] together with a confidence in [0, 1].

The fused score drives the learning-weight update, so the confidence is what
keeps a single noisy modality from moving a candidate's weight as much as
three agreeing ones would.
"""

import math
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Any

from resonance_loop.errors import ValidationError
from resonance_loop.personalization.signals import BiometricSample, clamp, normalize_signal

logger = logging.getLogger(__name__)

SELF, BEHAVIORAL, BIOMETRIC = "self_report", "behavioral", "biometric"

# (self, behavioral, biometric) keyed by which modalities are present
BASE_WEIGHTS: Dict[frozenset, Tuple[float, float, float]] = {
    frozenset({SELF, BEHAVIORAL, BIOMETRIC}): (0.5, 0.3, 0.2),
    frozenset({SELF, BEHAVIORAL}): (0.6, 0.4, 0.0),
    frozenset({SELF, BIOMETRIC}): (0.7, 0.0, 0.3),
    frozenset({SELF}): (1.0, 0.0, 0.0),
}

METRIC_WEIGHTS = {
    "completion_rate": 0.3,
    "dwell_time_seconds": 0.25,
    "focus_ratio": 0.2,
    "scroll_depth": 0.15,
    "revisit_count": 0.1,
}

DWELL_OPTIMAL_SECONDS = 300.0
DWELL_MIN_SECONDS = 60.0
DWELL_MAX_SECONDS = 600.0
REVISIT_SATURATION = 3.0
AGREEMENT_STD_SCALE = 0.5
DEFAULT_SELF_REPORT_FLOOR = 0.7


@dataclass
class FusionResult:
    composite: float
    confidence: float
    self_report: Optional[float] = None
    behavioral: Optional[float] = None
    biometric: Optional[float] = None
    weights: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    modalities: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "composite": self.composite,
            "confidence": self.confidence,
            "self_report": self.self_report,
            "behavioral": self.behavioral,
            "biometric": self.biometric,
            "weights": list(self.weights),
            "modalities": list(self.modalities),
        }


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_self_report(self_report) -> float:
    if not _is_number(self_report):
        raise ValidationError("self_report must be a number between -1 and 1")
    if self_report < -1.0 or self_report > 1.0:
        raise ValidationError("self_report must be between -1 and 1")
    return float(self_report)


def validate_behavioral_metrics(metrics: Optional[Dict[str, Any]]) -> Dict[str, float]:
    """Drop unknown keys and reject non-numeric or negative values."""
    if not metrics:
        return {}
    if not isinstance(metrics, dict):
        raise ValidationError("behavioral_metrics must be an object")
    cleaned = {}
    for key, value in metrics.items():
        if key not in METRIC_WEIGHTS or value is None:
            continue
        if not _is_number(value) or value < 0:
            raise ValidationError(f"behavioral metric {key} must be a non-negative number")
        cleaned[key] = float(value)
    return cleaned


def validate_biometric_signals(signals: Optional[Sequence[Any]]) -> List[BiometricSample]:
    """Accept BiometricSample instances or dicts with kind/type, value, confidence."""
    if not signals:
        return []
    samples = []
    for raw in signals:
        if isinstance(raw, BiometricSample):
            sample = raw
        elif isinstance(raw, dict):
            kind = raw.get("kind", raw.get("type"))
            value = raw.get("value")
            confidence = raw.get("confidence", 1.0)
            if not isinstance(kind, str) or not _is_number(value) or not _is_number(confidence):
                raise ValidationError("biometric signals need a kind, a numeric value and a numeric confidence")
            sample = BiometricSample(kind=kind, value=float(value), confidence=float(confidence),
                                     timestamp=raw.get("timestamp"))
        else:
            raise ValidationError(f"Unsupported biometric signal: {raw!r}")
        if sample.confidence < 0.0 or sample.confidence > 1.0:
            raise ValidationError("biometric signal confidence must be between 0 and 1")
        samples.append(sample)
    return samples


def normalize_dwell_time(seconds: float) -> float:
    if seconds < DWELL_MIN_SECONDS:
        return clamp(seconds / DWELL_MIN_SECONDS)
    if seconds > DWELL_MAX_SECONDS:
        return clamp(1.0 - (seconds - DWELL_MAX_SECONDS) / DWELL_MAX_SECONDS)
    return clamp(1.0 - abs(seconds - DWELL_OPTIMAL_SECONDS) / DWELL_OPTIMAL_SECONDS)


def _metric_unit_score(name: str, value: float) -> float:
    if name == "dwell_time_seconds":
        return normalize_dwell_time(value)
    if name == "revisit_count":
        return min(value / REVISIT_SATURATION, 1.0)
    if name == "scroll_depth":
        return clamp(value / 100.0)
    return clamp(value)


def behavioral_score(metrics: Dict[str, float]) -> Optional[float]:
    """Weighted mean of the available metrics, each mapped to [-1, 1]."""
    total = 0.0
    used = 0.0
    for name, weight in METRIC_WEIGHTS.items():
        if name not in metrics:
            continue
        total += weight * (2.0 * _metric_unit_score(name, metrics[name]) - 1.0)
        used += weight
    if used == 0.0:
        return None
    return clamp(total / used, -1.0, 1.0)


def biometric_score(samples: Sequence[BiometricSample]) -> Optional[float]:
    """Confidence-weighted mean of normalized samples, rescaled to [-1, 1]."""
    total_confidence = sum(s.confidence for s in samples)
    if total_confidence <= 0.0:
        return None
    weighted = sum(normalize_signal(s.kind, s.value) * s.confidence for s in samples)
    return clamp(2.0 * (weighted / total_confidence) - 1.0, -1.0, 1.0)


def base_weights(present: frozenset) -> Tuple[float, float, float]:
    if present in BASE_WEIGHTS:
        return BASE_WEIGHTS[present]
    # Without a self-report, spread the full-set weights over whatever is present
    full = dict(zip((SELF, BEHAVIORAL, BIOMETRIC), BASE_WEIGHTS[frozenset({SELF, BEHAVIORAL, BIOMETRIC})]))
    norm = sum(full[m] for m in present)
    return tuple(full[m] / norm if m in present else 0.0 for m in (SELF, BEHAVIORAL, BIOMETRIC))


def agreement(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 1.0
    mean = sum(values) / len(values)
    std = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
    return 1.0 - min(std / AGREEMENT_STD_SCALE, 1.0)


def fuse_feedback(
    self_report: Optional[float] = None,
    behavioral_metrics: Optional[Dict[str, Any]] = None,
    biometric_signals: Optional[Sequence[Any]] = None,
    self_report_floor: float = DEFAULT_SELF_REPORT_FLOOR,
) -> FusionResult:
    """Fuse whatever modalities are present into a fulfillment score.

    Args:
        self_report: Optional rating in [-1, 1]
        behavioral_metrics: Optional dict of completion_rate, revisit_count,
            dwell_time_seconds, scroll_depth (percent) and focus_ratio
        biometric_signals: Optional samples (BiometricSample or dicts)
        self_report_floor: Minimum modality coverage when a self-report is present

    Returns:
        FusionResult with composite in [-1, 1] and confidence in [0, 1]
    """
    if self_report is not None:
        self_report = validate_self_report(self_report)
    metrics = validate_behavioral_metrics(behavioral_metrics)
    samples = validate_biometric_signals(biometric_signals)

    scores = {
        SELF: self_report,
        BEHAVIORAL: behavioral_score(metrics),
        BIOMETRIC: biometric_score(samples),
    }
    present = frozenset(name for name, score in scores.items() if score is not None)

    if not present:
        return FusionResult(composite=0.0, confidence=0.0)

    weights = base_weights(present)
    composite = sum(
        w * scores[name] for name, w in zip((SELF, BEHAVIORAL, BIOMETRIC), weights) if name in present
    )
    composite = clamp(composite, -1.0, 1.0)

    coverage = min(len(present) / 3.0, 1.0)
    if SELF in present:
        coverage = max(coverage, self_report_floor)
    present_values = [scores[name] for name in (SELF, BEHAVIORAL, BIOMETRIC) if name in present]
    confidence = clamp(coverage * agreement(present_values))

    ordered = [name for name in (SELF, BEHAVIORAL, BIOMETRIC) if name in present]
    logger.debug(f"Fused feedback from {ordered}: composite={composite:.3f}, confidence={confidence:.3f}")

    return FusionResult(
        composite=composite,
        confidence=confidence,
        self_report=scores[SELF],
        behavioral=scores[BEHAVIORAL],
        biometric=scores[BIOMETRIC],
        weights=weights,
        modalities=ordered,
    )
