"""Signal normalization for biometric and interaction feedback.

Every raw physiological reading is mapped onto a [0, 1] score where higher
means calmer / more engaged. Functions here are pure.
"""

import math
from dataclasses import dataclass
from typing import Dict, Callable, Sequence

# Physiological bounds
HRV_MIN_MS = 20.0
HRV_MAX_MS = 100.0
BREATH_OPTIMAL_BPM = 6.0
BREATH_MAX_DEVIATION = 10.0
GSR_MIN_US = 1.0
GSR_MAX_US = 20.0
MOTION_MAX_ACCEL = 2.0

ANOMALY_Z_THRESHOLD = 3.0


@dataclass(frozen=True)
class BiometricSample:
    kind: str
    value: float
    confidence: float = 1.0
    timestamp: float | None = None


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def normalize_hrv(rmssd: float) -> float:
    return clamp((rmssd - HRV_MIN_MS) / (HRV_MAX_MS - HRV_MIN_MS))


def normalize_breath(bpm: float) -> float:
    return clamp(1.0 - abs(bpm - BREATH_OPTIMAL_BPM) / BREATH_MAX_DEVIATION)


def normalize_gsr(microsiemens: float) -> float:
    # Higher skin conductance means more arousal, so the scale is inverted
    return clamp(1.0 - (microsiemens - GSR_MIN_US) / (GSR_MAX_US - GSR_MIN_US))


def normalize_motion(acceleration: float) -> float:
    return clamp(1.0 - min(abs(acceleration) / MOTION_MAX_ACCEL, 1.0))


def normalize_interaction(value: float) -> float:
    return clamp(value)


_NORMALIZERS: Dict[str, Callable[[float], float]] = {
    "hrv": normalize_hrv,
    "breath": normalize_breath,
    "gsr": normalize_gsr,
    "motion": normalize_motion,
    "interaction": normalize_interaction,
}


def normalize_signal(kind: str, value: float) -> float:
    """Map a raw signal onto [0, 1]. Unknown kinds are treated as interaction signals."""
    normalizer = _NORMALIZERS.get((kind or "").lower(), normalize_interaction)
    result = normalizer(float(value))
    if math.isnan(result):
        return 0.0
    return result


def detect_anomaly(sample: BiometricSample, history: Sequence[BiometricSample]) -> bool:
    """Flag a sample whose z-score against recent same-kind history exceeds 3."""
    if len(history) < 5:
        return False

    recent = [s for s in list(history)[-10:] if s.kind == sample.kind]
    if len(recent) < 3:
        return False

    mean = sum(s.value for s in recent) / len(recent)
    variance = sum((s.value - mean) ** 2 for s in recent) / len(recent)
    std = math.sqrt(variance) or 1.0
    return abs((sample.value - mean) / std) > ANOMALY_Z_THRESHOLD
