import pytest

from resonance_loop.personalization.signals import (
    BiometricSample,
    detect_anomaly,
    normalize_signal,
)


@pytest.mark.parametrize(
    "kind,value,expected",
    [
        ("hrv", 20, 0.0),
        ("hrv", 60, 0.5),
        ("hrv", 100, 1.0),
        ("hrv", 150, 1.0),
        ("breath", 6, 1.0),
        ("breath", 11, 0.5),
        ("breath", 20, 0.0),
        ("gsr", 1, 1.0),
        ("gsr", 10.5, 0.5),
        ("gsr", 20, 0.0),
        ("motion", 0.0, 1.0),
        ("motion", 1.0, 0.5),
        ("motion", 5.0, 0.0),
        ("interaction", 1.7, 1.0),
        ("interaction", -0.2, 0.0),
    ],
)
def test_normalize_signal_known_kinds(kind, value, expected):
    assert normalize_signal(kind, value) == pytest.approx(expected)


def test_unknown_kind_behaves_like_interaction():
    assert normalize_signal("skin_temperature", 0.4) == pytest.approx(0.4)
    assert normalize_signal("skin_temperature", 3.0) == 1.0
    assert normalize_signal("skin_temperature", -1.0) == 0.0


def test_kind_lookup_is_case_insensitive():
    assert normalize_signal("HRV", 60) == pytest.approx(0.5)


def test_detect_anomaly_flags_outlier():
    history = [BiometricSample("hrv", v) for v in (50, 51, 49, 50, 52, 48)]
    assert detect_anomaly(BiometricSample("hrv", 70), history)
    assert not detect_anomaly(BiometricSample("hrv", 51), history)


def test_detect_anomaly_needs_enough_history():
    history = [BiometricSample("hrv", v) for v in (50, 51, 49)]
    assert not detect_anomaly(BiometricSample("hrv", 500), history)

    mixed = [BiometricSample("gsr", 5)] * 4 + [BiometricSample("hrv", 50)] * 2
    assert not detect_anomaly(BiometricSample("hrv", 500), mixed)
