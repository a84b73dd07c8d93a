from concurrent.futures import ThreadPoolExecutor

import pytest

from resonance_loop.services.state_service import EngineState


def test_defaults():
    state = EngineState()
    config = state.get_config()
    assert (config["alpha"], config["beta"], config["gamma"], config["delta"]) == (0.4, 0.3, 0.2, 0.1)
    assert config["top_k"] == 5
    assert config["temperature"] == 0.2
    assert config["cas_max_attempts"] == 3
    assert config["harmonization_interval_hours"] == 24.0


def test_get_config_returns_a_copy():
    state = EngineState()
    state.get_config()["alpha"] = 99
    assert state.config["alpha"] == 0.4


@pytest.mark.parametrize(
    "update",
    [
        {"alpha": -0.1},
        {"top_k": 2.5},
        {"temperature": 0},
        {"cas_max_attempts": True},
        {"embedding_method": "word2vec"},
        {"critical_threshold": 0.5},
        {"unknown": 1},
        {"enable_analytics": "no"},
        {"embedding_url": 5},
        {"embedding_model": ""},
        {"embedding_model": None},
    ],
)
def test_invalid_updates_are_rejected_atomically(update):
    state = EngineState()
    before = state.get_config()
    assert not state.update_config(update)
    assert state.get_config() == before


def test_integer_settings_are_normalized():
    state = EngineState()
    assert state.update_config({"top_k": 3.0})
    assert state.config["top_k"] == 3
    assert isinstance(state.config["top_k"], int)


def test_constructor_rejects_bad_config():
    with pytest.raises(ValueError):
        EngineState({"beta": "high"})


def test_analytics_and_health_score():
    state = EngineState()
    state.update_analytics("selections", count=4)
    state.update_analytics("error_count")
    stats = state.get_system_stats()
    assert stats["analytics"]["selections"] == 4
    assert stats["health_score"] == pytest.approx(0.5)

    state.reset_analytics()
    assert state.get_analytics()["selections"] == 0
    assert state.get_system_stats()["health_score"] == 1.0


def test_analytics_can_be_disabled():
    state = EngineState({"enable_analytics": False})
    state.update_analytics("selections")
    assert state.get_analytics()["selections"] == 0


def test_non_numeric_settings_accept_their_types():
    state = EngineState()
    assert state.update_config({"embedding_url": "http://localhost:8080/embed", "embedding_model": "mini"})
    assert state.update_config({"embedding_url": None, "enable_analytics": False})
    assert state.config["enable_analytics"] is False


def test_concurrent_analytics_updates_are_not_lost():
    state = EngineState()

    def bump(_):
        for _ in range(1000):
            state.update_analytics("selections")
            state.update_analytics("feedback_submissions", count=2)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(bump, range(8)))

    analytics = state.get_analytics()
    assert analytics["selections"] == 8000
    assert analytics["feedback_submissions"] == 16000
