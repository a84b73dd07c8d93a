import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from resonance_loop.errors import ConcurrencyConflict
from resonance_loop.personalization.harmonizer import (
    CRITICAL,
    ELEVATED,
    STABLE,
    Harmonizer,
    branch_divergence,
    classify,
    compute_entropy,
    field_fragmentation,
    plan_actions,
    resonance_spread,
)
from resonance_loop.personalization.models import HarmonizationEvent, SelectionEvent, create_session
from resonance_loop.services.candidate_store import CandidateRepository
from resonance_loop.services.event_log import EventLog

from conftest import T0


def ev(resonance, candidate_id="a", state_tag="calm", profile_id="p1"):
    return SimpleNamespace(resonance=resonance, candidate_id=candidate_id, state_tag=state_tag, profile_id=profile_id)


class ConflictOnRepository(CandidateRepository):
    def __init__(self, session_factory, conflict_id):
        super().__init__(session_factory)
        self.conflict_id = conflict_id

    def compare_and_swap(self, candidate_id, expected_version, session=None, **values):
        if candidate_id == self.conflict_id:
            return False
        return super().compare_and_swap(candidate_id, expected_version, session=session, **values)


def make_harmonizer(session_factory, clock, repository=None):
    return Harmonizer(
        session_factory,
        repository or CandidateRepository(session_factory),
        EventLog(session_factory),
        clock=clock,
    )


def harmonization_count(session_factory):
    s = session_factory()
    try:
        return s.execute(select(func.count()).select_from(HarmonizationEvent)).scalar_one()
    finally:
        s.close()


def test_single_event_window_is_stable():
    metrics = compute_entropy([ev(0.5)])
    assert metrics.overall_entropy == 0.0
    assert metrics.status == STABLE
    assert metrics.window_size == 1


def test_identical_trajectory_has_zero_entropy():
    metrics = compute_entropy([ev(0.6) for _ in range(10)])
    assert metrics.branch_divergence == 0.0
    assert metrics.ri_variance == 0.0
    assert metrics.field_fragmentation == 0.0
    assert metrics.status == STABLE


def test_branch_divergence_uses_near_neighbors_only():
    # Only events 4 apart or less are compared; 0 and 5 never meet
    events = [ev(0.0)] + [ev(0.5)] * 4 + [ev(1.0)]
    pairs = 0
    total = 0.0
    for i in range(len(events) - 1):
        for j in range(i + 1, min(i + 5, len(events))):
            total += abs(events[i].resonance - events[j].resonance) / 3.0
            pairs += 1
    assert branch_divergence(events) == pytest.approx(total / pairs)


def test_resonance_spread_is_population_std():
    assert resonance_spread([ev(0.0), ev(1.0)]) == pytest.approx(0.5)
    assert resonance_spread([ev(0.6)] * 10) == 0.0


def test_field_fragmentation_normalized():
    assert field_fragmentation([ev(0.5, "a"), ev(0.5, "b")]) == pytest.approx(1.0)
    assert field_fragmentation([ev(0.5, "a")] * 3) == 0.0
    skewed = field_fragmentation([ev(0.5, "a")] * 3 + [ev(0.5, "b")])
    assert 0.0 < skewed < 1.0


@pytest.mark.parametrize("overall,status", [(0.59, STABLE), (0.6, ELEVATED), (0.79, ELEVATED), (0.8, CRITICAL)])
def test_classify_thresholds(overall, status):
    assert classify(overall) == status


def test_critical_plan():
    metrics = compute_entropy([ev(0.0, "a", "s0", "p0"), ev(1.0, "b", "s1", "p1")])
    assert metrics.overall_entropy == pytest.approx(0.85)
    assert metrics.status == CRITICAL
    assert [a.type for a in plan_actions(metrics)] == ["grounding_boost", "field_reset", "intention_nudge"]


def test_elevated_plan():
    metrics = compute_entropy([
        ev(0.0, "a", "s0", "p0"),
        ev(1.0, "b", "s1", "p1"),
        ev(0.0, "c", "s2", "p2"),
    ])
    assert metrics.overall_entropy == pytest.approx(0.797, abs=1e-3)
    assert metrics.status == ELEVATED
    assert [a.type for a in plan_actions(metrics)] == ["weight_decay", "grounding_boost"]


def test_critical_cycle_resets_touched_weights(session_factory, clock, add_candidate, add_selection, get_weight):
    add_candidate("a", weight=0.9)
    add_candidate("b", weight=0.2)
    add_candidate("untouched", weight=0.9)
    add_selection("u1", "a", 0.0, T0 - datetime.timedelta(minutes=2), state_tag="s0", profile_id="p0")
    add_selection("u1", "b", 1.0, T0 - datetime.timedelta(minutes=1), state_tag="s1", profile_id="p1")

    report = make_harmonizer(session_factory, clock).run_cycle("u1")

    assert report.status == "completed"
    assert report.entropy.status == CRITICAL
    assert sorted(report.mutated_candidates) == ["a", "b"]
    assert get_weight("a") == pytest.approx(0.5)
    assert get_weight("b") == pytest.approx(0.5)
    assert get_weight("untouched") == pytest.approx(0.9)
    assert harmonization_count(session_factory) == 1


def test_elevated_cycle_decays_with_floor(session_factory, clock, add_candidate, add_selection, get_weight):
    add_candidate("a", weight=0.5)
    add_candidate("b", weight=0.105)
    add_candidate("c", weight=0.8)
    for minutes, (cid, r, tag) in enumerate([("a", 0.0, "s0"), ("b", 1.0, "s1"), ("c", 0.0, "s2")]):
        add_selection("u1", cid, r, T0 - datetime.timedelta(minutes=10 - minutes), state_tag=tag, profile_id=tag)

    report = make_harmonizer(session_factory, clock).run_cycle("u1")

    assert report.entropy.status == ELEVATED
    assert get_weight("a") == pytest.approx(0.45)
    assert get_weight("b") == pytest.approx(0.1)
    assert get_weight("c") == pytest.approx(0.72)


def test_stable_cycle_changes_nothing(session_factory, clock, add_candidate, add_selection, get_weight):
    add_candidate("a", weight=0.7)
    for minutes in range(5):
        add_selection("u1", "a", 0.6, T0 - datetime.timedelta(minutes=minutes + 1))

    report = make_harmonizer(session_factory, clock).run_cycle("u1")

    assert report.entropy.status == STABLE
    assert report.actions == []
    assert get_weight("a") == pytest.approx(0.7)
    assert harmonization_count(session_factory) == 1


def test_guard_blocks_second_run_within_interval(session_factory, clock, add_candidate, add_selection, get_weight):
    add_candidate("a", weight=0.9)
    add_candidate("b", weight=0.9)
    add_selection("u1", "a", 0.0, T0 - datetime.timedelta(minutes=2), state_tag="s0", profile_id="p0")
    add_selection("u1", "b", 1.0, T0 - datetime.timedelta(minutes=1), state_tag="s1", profile_id="p1")
    harmonizer = make_harmonizer(session_factory, clock)

    assert harmonizer.run_cycle("u1").status == "completed"

    # Someone nudges the weight; a blocked cycle must not touch it
    CandidateRepository(session_factory).compare_and_swap("a", 1, learning_weight=0.95)
    clock.advance(hours=1)
    report = harmonizer.run_cycle("u1")
    assert report.status == "not_due"
    assert report.next_check == T0 + datetime.timedelta(hours=24)
    assert get_weight("a") == pytest.approx(0.95)
    assert harmonization_count(session_factory) == 1

    clock.advance(hours=24)
    assert harmonizer.run_cycle("u1").status == "completed"
    assert harmonization_count(session_factory) == 2


def test_force_bypasses_guard(session_factory, clock, add_selection):
    add_selection("u1", "a", 0.5, T0 - datetime.timedelta(minutes=1))
    harmonizer = make_harmonizer(session_factory, clock)
    harmonizer.run_cycle("u1")
    clock.advance(minutes=5)

    assert harmonizer.run_cycle("u1").status == "not_due"
    assert harmonizer.run_cycle("u1", force=True).status == "completed"

    s = session_factory()
    forced = s.execute(select(HarmonizationEvent.forced).order_by(HarmonizationEvent.id)).scalars().all()
    s.close()
    assert forced == [False, True]


def test_conflict_rolls_back_every_mutation(session_factory, clock, add_candidate, add_selection, get_weight):
    add_candidate("a", weight=0.9)
    add_candidate("b", weight=0.9)
    add_selection("u1", "a", 0.0, T0 - datetime.timedelta(minutes=2), state_tag="s0", profile_id="p0")
    add_selection("u1", "b", 1.0, T0 - datetime.timedelta(minutes=1), state_tag="s1", profile_id="p1")
    repo = ConflictOnRepository(session_factory, conflict_id="b")

    with pytest.raises(ConcurrencyConflict):
        make_harmonizer(session_factory, clock, repository=repo).run_cycle("u1")

    # "a" is swapped before "b" fails, but the rollback undoes it
    assert get_weight("a") == pytest.approx(0.9)
    assert get_weight("b") == pytest.approx(0.9)
    assert harmonization_count(session_factory) == 0


def test_report_serializes_timestamps(session_factory, clock, add_selection):
    add_selection("u1", "a", 0.5, T0 - datetime.timedelta(minutes=1))
    data = make_harmonizer(session_factory, clock).run_cycle("u1").to_dict()
    assert data["status"] == "completed"
    assert data["timestamp"] == T0.isoformat()
    assert data["entropy"]["window_size"] == 1


class InterleavingEventLog(EventLog):
    """Runs a competing cycle the first time a window is read inside a transaction."""

    def __init__(self, session_factory, competing):
        super().__init__(session_factory)
        self.competing = competing

    def recent_selections(self, user_id, limit=50, session=None):
        if session is not None and self.competing is not None:
            competing, self.competing = self.competing, None
            competing()
        return super().recent_selections(user_id, limit=limit, session=session)


@pytest.mark.parametrize("previous_run", [False, True])
def test_racing_cycles_record_a_single_run(tmp_path, monkeypatch, clock, previous_run):
    monkeypatch.delenv("ROE_DB_URL", raising=False)
    factory = create_session(f"sqlite:///{tmp_path / 'race.db'}")
    s = factory()
    s.add(SelectionEvent(user_id="u1", candidate_id="a", resonance=0.5, state_tag="calm", profile_id="p1",
                         created_at=T0 - datetime.timedelta(minutes=1)))
    s.commit()
    s.close()

    repo = CandidateRepository(factory)
    if previous_run:
        Harmonizer(factory, repo, EventLog(factory), clock=clock).run_cycle("u1", force=True)
        clock.advance(hours=25)

    rival = Harmonizer(factory, repo, EventLog(factory), clock=clock)
    rival_statuses = []
    log = InterleavingEventLog(factory, lambda: rival_statuses.append(rival.run_cycle("u1").status))

    report = Harmonizer(factory, repo, log, clock=clock).run_cycle("u1")

    assert rival_statuses == ["completed"]
    assert report.status == "not_due"
    assert harmonization_count(factory) == (2 if previous_run else 1)
