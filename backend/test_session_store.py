# backend/test_session_store.py
"""
Session store lifecycle tests (fake clock, no sleeping).

Run: pytest backend/test_session_store.py -v
"""

import threading

import pytest

from conftest import make_feedback
from errors import SessionEnded, SessionNotFound
from models import ChatMessage, CreateSessionParams, RevealedFacts


def _create(store, case, **kwargs):
    params = CreateSessionParams(case_id=case.case_id, level=case.level, user_name="Tester", **kwargs)
    return store.create(params, case)


def test_create_seeds_always_revealed_facts(store, chest_case, abdominal_case):
    chest = _create(store, chest_case)
    assert chest.is_active
    assert chest.current_turn == 0
    assert chest.revealed_facts.hpi is True
    assert chest.revealed_facts.pmh == []
    assert chest.revealed_facts.medications is False

    abdo = _create(store, abdominal_case)
    assert abdo.revealed_facts.hpi is False
    assert abdo.revealed_facts.medications is True
    assert abdo.revealed_facts.allergies is True
    assert len(store) == 2


def test_user_messages_count_turns(store, chest_case):
    s = _create(store, chest_case)
    store.append_message(s.session_id, "user", "Where is the pain?")
    snap = store.append_message(s.session_id, "assistant", "In my chest.")
    assert snap.current_turn == 1
    assert [m.role for m in snap.messages] == ["user", "assistant"]


def test_revealed_delta_is_merged(store, chest_case):
    s = _create(store, chest_case)
    snap = store.append_message(
        s.session_id, "user", "Any allergies?", revealed=RevealedFacts(allergies=True, pmh=["Hypertension"])
    )
    assert snap.revealed_facts.allergies is True
    assert snap.revealed_facts.pmh == ["Hypertension"]
    assert snap.revealed_facts.hpi is True


def test_max_turns_ends_session_and_rejects_later_appends(store, chest_case):
    s = _create(store, chest_case, max_turns=2)
    store.append_message(s.session_id, "user", "Hello")
    store.append_message(s.session_id, "assistant", "Hi doctor")
    snap = store.append_message(s.session_id, "user", "Where does it hurt?")
    assert snap.is_active is False
    assert snap.ended_at is not None

    with pytest.raises(SessionEnded):
        store.append_message(s.session_id, "assistant", "My chest.")
    with pytest.raises(SessionEnded):
        store.append_message(s.session_id, "user", "Anything else?")

    after = store.get(s.session_id)
    assert len(after.messages) == 3
    assert after.current_turn == 2


def test_time_limit_ends_session_on_access(store, chest_case, clock):
    s = _create(store, chest_case, time_limit_sec=60)
    clock.advance(60)
    assert store.get(s.session_id).is_active

    clock.advance(1)
    snap = store.get(s.session_id)
    assert snap.is_active is False
    assert snap.ended_at == clock.now

    with pytest.raises(SessionEnded):
        store.record_action(s.session_id, "obtain_ekg")


def test_idle_session_expires_after_ttl(store, chest_case, clock):
    s = _create(store, chest_case)
    clock.advance(7200)
    assert store.get(s.session_id).is_active

    clock.advance(7201)
    with pytest.raises(SessionNotFound):
        store.get(s.session_id)
    assert len(store) == 0


def test_ended_session_awaiting_feedback_gets_grace_period(store, chest_case, clock):
    s = _create(store, chest_case)
    store.mark_ended(s.session_id, "NSTEMI")

    clock.advance(7200 + 60)
    assert store.get(s.session_id).submitted_diagnosis == "NSTEMI"

    clock.advance(7200 + 3600 + 1)
    with pytest.raises(SessionNotFound):
        store.get(s.session_id)


def test_mark_ended_is_idempotent(store, chest_case, clock):
    s = _create(store, chest_case)
    store.mark_ended(s.session_id, "NSTEMI")
    first = store.get(s.session_id)

    clock.advance(30)
    store.mark_ended(s.session_id, "Pericarditis")
    second = store.get(s.session_id)

    assert second.ended_at == first.ended_at
    assert second.submitted_diagnosis == "NSTEMI"

    # Unknown ids are ignored.
    store.mark_ended("does-not-exist")


def test_submit_diagnosis_after_turn_cap_is_allowed_once(store, chest_case):
    s = _create(store, chest_case, max_turns=1)
    store.append_message(s.session_id, "user", "Hello")

    snap = store.submit_diagnosis(s.session_id, "NSTEMI")
    assert snap.submitted_diagnosis == "NSTEMI"

    with pytest.raises(SessionEnded):
        store.submit_diagnosis(s.session_id, "STEMI")


def test_first_stored_feedback_wins(store, chest_case):
    s = _create(store, chest_case)
    store.mark_ended(s.session_id)

    assert store.store_feedback(s.session_id, make_feedback(70)).summary_score == 70
    assert store.store_feedback(s.session_id, make_feedback(90)).summary_score == 70
    assert store.get(s.session_id).feedback_result.summary_score == 70

    with pytest.raises(SessionNotFound):
        store.store_feedback("missing", make_feedback(10))


def test_snapshots_are_isolated(store, chest_case):
    s = _create(store, chest_case)
    snap = store.get(s.session_id)
    snap.messages.append(ChatMessage(role="user", content="not stored"))
    snap.revealed_facts.pmh.append("Made up")

    fresh = store.get(s.session_id)
    assert fresh.messages == []
    assert fresh.revealed_facts.pmh == []


def test_sweep_evicts_and_ends(store, chest_case, clock):
    idle = _create(store, chest_case)
    timed = _create(store, chest_case, time_limit_sec=600)

    clock.advance(601)
    store.get(timed.session_id)  # keep it fresh, which also ends it
    clock.advance(7200)

    result = store.sweep()
    assert result["evicted"] == 1
    with pytest.raises(SessionNotFound):
        store.get(idle.session_id)
    assert store.get(timed.session_id).is_active is False


def test_sweep_ends_sessions_past_time_limit(store, chest_case, clock):
    s = _create(store, chest_case, time_limit_sec=60)
    clock.advance(120)
    assert store.sweep() == {"evicted": 0, "ended": 1}
    assert store.get(s.session_id).ended_at == clock.now


def test_stats(store, chest_case):
    a = _create(store, chest_case)
    _create(store, chest_case)
    store.mark_ended(a.session_id)
    assert store.stats() == {"total": 2, "active": 1, "ended": 1}


def test_concurrent_appends_are_not_lost(store, chest_case):
    s = _create(store, chest_case)

    def worker():
        for _ in range(50):
            store.append_message(s.session_id, "user", "Question?")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    snap = store.get(s.session_id)
    assert snap.current_turn == 400
    assert len(snap.messages) == 400


def test_feedback_lock_is_per_session(store, chest_case):
    a = _create(store, chest_case)
    b = _create(store, chest_case)
    assert store.feedback_lock(a.session_id) is store.feedback_lock(a.session_id)
    assert store.feedback_lock(a.session_id) is not store.feedback_lock(b.session_id)
    with pytest.raises(SessionNotFound):
        store.feedback_lock("missing")
