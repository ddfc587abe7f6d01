# backend/test_app.py
"""
HTTP flow tests through the Flask test client with a fake chat model.

Run: pytest backend/test_app.py -v
"""

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from app import create_app, sanitize_text
from conftest import FixedOracle
from graph import FALLBACK_REPLY, PatientEngine
from oracle import DiagnosisLabel, OfflineOracle


@pytest.fixture
def make_client(store):
    def _make(replies=("It feels like pressure.",), guidance=None, oracle=None):
        engine = PatientEngine(
            llm=FakeListChatModel(responses=list(replies)),
            guidance_llm=FakeListChatModel(responses=[guidance]) if guidance else None,
        )
        app = create_app(store=store, engine=engine, oracle=oracle or OfflineOracle())
        return app.test_client()

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


def _start(client, **extra):
    body = {"case_id": "chest-pain-001", "level": 1, "user_name": "Tester"}
    body.update(extra)
    r = client.post("/api/start-session", json=body)
    assert r.status_code == 201, r.get_json()
    return r.get_json()


def _chat(client, session_id, message="Where is the pain?"):
    return client.post("/api/chat", json={"session_id": session_id, "message": message})


def test_sanitize_text():
    assert sanitize_text("  hi\x00 there\x07 ", 100) == "hi there"
    assert sanitize_text("a" * 3000, 2000) == "a" * 2000
    assert sanitize_text(None, 10) == ""


def test_health_and_cases(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.get_json()["status"] == "ok"

    r = client.get("/api/cases")
    ids = [c["case_id"] for c in r.get_json()]
    assert "chest-pain-001" in ids
    assert "abdominal-pain-001" in ids


def test_start_session(client):
    data = _start(client)
    assert data["patient_name"] == "Sarah Johnson"
    assert data["intro_line"] == "Hello, I'm Sarah Johnson. Chest pain for the past 2 hours"
    assert data["time_limit_sec"] is None


def test_start_session_clamps_limits(client):
    data = _start(client, time_limit_sec=5, max_turns=500)
    assert data["time_limit_sec"] == 60
    assert data["max_turns"] == 100


def test_start_session_errors(client):
    r = client.post("/api/start-session", json={"case_id": "nope", "level": 1, "user_name": "x"})
    assert r.status_code == 404
    assert r.get_json()["error"] == "Case not found: nope"

    r = client.post("/api/start-session", json={"case_id": "chest-pain-001", "level": 4, "user_name": "x"})
    assert r.status_code == 400


def test_chat_accepts_session_id_alias(client):
    sid = _start(client)["session_id"]
    r = client.post("/api/chat", json={"sessionId": sid, "message": "Where is the pain?"})
    assert r.status_code == 200
    data = r.get_json()
    assert data["reply"] == "It feels like pressure."
    assert data["current_turn"] == 1
    assert data["is_active"] is True
    assert data["guidance"] is None


def test_chat_errors(client):
    r = _chat(client, "missing")
    assert r.status_code == 404
    assert r.get_json() == {"error": "Session not found or expired"}

    sid = _start(client)["session_id"]
    r = _chat(client, sid, "   \x00 ")
    assert r.status_code == 400


def test_turn_cap(client):
    sid = _start(client, max_turns=1)["session_id"]
    r = _chat(client, sid)
    assert r.status_code == 200
    assert r.get_json()["is_active"] is False
    assert r.get_json()["reply"] == "It feels like pressure."
    # The reply is returned but not stored on the ended session.
    assert len(client.get(f"/api/export/{sid}").get_json()["messages"]) == 1

    r = _chat(client, sid)
    assert r.status_code == 409
    assert r.get_json()["error"] == "Maximum turns reached"


def test_time_limit(client, clock):
    sid = _start(client, time_limit_sec=60)["session_id"]
    clock.advance(61)
    r = _chat(client, sid)
    assert r.status_code == 409
    assert r.get_json()["error"] == "Session has ended"


def test_fallback_reply_when_model_returns_nothing(make_client):
    client = make_client(replies=[""])
    sid = _start(client)["session_id"]
    assert _chat(client, sid).get_json()["reply"] == FALLBACK_REPLY


def test_guidance_in_learning_mode(make_client):
    client = make_client(guidance="Consider asking whether the pain spreads anywhere.")
    sid = _start(client, guidance_level="high")["session_id"]
    guidance = _chat(client, sid).get_json()["guidance"]
    assert guidance == {"type": "suggestion", "message": "Consider asking whether the pain spreads anywhere."}


def test_action_and_export(client, clock):
    sid = _start(client)["session_id"]
    _chat(client, sid, "Are you taking any medications?")

    clock.advance(30)
    r = client.post("/api/action", json={"session_id": sid, "action_type": "obtain_ekg"})
    assert r.status_code == 200
    assert r.get_json()["action_recorded"] is True
    assert r.get_json()["result"].startswith("EKG:")

    clock.advance(15)
    export = client.get(f"/api/export/{sid}").get_json()
    assert [a["action_type"] for a in export["actions"]] == ["obtain_ekg"]
    assert export["revealed_facts"]["medications"] is True
    assert "ekg" in export["revealed_facts"]["diagnostics"]
    assert export["duration_sec"] == 45
    assert export["case_metadata"]["title"] == "Chest pain in a middle-aged woman"
    assert len(export["messages"]) == 2


def test_end_session_once(client):
    sid = _start(client)["session_id"]
    r = client.post("/api/end-session", json={"session_id": sid, "diagnosis": "NSTEMI", "intervention": "aspirin"})
    assert r.status_code == 200
    assert r.get_json()["submitted_diagnosis"] == "NSTEMI | Intervention: aspirin"

    r = client.post("/api/end-session", json={"session_id": sid, "diagnosis": "STEMI"})
    assert r.status_code == 409

    r = client.post("/api/action", json={"session_id": sid, "action_type": "give_aspirin"})
    assert r.status_code == 409


def test_diagnosis_after_turn_cap(client):
    sid = _start(client, max_turns=1)["session_id"]
    _chat(client, sid)
    r = client.post("/api/end-session", json={"session_id": sid, "diagnosis": "NSTEMI"})
    assert r.status_code == 200
    assert r.get_json()["submitted_diagnosis"] == "NSTEMI"


def test_feedback_is_computed_once(make_client):
    oracle = FixedOracle(diagnosis=DiagnosisLabel.PRIMARY)
    client = make_client(oracle=oracle)
    sid = _start(client)["session_id"]

    r = client.get(f"/api/feedback/{sid}")
    assert r.status_code == 409

    client.post("/api/end-session", json={"session_id": sid, "diagnosis": "heart attack"})
    first = client.get(f"/api/feedback/{sid}")
    second = client.get(f"/api/feedback/{sid}")

    assert first.status_code == 200
    assert first.get_json() == second.get_json()
    assert first.get_json()["breakdown"]["diagnosis_correctness"] == 20
    assert first.get_json()["solution"]["primary_diagnosis"] == "NSTEMI"
    assert oracle.calls == ["heart attack"]


def test_stats(client):
    a = _start(client)["session_id"]
    _start(client)
    client.post("/api/end-session", json={"session_id": a})
    assert client.get("/api/stats").get_json() == {"total": 2, "active": 1, "ended": 1}
