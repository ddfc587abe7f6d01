# backend/app.py
import logging
import os
import re
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from actions import elicit_facts, process_action
from analyzer import SessionAnalyzer
from config import get_settings
from errors import EncounterError, FeedbackNotReady, LimitReached, SessionEnded, SessionNotFound
from graph import FALLBACK_REPLY, PatientEngine
from models import (
    ActionRequest,
    ActionResponse,
    ChatRequest,
    ChatResponse,
    CreateSessionParams,
    EndSessionRequest,
    EndSessionResponse,
    SessionExport,
    StartSessionRequest,
    StartSessionResponse,
)
from oracle import ClassificationOracle, LLMOracle, OfflineOracle
from patient_cases import list_cases, load_case
from scoring import get_session_duration
from session_store import SessionStore
from submission import format_submission

# --------- LOGGING SETUP (MINIMAL, NON-SENSITIVE) ----------
logging.basicConfig(
    level=getattr(logging, get_settings().log_level, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("encounter_backend")

MAX_MESSAGE_LENGTH = 2000
MAX_DIAGNOSIS_LENGTH = 500
MAX_ACTION_LENGTH = 100

MIN_TIME_LIMIT_SEC = 60
MAX_TIME_LIMIT_SEC = 2 * 60 * 60
MIN_TURNS = 1
MAX_TURNS = 100

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


# --- HELPERS ---

def sanitize_text(text: Optional[str], max_length: int) -> str:
    """Strip control characters and surrounding whitespace, then cap the length."""
    cleaned = _CONTROL_CHARS.sub("", text or "").strip()
    return cleaned[:max_length]


def _clamp(value: Optional[int], low: int, high: int) -> Optional[int]:
    if not value:
        return None
    return min(max(value, low), high)


def _normalize_session_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Support either sessionId or session_id coming from the frontend."""
    if "sessionId" in data and "session_id" not in data:
        data["session_id"] = data["sessionId"]
    return data


def _json_body() -> Dict[str, Any]:
    data = request.get_json(force=True, silent=True) or {}
    if not isinstance(data, dict):
        return {}
    return _normalize_session_payload(data)


def default_oracle() -> ClassificationOracle:
    if os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY"):
        return LLMOracle()
    logger.warning("No Gemini API key configured; diagnosis scoring uses string matching only")
    return OfflineOracle()


# --- APP FACTORY ---

def create_app(
    store: Optional[SessionStore] = None,
    engine: Optional[PatientEngine] = None,
    oracle: Optional[ClassificationOracle] = None,
    start_sweeper: bool = False,
) -> Flask:
    settings = get_settings()
    store = store if store is not None else SessionStore()
    engine = engine if engine is not None else PatientEngine()
    analyzer = SessionAnalyzer(oracle if oracle is not None else default_oracle())

    app = Flask(__name__)
    CORS(app)
    app.config["SESSION_STORE"] = store

    if start_sweeper:
        store.start_sweeper()

    # --- ERRORS ---

    @app.errorhandler(EncounterError)
    def handle_encounter_error(e: EncounterError):
        logger.info("Request rejected: %s (%d)", type(e).__name__, e.status_code)
        return jsonify({"error": e.message}), e.status_code

    @app.errorhandler(ValidationError)
    def handle_validation_error(e: ValidationError):
        logger.warning("Invalid request payload: %d error(s)", e.error_count())
        details = e.errors(include_url=False, include_context=False, include_input=False)
        return jsonify({"error": "Invalid request", "details": details}), 400

    @app.errorhandler(Exception)
    def handle_error(e):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description}), e.code
        logger.exception("Unhandled exception occurred: %s", repr(e))
        return jsonify({"error": "Internal server error"}), 500

    # --- ROUTES ---

    @app.route("/api/health", methods=["GET"])
    def health():
        logger.debug("Health check ping")
        return jsonify({"status": "ok", "sessions": len(store)})

    @app.route("/api/cases", methods=["GET"])
    def cases():
        summaries = list_cases(settings.cases_dir)
        logger.info("Cases requested; count=%d", len(summaries))
        return jsonify([c.model_dump() for c in summaries])

    @app.route("/api/start-session", methods=["POST"])
    def start_session():
        req = StartSessionRequest(**_json_body())
        case = load_case(req.case_id, settings.cases_dir)

        params = CreateSessionParams(
            case_id=case.case_id,
            level=req.level,
            user_name=sanitize_text(req.user_name, MAX_ACTION_LENGTH),
            time_limit_sec=_clamp(req.time_limit_sec, MIN_TIME_LIMIT_SEC, MAX_TIME_LIMIT_SEC),
            max_turns=_clamp(req.max_turns, MIN_TURNS, MAX_TURNS),
            guidance_level=req.guidance_level,
        )
        session = store.create(params, case)

        resp = StartSessionResponse(
            session_id=session.session_id,
            case_id=case.case_id,
            level=session.level,
            patient_name=case.patient.name,
            chief_complaint=case.patient.chief_complaint,
            time_limit_sec=session.time_limit_sec,
            max_turns=session.max_turns,
            intro_line=f"Hello, I'm {case.patient.name}. {case.patient.chief_complaint}",
        )
        return jsonify(resp.model_dump()), 201

    @app.route("/api/chat", methods=["POST"])
    def chat():
        req = ChatRequest(**_json_body())
        message = sanitize_text(req.message, MAX_MESSAGE_LENGTH)
        if not message:
            return jsonify({"error": "Message must not be empty"}), 400

        session = store.get(req.session_id)
        if not session.is_active:
            if session.max_turns and session.current_turn >= session.max_turns:
                raise LimitReached(req.session_id)
            raise SessionEnded(req.session_id)

        snapshot = store.append_message(
            req.session_id, "user", message, revealed=elicit_facts(session.case, message)
        )

        try:
            turn = engine.run_turn(
                snapshot.case,
                snapshot.level,
                snapshot.revealed_facts,
                snapshot.messages[:-1],
                message,
                session=snapshot,
                guidance_level=snapshot.guidance_level,
            )
        except Exception:
            logger.exception("Turn graph failed: session_id=%s", req.session_id)
            turn = {}
        reply = turn.get("reply") or FALLBACK_REPLY

        try:
            updated = store.append_message(req.session_id, "assistant", reply)
        except SessionEnded:
            # The user message hit the turn cap, or the time limit elapsed mid-reply.
            logger.info("Reply dropped, session ended mid-turn: session_id=%s", req.session_id)
            updated = store.get(req.session_id)

        logger.info(
            "Chat turn: session_id=%s turn=%d active=%s",
            req.session_id,
            updated.current_turn,
            updated.is_active,
        )
        resp = ChatResponse(
            reply=reply,
            current_turn=updated.current_turn,
            max_turns=updated.max_turns,
            is_active=updated.is_active,
            guidance=turn.get("guidance"),
        )
        return jsonify(resp.model_dump(mode="json"))

    @app.route("/api/action", methods=["POST"])
    def action():
        req = ActionRequest(**_json_body())
        action_type = sanitize_text(req.action_type, MAX_ACTION_LENGTH)
        if not action_type:
            return jsonify({"error": "action_type must not be empty"}), 400

        session = store.get(req.session_id)
        if not session.is_active:
            raise SessionEnded(req.session_id)

        result, revealed = process_action(session.case, session.level, action_type)
        store.record_action(req.session_id, action_type, details=req.details, result=result, revealed=revealed)
        return jsonify(ActionResponse(result=result, action_recorded=True).model_dump())

    @app.route("/api/end-session", methods=["POST"])
    def end_session():
        req = EndSessionRequest(**_json_body())
        submission = format_submission(
            sanitize_text(req.diagnosis, MAX_DIAGNOSIS_LENGTH),
            sanitize_text(req.intervention, MAX_DIAGNOSIS_LENGTH),
        )

        if submission is None:
            session = store.get(req.session_id)
            if not session.is_active:
                raise SessionEnded(req.session_id, "Session has already ended")
            store.mark_ended(req.session_id)
            session = store.get(req.session_id)
        else:
            session = store.submit_diagnosis(req.session_id, submission)

        resp = EndSessionResponse(
            success=True,
            session_id=session.session_id,
            ended_at=session.ended_at,
            submitted_diagnosis=session.submitted_diagnosis,
        )
        return jsonify(resp.model_dump())

    @app.route("/api/feedback/<session_id>", methods=["GET"])
    def feedback(session_id: str):
        session = store.get(session_id)
        if session.is_active:
            raise FeedbackNotReady(session_id)
        if session.feedback_result is not None:
            return jsonify(session.feedback_result.model_dump())

        # At most one analysis per session; later callers get the memoized result.
        with store.feedback_lock(session_id):
            session = store.get(session_id)
            if session.feedback_result is not None:
                return jsonify(session.feedback_result.model_dump())

            result = analyzer.analyze(session, session.case, now=store.now())
            try:
                result = store.store_feedback(session_id, result)
            except SessionNotFound:
                logger.warning("Session reclaimed during analysis: session_id=%s", session_id)

        return jsonify(result.model_dump())

    @app.route("/api/export/<session_id>", methods=["GET"])
    def export(session_id: str):
        session = store.get(session_id)
        case = session.case
        resp = SessionExport(
            session_id=session.session_id,
            case_id=session.case_id,
            level=session.level,
            user_name=session.user_name,
            messages=session.messages,
            actions=session.actions,
            revealed_facts=session.revealed_facts,
            created_at=session.created_at,
            updated_at=session.updated_at,
            ended_at=session.ended_at,
            duration_sec=get_session_duration(session, store.now()),
            current_turn=session.current_turn,
            max_turns=session.max_turns,
            is_active=session.is_active,
            submitted_diagnosis=session.submitted_diagnosis,
            case_metadata={
                "case_id": case.case_id,
                "title": case.title,
                "level": case.level,
                "specialty": case.specialty,
                "patient_name": case.patient.name,
                "chief_complaint": case.patient.chief_complaint,
            },
        )
        return jsonify(resp.model_dump())

    @app.route("/api/stats", methods=["GET"])
    def stats():
        return jsonify(store.stats())

    return app


if __name__ == "__main__":
    port = get_settings().port
    app = create_app(start_sweeper=True)
    logger.info("Starting encounter backend on port %d", port)
    app.run(host="0.0.0.0", port=port)
