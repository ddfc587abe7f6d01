# backend/session_store.py
"""
In-memory store for in-flight encounters.

Lifecycle:  ACTIVE --[mark_ended | max_turns reached | time limit elapsed]--> ENDED
ENDED is terminal. Sessions idle longer than the TTL are reclaimed, lazily on
read and periodically by a sweeper thread owned by the store.

Locking: one lock per session serializes every mutation of that session;
the table lock only guards the id -> session map and is never held while
waiting on a session lock. Reads hand out deep copies, so callers (scoring in
particular) never observe or cause a concurrent mutation.
"""

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from config import get_settings
from errors import SessionEnded, SessionNotFound
from models import (
    ChatMessage,
    CreateSessionParams,
    FeedbackResult,
    MedicalCase,
    RevealedFacts,
    Session,
    SessionAction,
)

logger = logging.getLogger("encounter_store")

Clock = Callable[[], int]


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


def initial_revealed_facts(case: MedicalCase) -> RevealedFacts:
    """Facts the case hands over without the learner having to ask."""
    rules = case.reveal_rules
    return RevealedFacts(
        hpi=rules.hpi == "always",
        pmh=list(case.history.pmh) if rules.pmh == "always" else [],
        medications=rules.medications == "always",
        allergies=rules.allergies == "always",
    )


class SessionStore:
    def __init__(
        self,
        ttl_sec: Optional[int] = None,
        sweep_interval_sec: Optional[int] = None,
        feedback_grace_sec: Optional[int] = None,
        clock: Optional[Clock] = None,
    ):
        settings = get_settings()
        self.ttl_ms = 1000 * (ttl_sec if ttl_sec is not None else settings.session_ttl_sec)
        self.sweep_interval_sec = (
            sweep_interval_sec if sweep_interval_sec is not None else settings.sweep_interval_sec
        )
        grace = feedback_grace_sec if feedback_grace_sec is not None else settings.feedback_grace_sec
        self.feedback_grace_ms = 1000 * grace
        self._clock: Clock = clock or wall_clock_ms

        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._feedback_locks: Dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()

        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    # --- internal helpers ---

    def _is_expired(self, session: Session, now: int) -> bool:
        idle = now - session.updated_at
        if not session.is_active and session.feedback_result is None:
            # Ended but not yet scored: keep it around long enough to be scored.
            return idle > self.ttl_ms + self.feedback_grace_ms
        return idle > self.ttl_ms

    def _time_limit_elapsed(self, session: Session, now: int) -> bool:
        if not session.is_active or not session.time_limit_sec:
            return False
        elapsed_sec = (now - session.created_at) // 1000
        return elapsed_sec > session.time_limit_sec

    def _end(self, session: Session, now: int, diagnosis: Optional[str] = None) -> bool:
        """The single ACTIVE -> ENDED transition. Returns False if already ended."""
        if not session.is_active:
            return False
        session.is_active = False
        session.ended_at = now
        session.updated_at = now
        if diagnosis:
            session.submitted_diagnosis = diagnosis
        return True

    def _evict(self, session_id: str) -> None:
        with self._table_lock:
            self._sessions.pop(session_id, None)
            self._locks.pop(session_id, None)
            self._feedback_locks.pop(session_id, None)

    @contextmanager
    def _locked(self, session_id: str) -> Iterator[Session]:
        """Yield the live session under its lock, applying TTL and time-limit rules first."""
        with self._table_lock:
            session = self._sessions.get(session_id)
            lock = self._locks.get(session_id)
        if session is None or lock is None:
            raise SessionNotFound(session_id)

        with lock:
            if self._sessions.get(session_id) is not session:
                # Evicted while we were waiting for the lock.
                raise SessionNotFound(session_id)

            now = self._clock()
            if self._is_expired(session, now):
                self._evict(session_id)
                logger.info("Session expired on access: session_id=%s", session_id)
                raise SessionNotFound(session_id)

            if self._time_limit_elapsed(session, now):
                self._end(session, now)
                logger.info("Session time limit reached: session_id=%s", session_id)

            yield session

    # --- public operations ---

    def create(self, params: CreateSessionParams, case: MedicalCase) -> Session:
        now = self._clock()
        session = Session(
            session_id=str(uuid.uuid4()),
            case_id=params.case_id,
            level=params.level,
            user_name=params.user_name,
            case=case,
            revealed_facts=initial_revealed_facts(case),
            created_at=now,
            updated_at=now,
            time_limit_sec=params.time_limit_sec,
            max_turns=params.max_turns,
            guidance_level=params.guidance_level,
        )
        with self._table_lock:
            self._sessions[session.session_id] = session
            self._locks[session.session_id] = threading.Lock()

        logger.info(
            "Session created: session_id=%s case_id=%s level=%d",
            session.session_id,
            params.case_id,
            params.level,
        )
        return session.model_copy(deep=True)

    def get(self, session_id: str) -> Session:
        with self._locked(session_id) as session:
            return session.model_copy(deep=True)

    def append_message(
        self,
        session_id: str,
        role: str,
        text: str,
        revealed: Optional[RevealedFacts] = None,
    ) -> Session:
        with self._locked(session_id) as session:
            if not session.is_active:
                raise SessionEnded(session_id)

            session.messages.append(ChatMessage(role=role, content=text))
            if revealed is not None:
                session.revealed_facts.merge(revealed)

            now = self._clock()
            session.updated_at = now

            if role == "user":
                session.current_turn += 1
                if session.max_turns and session.current_turn >= session.max_turns:
                    self._end(session, now)
                    logger.info(
                        "Session reached max turns: session_id=%s turns=%d",
                        session_id,
                        session.current_turn,
                    )

            return session.model_copy(deep=True)

    def record_action(
        self,
        session_id: str,
        action_type: str,
        details=None,
        result: Optional[str] = None,
        revealed: Optional[RevealedFacts] = None,
    ) -> Session:
        with self._locked(session_id) as session:
            if not session.is_active:
                raise SessionEnded(session_id)

            now = self._clock()
            session.actions.append(
                SessionAction(action_type=action_type, timestamp=now, details=details, result=result)
            )
            if revealed is not None:
                session.revealed_facts.merge(revealed)
            session.updated_at = now

            logger.info("Action recorded: session_id=%s action_type=%s", session_id, action_type)
            return session.model_copy(deep=True)

    def mark_ended(self, session_id: str, diagnosis: Optional[str] = None) -> None:
        """Idempotent: unknown, expired, or already-ended sessions are left alone."""
        try:
            with self._locked(session_id) as session:
                if self._end(session, self._clock(), diagnosis):
                    logger.info("Session ended: session_id=%s", session_id)
        except SessionNotFound:
            return

    def submit_diagnosis(self, session_id: str, diagnosis: str) -> Session:
        """Attach a diagnosis to a session that ended without one (turn or time cap).

        Allowed once, and only before feedback has been computed.
        """
        with self._locked(session_id) as session:
            if session.is_active:
                self._end(session, self._clock(), diagnosis)
            elif session.submitted_diagnosis is None and session.feedback_result is None:
                session.submitted_diagnosis = diagnosis
                session.updated_at = self._clock()
            else:
                raise SessionEnded(session_id, "Session has already ended")
            return session.model_copy(deep=True)

    def store_feedback(self, session_id: str, result: FeedbackResult) -> FeedbackResult:
        """Memoize the analyzer result; the first stored result wins."""
        with self._locked(session_id) as session:
            if session.feedback_result is None:
                session.feedback_result = result
                session.updated_at = self._clock()
                logger.info(
                    "Feedback stored: session_id=%s score=%d",
                    session_id,
                    result.summary_score,
                )
            return session.feedback_result.model_copy(deep=True)

    def feedback_lock(self, session_id: str) -> threading.Lock:
        """Per-session lock for computing feedback, separate from the mutation lock."""
        with self._table_lock:
            if session_id not in self._sessions:
                raise SessionNotFound(session_id)
            return self._feedback_locks.setdefault(session_id, threading.Lock())

    # --- reclamation ---

    def sweep(self) -> Dict[str, int]:
        """Evict idle sessions and end sessions past their time limit."""
        with self._table_lock:
            session_ids = list(self._sessions)

        evicted = 0
        ended = 0
        for session_id in session_ids:
            with self._table_lock:
                lock = self._locks.get(session_id)
            if lock is None:
                continue
            with lock:
                session = self._sessions.get(session_id)
                if session is None:
                    continue
                now = self._clock()
                if self._is_expired(session, now):
                    self._evict(session_id)
                    evicted += 1
                elif self._time_limit_elapsed(session, now):
                    self._end(session, now)
                    ended += 1

        if evicted or ended:
            logger.info("Session sweep: evicted=%d ended=%d", evicted, ended)
        return {"evicted": evicted, "ended": ended}

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self.sweep_interval_sec):
            try:
                self.sweep()
            except Exception:
                logger.exception("Session sweep failed")

    def start_sweeper(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, name="session-sweeper", daemon=True
        )
        self._sweeper.start()
        logger.info("Session sweeper started: interval=%ds", self.sweep_interval_sec)

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        with self._table_lock:
            sessions = list(self._sessions.values())
        active = sum(1 for s in sessions if s.is_active and not self._is_expired(s, now))
        return {"total": len(sessions), "active": active, "ended": len(sessions) - active}

    def now(self) -> int:
        return self._clock()

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._sessions)
