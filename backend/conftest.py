# backend/conftest.py
"""Shared fixtures: a controllable clock, a store, bundled cases and stub oracles."""

from typing import List, Optional

import pytest

from errors import ClassificationUnavailable
from models import (
    Breakdown,
    ChatMessage,
    FeedbackResult,
    MedicalCase,
    Session,
    SessionAction,
    Solution,
    Timing,
)
from oracle import DiagnosisLabel, InterventionLabel
from patient_cases import load_case
from session_store import SessionStore

T0 = 1_700_000_000_000


class FakeClock:
    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FixedOracle:
    """Answers with fixed labels and records every call."""

    def __init__(self, diagnosis=DiagnosisLabel.INCORRECT, intervention=InterventionLabel.INAPPROPRIATE):
        self.diagnosis = diagnosis
        self.intervention = intervention
        self.calls: List[str] = []

    def classify_diagnosis(self, submitted, primary, differentials):
        self.calls.append(submitted)
        return self.diagnosis

    def classify_intervention(self, intervention, primary, critical_actions, avoid_actions):
        self.calls.append(intervention)
        return self.intervention


class FailingOracle:
    def __init__(self, exc: Optional[Exception] = None):
        self.exc = exc or ClassificationUnavailable("timeout")

    def classify_diagnosis(self, submitted, primary, differentials):
        raise self.exc

    def classify_intervention(self, intervention, primary, critical_actions, avoid_actions):
        raise self.exc


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> SessionStore:
    return SessionStore(ttl_sec=7200, sweep_interval_sec=900, feedback_grace_sec=3600, clock=clock)


@pytest.fixture
def chest_case() -> MedicalCase:
    return load_case("chest-pain-001")


@pytest.fixture
def abdominal_case() -> MedicalCase:
    return load_case("abdominal-pain-001")


def make_session(
    case: MedicalCase,
    user_messages=(),
    actions=(),
    duration_sec: Optional[int] = 240,
    submitted: Optional[str] = None,
    level: Optional[int] = None,
    time_limit_sec: Optional[int] = None,
) -> Session:
    """Ended session; actions are (action_type, seconds_after_start) pairs."""
    messages = []
    for text in user_messages:
        messages.append(ChatMessage(role="user", content=text))
        messages.append(ChatMessage(role="assistant", content="Okay."))
    ended_at = T0 + duration_sec * 1000 if duration_sec is not None else None
    return Session(
        session_id="test-session",
        case_id=case.case_id,
        level=level or case.level,
        user_name="Tester",
        case=case,
        messages=messages,
        actions=[SessionAction(action_type=a, timestamp=T0 + int(s * 1000)) for a, s in actions],
        created_at=T0,
        updated_at=ended_at or T0,
        ended_at=ended_at,
        time_limit_sec=time_limit_sec,
        current_turn=len(user_messages),
        is_active=ended_at is None,
        submitted_diagnosis=submitted,
    )


def make_feedback(score: int) -> FeedbackResult:
    return FeedbackResult(
        summary_score=score,
        breakdown=Breakdown(
            diagnosis=0, diagnosis_correctness=0, intervention=0, critical_actions=0, communication=0, efficiency=0
        ),
        timing=Timing(time_limit_sec=300, actual_duration_sec=100, time_used_percent=33.3),
        what_went_well=["Completed the case session"],
        missed=[],
        red_flags_missed=[],
        recommendations=["Keep practicing"],
        solution=Solution(primary_diagnosis="NSTEMI", critical_actions=[]),
    )
