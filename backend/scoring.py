# backend/scoring.py
"""
Scoring rules for a finished encounter.

Four independent categories, 100 points in total:
- diagnosis        25  (correctness 20 + intervention 5)
- critical actions 25
- communication    20
- efficiency       30

Diagnosis and intervention are classified by the oracle when it answers with
a known label; otherwise deterministic matching decides. Red flags are
evaluated separately and only feed the feedback text.
"""

import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from errors import ClassificationUnavailable
from models import MedicalCase, Session
from oracle import ClassificationOracle, DiagnosisLabel, InterventionLabel
from scoring_tables import MatchingTables, default_tables
from submission import parse_submission

logger = logging.getLogger("encounter_scoring")

# Default encounter length per level, in seconds
TIME_LIMITS = {
    1: 5 * 60,
    2: 7 * 60,
    3: 10 * 60,
}

MAX_DIAGNOSIS_CORRECTNESS = 20
MAX_INTERVENTION_SCORE = 5
MAX_DIAGNOSIS_SCORE = MAX_DIAGNOSIS_CORRECTNESS + MAX_INTERVENTION_SCORE
MAX_CRITICAL_ACTIONS_SCORE = 25
MAX_COMMUNICATION_SCORE = 20
MAX_EFFICIENCY_SCORE = 30
MAX_TOTAL_SCORE = 100

DIFFERENTIAL_CREDIT = 0.6

DIAGNOSIS_POINTS = {
    DiagnosisLabel.PRIMARY: MAX_DIAGNOSIS_CORRECTNESS,
    DiagnosisLabel.DIFFERENTIAL: int(MAX_DIAGNOSIS_CORRECTNESS * DIFFERENTIAL_CREDIT),  # 12
    DiagnosisLabel.INCORRECT: 0,
}

INTERVENTION_POINTS = {
    InterventionLabel.APPROPRIATE: MAX_INTERVENTION_SCORE,
    InterventionLabel.PARTIAL: int(MAX_INTERVENTION_SCORE * DIFFERENTIAL_CREDIT),  # 3
    InterventionLabel.INAPPROPRIATE: 0,
}

# Communication sub-check points
PAIN_POINTS = 5
HISTORY_POINTS = 3
MEDICATION_POINTS = 3
FOLLOW_UP_POINTS = 4
EMPATHY_POINTS = 5
MIN_DISTINCT_QUESTIONS = 3


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# --- TEXT HELPERS ---

def normalize(text: Optional[str]) -> str:
    """Lowercase, punctuation/underscores/hyphens to spaces, collapsed whitespace."""
    cleaned = re.sub(r"[^a-z0-9\s]", " ", (text or "").lower())
    return re.sub(r"\s+", " ", cleaned).strip()


def has_phrase(text: str, phrase: str) -> bool:
    """Whole-word occurrence of an already-normalized phrase."""
    if not phrase:
        return False
    return re.search(r"(?<![a-z0-9])" + re.escape(phrase) + r"(?![a-z0-9])", text) is not None


def has_term(text: str, term: str) -> bool:
    """Occurrence at the start of a word, so "monitor" finds "monitoring"."""
    if not term:
        return False
    return re.search(r"(?<![a-z0-9])" + re.escape(term), text) is not None


# --- DIAGNOSIS ---

def contains_diagnosis(text: str, diagnosis: str) -> bool:
    t = normalize(text)
    d = normalize(diagnosis)
    if not t or not d:
        return False
    # Plain containment, so "bronchopneumonia" still counts as pneumonia.
    if d in t:
        return True
    content_words = [w for w in d.split() if len(w) > 3]
    return bool(content_words) and all(w in t for w in content_words)


def _synonym_match(text: str, primary: str, tables: MatchingTables) -> bool:
    t = normalize(text)
    p = normalize(primary)
    for lay_term, triggers in tables.diagnosis_synonyms.items():
        if has_phrase(t, normalize(lay_term)) and any(has_phrase(p, normalize(trig)) for trig in triggers):
            return True
    return False


def fallback_diagnosis_label(
    submitted: str,
    primary: str,
    differentials: List[str],
    tables: Optional[MatchingTables] = None,
) -> DiagnosisLabel:
    tables = tables or default_tables()
    if contains_diagnosis(submitted, primary) or _synonym_match(submitted, primary, tables):
        return DiagnosisLabel.PRIMARY
    for diff in differentials:
        if contains_diagnosis(submitted, diff):
            return DiagnosisLabel.DIFFERENTIAL
    return DiagnosisLabel.INCORRECT


def _exact_label(submitted: str, primary: str, differentials: List[str]) -> Optional[DiagnosisLabel]:
    s = normalize(submitted)
    if s == normalize(primary):
        return DiagnosisLabel.PRIMARY
    if any(s == normalize(d) for d in differentials):
        return DiagnosisLabel.DIFFERENTIAL
    return None


def classify_diagnosis(
    submitted: str,
    case: MedicalCase,
    oracle: Optional[ClassificationOracle],
    tables: Optional[MatchingTables] = None,
) -> Tuple[DiagnosisLabel, str]:
    """Returns (label, source) where source is "exact", "oracle" or "fallback"."""
    primary = case.diagnosis.primary
    differentials = list(case.diagnosis.differentials)

    # An exact answer-key term never depends on the oracle.
    exact = _exact_label(submitted, primary, differentials)
    if exact is not None:
        return exact, "exact"

    if oracle is not None:
        try:
            return oracle.classify_diagnosis(submitted, primary, differentials), "oracle"
        except ClassificationUnavailable as e:
            logger.info("Diagnosis oracle unavailable, using fallback: %s", e)
        except Exception:
            logger.exception("Diagnosis oracle raised unexpectedly, using fallback")

    return fallback_diagnosis_label(submitted, primary, differentials, tables), "fallback"


def fallback_intervention_label(
    intervention: str,
    case: MedicalCase,
    tables: Optional[MatchingTables] = None,
) -> InterventionLabel:
    tables = tables or default_tables()
    if any(matches_action(intervention, avoid, tables) for avoid in case.diagnosis.avoid_actions):
        return InterventionLabel.INAPPROPRIATE

    required = case.diagnosis.critical_actions
    if not required:
        return InterventionLabel.APPROPRIATE

    hits = sum(1 for action in required if matches_action(intervention, action, tables))
    if hits == len(required):
        return InterventionLabel.APPROPRIATE
    if hits > 0:
        return InterventionLabel.PARTIAL
    return InterventionLabel.INAPPROPRIATE


def classify_intervention(
    intervention: str,
    case: MedicalCase,
    oracle: Optional[ClassificationOracle],
    tables: Optional[MatchingTables] = None,
) -> Tuple[InterventionLabel, str]:
    if oracle is not None:
        try:
            label = oracle.classify_intervention(
                intervention,
                case.diagnosis.primary,
                list(case.diagnosis.critical_actions),
                list(case.diagnosis.avoid_actions),
            )
            return label, "oracle"
        except ClassificationUnavailable as e:
            logger.info("Intervention oracle unavailable, using fallback: %s", e)
        except Exception:
            logger.exception("Intervention oracle raised unexpectedly, using fallback")

    return fallback_intervention_label(intervention, case, tables), "fallback"


@dataclass
class DiagnosisResult:
    correctness: int = 0
    intervention: int = 0
    label: Optional[DiagnosisLabel] = None
    intervention_label: Optional[InterventionLabel] = None
    diagnosis_text: str = ""
    intervention_text: Optional[str] = None

    @property
    def total(self) -> int:
        return self.correctness + self.intervention


def score_diagnosis(
    session: Session,
    case: MedicalCase,
    oracle: Optional[ClassificationOracle],
    tables: Optional[MatchingTables] = None,
) -> DiagnosisResult:
    """Score only the submitted diagnosis; the conversation is never scanned."""
    submission = parse_submission(session.submitted_diagnosis)
    result = DiagnosisResult(diagnosis_text=submission.diagnosis, intervention_text=submission.intervention)

    if not submission.diagnosis:
        return result

    label, source = classify_diagnosis(submission.diagnosis, case, oracle, tables)
    result.label = label
    result.correctness = DIAGNOSIS_POINTS[label]
    logger.info(
        "Diagnosis scored: session_id=%s label=%s source=%s points=%d",
        session.session_id,
        label.value,
        source,
        result.correctness,
    )

    if submission.intervention:
        ilabel, isource = classify_intervention(submission.intervention, case, oracle, tables)
        result.intervention_label = ilabel
        result.intervention = INTERVENTION_POINTS[ilabel]
        logger.info(
            "Intervention scored: session_id=%s label=%s source=%s points=%d",
            session.session_id,
            ilabel.value,
            isource,
            result.intervention,
        )

    return result


# --- CRITICAL ACTIONS ---

def matches_action(candidate: str, required: str, tables: Optional[MatchingTables] = None) -> bool:
    """
    Fuzzy match of a performed action (or free-text plan) against a required one.

    Matches when every keyword of the required action appears in the candidate,
    when a medical-term synonym bridges the two sides, or when an action verb
    and a shared medical term appear on both sides.
    """
    tables = tables or default_tables()
    cand = normalize(candidate)
    req = normalize(required)
    if not cand or not req:
        return False

    stop_words = set(tables.stop_words)
    keywords = [w for w in req.split() if len(w) > 2 and w not in stop_words]
    if not keywords:
        return req in cand or cand in req

    if all(has_term(cand, w) for w in keywords):
        return True

    for term, variants in tables.medical_terms.items():
        if has_term(req, term) and any(has_term(cand, v) for v in variants):
            return True
        if has_term(cand, term) and any(has_term(req, v) for v in variants):
            return True

    for verb, verb_forms in tables.action_verbs.items():
        if not has_term(req, verb) or not any(has_term(cand, v) for v in verb_forms):
            continue
        for term, variants in tables.medical_terms.items():
            spellings = [term] + list(variants)
            if any(has_term(req, s) for s in spellings) and any(has_term(cand, s) for s in spellings):
                return True

    return False


@dataclass
class CriticalActionsResult:
    score: int
    performed: List[str] = field(default_factory=list)
    missed: List[str] = field(default_factory=list)
    # Performed only through the submitted plan, with no matching logged action.
    stated: List[str] = field(default_factory=list)


def score_critical_actions(
    session: Session,
    case: MedicalCase,
    intervention: Optional[str] = None,
    tables: Optional[MatchingTables] = None,
) -> CriticalActionsResult:
    required = case.diagnosis.critical_actions
    if not required:
        return CriticalActionsResult(score=MAX_CRITICAL_ACTIONS_SCORE)

    # Most encounters are chat-only, so the intervention clause counts as well.
    logged = [a.action_type for a in session.actions]

    result = CriticalActionsResult(score=0)
    for action in required:
        if any(matches_action(c, action, tables) for c in logged):
            result.performed.append(action)
        elif intervention and matches_action(intervention, action, tables):
            result.performed.append(action)
            result.stated.append(action)
        else:
            result.missed.append(action)

    result.score = round_half_up(len(result.performed) * MAX_CRITICAL_ACTIONS_SCORE / len(required))
    return result


@dataclass
class MissedRedFlag:
    action: str
    consequence: Optional[str] = None


def evaluate_red_flags(
    session: Session,
    case: MedicalCase,
    intervention: Optional[str] = None,
    now: Optional[int] = None,
    tables: Optional[MatchingTables] = None,
) -> List[MissedRedFlag]:
    """Red flags never performed, or first performed after their time window."""
    missed: List[MissedRedFlag] = []
    # A plan stated in the submission counts as done when the encounter ended.
    stated_at = session.ended_at if session.ended_at is not None else (now or _now_ms())

    for flag in case.progression.red_flags:
        times = [a.timestamp for a in session.actions if matches_action(a.action_type, flag.action, tables)]
        if intervention and matches_action(intervention, flag.action, tables):
            times.append(stated_at)

        if not times:
            missed.append(MissedRedFlag(action=flag.action, consequence=flag.consequence))
            continue

        # A missing or zero window means the action only has to happen at some point.
        if flag.time_window:
            window_ms = flag.time_window * 60 * 1000
            if min(times) - session.created_at > window_ms:
                missed.append(
                    MissedRedFlag(action=f"{flag.action} (performed late)", consequence=flag.consequence)
                )

    return missed


# --- COMMUNICATION ---

@dataclass
class CommunicationResult:
    score: int
    covered: List[str] = field(default_factory=list)


def score_communication(session: Session, tables: Optional[MatchingTables] = None) -> CommunicationResult:
    tables = tables or default_tables()
    questions = [normalize(m.content) for m in session.messages if m.role == "user"]
    text = " ".join(questions)

    checks = [
        ("pain", PAIN_POINTS, any(normalize(k) in text for k in tables.pain_keywords)),
        ("history", HISTORY_POINTS, any(normalize(k) in text for k in tables.history_keywords)),
        ("medications", MEDICATION_POINTS, any(normalize(k) in text for k in tables.medication_keywords)),
        ("follow_up", FOLLOW_UP_POINTS, len({q for q in questions if q}) >= MIN_DISTINCT_QUESTIONS),
        ("empathy", EMPATHY_POINTS, any(normalize(k) in text for k in tables.empathy_keywords)),
    ]

    result = CommunicationResult(score=0)
    for name, points, hit in checks:
        if hit:
            result.score += points
            result.covered.append(name)
    result.score = min(result.score, MAX_COMMUNICATION_SCORE)
    return result


# --- EFFICIENCY ---

def _now_ms() -> int:
    return int(time.time() * 1000)


def get_time_limit(session: Session) -> int:
    return session.time_limit_sec or TIME_LIMITS[session.level]


def get_session_duration(session: Session, now: Optional[int] = None) -> int:
    end = session.ended_at if session.ended_at is not None else (now or _now_ms())
    return max(0, (end - session.created_at) // 1000)


def time_score(duration_sec: int, time_limit_sec: int) -> int:
    # Integer comparison of duration/limit against each percentage step.
    used = duration_sec * 100
    if used <= time_limit_sec * 50:
        return 20
    if used <= time_limit_sec * 75:
        return 18
    if used <= time_limit_sec * 100:
        return 15
    if used <= time_limit_sec * 120:
        return 10
    if used <= time_limit_sec * 150:
        return 5
    return 0


def action_count_score(action_count: int) -> int:
    if action_count == 0:
        return 0
    if 3 <= action_count <= 10:
        return 5
    if action_count > 10:
        return 3
    return 2


def score_efficiency(session: Session, now: Optional[int] = None, stated_actions: int = 0) -> int:
    """Time band plus action-count bonus; critical actions stated in the plan count as actions."""
    duration = get_session_duration(session, now)
    action_count = len(session.actions) + stated_actions
    total = time_score(duration, get_time_limit(session)) + action_count_score(action_count)
    return min(total, MAX_EFFICIENCY_SCORE)


# --- CONTEXT ---

@dataclass
class ScoringContext:
    diagnosis: DiagnosisResult
    critical_actions: CriticalActionsResult
    communication: CommunicationResult
    efficiency_score: int
    missed_red_flags: List[MissedRedFlag]
    time_limit: int
    duration: int

    @property
    def diagnosis_score(self) -> int:
        return self.diagnosis.total

    @property
    def critical_actions_score(self) -> int:
        return self.critical_actions.score

    @property
    def communication_score(self) -> int:
        return self.communication.score

    @property
    def performed_critical_actions(self) -> List[str]:
        return self.critical_actions.performed

    @property
    def missed_critical_actions(self) -> List[str]:
        return self.critical_actions.missed

    @property
    def time_used_percent(self) -> float:
        return self.duration / self.time_limit * 100 if self.time_limit else 0.0


def calculate_scoring_context(
    session: Session,
    case: MedicalCase,
    oracle: Optional[ClassificationOracle] = None,
    tables: Optional[MatchingTables] = None,
    now: Optional[int] = None,
) -> ScoringContext:
    tables = tables or default_tables()
    diagnosis = score_diagnosis(session, case, oracle, tables)
    intervention = diagnosis.intervention_text
    critical_actions = score_critical_actions(session, case, intervention, tables)

    return ScoringContext(
        diagnosis=diagnosis,
        critical_actions=critical_actions,
        communication=score_communication(session, tables),
        efficiency_score=score_efficiency(session, now, len(critical_actions.stated)),
        missed_red_flags=evaluate_red_flags(session, case, intervention, now, tables),
        time_limit=get_time_limit(session),
        duration=get_session_duration(session, now),
    )
