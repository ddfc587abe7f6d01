# backend/test_scoring.py
"""
Scoring rule tests with stub oracles.

Run: pytest backend/test_scoring.py -v
"""

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from conftest import T0, FailingOracle, FixedOracle, make_session
from oracle import DiagnosisLabel, InterventionLabel, LLMOracle, OfflineOracle
from scoring import (
    action_count_score,
    evaluate_red_flags,
    fallback_diagnosis_label,
    get_session_duration,
    get_time_limit,
    matches_action,
    normalize,
    round_half_up,
    score_communication,
    score_critical_actions,
    score_diagnosis,
    score_efficiency,
    time_score,
)


def test_normalize():
    assert normalize("  Non-ST  Elevation_MI! ") == "non st elevation mi"
    assert normalize(None) == ""


def test_round_half_up():
    assert round_half_up(12.5) == 13
    assert round_half_up(6.25) == 6
    assert round_half_up(18.75) == 19


# --- diagnosis ---

def test_exact_primary_never_consults_oracle(chest_case):
    oracle = FixedOracle(diagnosis=DiagnosisLabel.INCORRECT)
    result = score_diagnosis(make_session(chest_case, submitted="nstemi"), chest_case, oracle)
    assert result.correctness == 20
    assert result.label == DiagnosisLabel.PRIMARY
    assert oracle.calls == []


def test_exact_differential_scores_partial_credit(chest_case):
    result = score_diagnosis(make_session(chest_case, submitted="Unstable Angina"), chest_case, FailingOracle())
    assert result.correctness == 12


def test_oracle_label_is_used(chest_case):
    oracle = FixedOracle(diagnosis=DiagnosisLabel.PRIMARY)
    result = score_diagnosis(make_session(chest_case, submitted="Non-ST elevation MI"), chest_case, oracle)
    assert result.correctness == 20
    assert oracle.calls == ["Non-ST elevation MI"]


@pytest.mark.parametrize(
    "submitted, expected",
    [
        ("heart attack", 20),
        ("probably unstable angina", 12),
        ("gastritis", 0),
    ],
)
def test_fallback_when_oracle_unavailable(chest_case, submitted, expected):
    session = make_session(chest_case, submitted=submitted)
    assert score_diagnosis(session, chest_case, OfflineOracle()).correctness == expected


def test_fallback_matches_diagnosis_inside_longer_words():
    assert fallback_diagnosis_label("bronchopneumonia", "Pneumonia", []) == DiagnosisLabel.PRIMARY
    assert fallback_diagnosis_label("NSTEMIs", "NSTEMI", []) == DiagnosisLabel.PRIMARY
    assert fallback_diagnosis_label("likely appendicitis, acute", "Acute appendicitis", []) == DiagnosisLabel.PRIMARY
    assert fallback_diagnosis_label("STEMI", "NSTEMI", ["STEMI"]) == DiagnosisLabel.DIFFERENTIAL
    assert fallback_diagnosis_label("pneumothorax", "Pneumonia", []) == DiagnosisLabel.INCORRECT


def test_fallback_when_oracle_raises_unexpectedly(chest_case):
    session = make_session(chest_case, submitted="heart attack")
    result = score_diagnosis(session, chest_case, FailingOracle(RuntimeError("boom")))
    assert result.correctness == 20


def test_unparseable_oracle_answer_falls_back(chest_case):
    oracle = LLMOracle(FakeListChatModel(responses=["PRIMARY or DIFFERENTIAL"]))
    session = make_session(chest_case, submitted="heart attack")
    assert score_diagnosis(session, chest_case, oracle).correctness == 20


def test_empty_diagnosis_ignores_conversation(chest_case):
    session = make_session(chest_case, user_messages=["I think this is an NSTEMI"], submitted=None)
    result = score_diagnosis(session, chest_case, FixedOracle(diagnosis=DiagnosisLabel.PRIMARY))
    assert result.correctness == 0
    assert result.intervention == 0


def test_intervention_fallback_labels(chest_case):
    oracle = OfflineOracle()

    harmful = make_session(chest_case, submitted="NSTEMI | Intervention: Discharge home with ibuprofen")
    result = score_diagnosis(harmful, chest_case, oracle)
    assert result.intervention_label == InterventionLabel.INAPPROPRIATE
    assert result.intervention == 0

    partial = make_session(chest_case, submitted="NSTEMI | Intervention: aspirin and nitroglycerin")
    assert score_diagnosis(partial, chest_case, oracle).intervention == 3

    full = make_session(
        chest_case,
        submitted="NSTEMI | Intervention: Obtain ECG, order troponin, give aspirin and nitroglycerin",
    )
    result = score_diagnosis(full, chest_case, oracle)
    assert result.intervention == 5
    assert result.total == 25


def test_intervention_oracle_label(chest_case):
    oracle = FixedOracle(diagnosis=DiagnosisLabel.PRIMARY, intervention=InterventionLabel.PARTIAL)
    session = make_session(chest_case, submitted="NSTEMI | intervention: heparin")
    result = score_diagnosis(session, chest_case, oracle)
    assert result.correctness == 20
    assert result.intervention == 3


# --- critical actions ---

@pytest.mark.parametrize(
    "candidate, required, expected",
    [
        ("obtain_ecg", "Obtain EKG within 10 minutes", True),
        ("gave ASA", "Give aspirin", True),
        ("order_troponin", "Order troponin", True),
        ("order_cbc", "Order troponin", False),
        ("iv_access", "Establish IV access", True),
        ("give_nitroglycerin", "Give aspirin", False),
    ],
)
def test_matches_action(candidate, required, expected):
    assert matches_action(candidate, required) is expected


def test_critical_actions_round_half_up(chest_case):
    session = make_session(chest_case, actions=[("obtain_ekg", 60), ("order_troponin", 90)])
    result = score_critical_actions(session, chest_case)
    assert result.score == 13
    assert result.performed == ["Obtain EKG within 10 minutes", "Order troponin"]
    assert result.missed == ["Give aspirin", "Give nitroglycerin"]


def test_intervention_clause_counts_as_performed(chest_case):
    session = make_session(chest_case, actions=[("obtain_ekg", 60)])
    result = score_critical_actions(session, chest_case, intervention="aspirin, nitroglycerin")
    assert result.score == 19
    assert result.missed == ["Order troponin"]
    assert result.stated == ["Give aspirin", "Give nitroglycerin"]


def test_no_required_actions_is_full_marks(chest_case):
    case = chest_case.model_copy(
        update={"diagnosis": chest_case.diagnosis.model_copy(update={"critical_actions": []})}
    )
    assert score_critical_actions(make_session(case), case).score == 25


# --- red flags ---

def test_red_flags_missed_and_late(chest_case):
    session = make_session(chest_case, actions=[("obtain_ekg", 12 * 60)], duration_sec=15 * 60)
    missed = evaluate_red_flags(session, chest_case)
    assert [f.action for f in missed] == ["Obtain EKG (performed late)", "Give aspirin"]
    assert missed[1].consequence == "Increased risk of infarct extension"


def test_zero_time_window_has_no_deadline(chest_case):
    flags = [f.model_copy(update={"time_window": 0}) for f in chest_case.progression.red_flags]
    case = chest_case.model_copy(
        update={"progression": chest_case.progression.model_copy(update={"red_flags": flags})}
    )
    session = make_session(case, actions=[("obtain_ekg", 12 * 60)], duration_sec=15 * 60)
    assert [f.action for f in evaluate_red_flags(session, case)] == ["Give aspirin"]


def test_red_flag_met_by_intervention_at_end(chest_case):
    session = make_session(chest_case, actions=[("obtain_ekg", 60)], duration_sec=240)
    assert evaluate_red_flags(session, chest_case, intervention="give aspirin") == []


# --- communication ---

def test_communication_full_marks(chest_case):
    session = make_session(
        chest_case,
        user_messages=[
            "Where is the pain and does it radiate?",
            "Do you have any past medical history?",
            "Are you taking any medications?",
            "How are you feeling? I understand this is scary.",
        ],
    )
    result = score_communication(session)
    assert result.score == 20
    assert result.covered == ["pain", "history", "medications", "follow_up", "empathy"]


def test_repeated_question_is_not_follow_up(chest_case):
    session = make_session(chest_case, user_messages=["Where is the pain?"] * 3)
    result = score_communication(session)
    assert result.score == 5
    assert result.covered == ["pain"]


# --- efficiency ---

@pytest.mark.parametrize(
    "duration, expected",
    [(150, 20), (151, 18), (225, 18), (226, 15), (300, 15), (360, 10), (450, 5), (451, 0)],
)
def test_time_score_steps(duration, expected):
    assert time_score(duration, 300) == expected


@pytest.mark.parametrize("count, expected", [(0, 0), (1, 2), (2, 2), (3, 5), (10, 5), (11, 3)])
def test_action_count_score(count, expected):
    assert action_count_score(count) == expected


def test_efficiency_uses_level_default_limit(chest_case):
    actions = [("obtain_ekg", 10), ("order_troponin", 20), ("give_aspirin", 30), ("give_nitroglycerin", 40)]
    session = make_session(chest_case, actions=actions, duration_sec=240)
    assert get_time_limit(session) == 300
    assert score_efficiency(session) == 20


def test_stated_critical_actions_earn_action_bonus(chest_case):
    session = make_session(chest_case, duration_sec=210, time_limit_sec=300)
    assert score_efficiency(session) == 18
    assert score_efficiency(session, stated_actions=4) == 23


def test_explicit_time_limit_wins(chest_case):
    session = make_session(chest_case, time_limit_sec=600)
    assert get_time_limit(session) == 600


def test_duration_of_active_session_uses_now(chest_case):
    session = make_session(chest_case, duration_sec=None)
    assert session.is_active
    assert get_session_duration(session, now=T0 + 90_500) == 90
