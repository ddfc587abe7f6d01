# backend/feedback_templates.py
"""Human-readable feedback lines derived from a ScoringContext."""

import math
from typing import List

from models import MedicalCase
from oracle import InterventionLabel
from scoring import ScoringContext

COMMUNICATION_GAPS = {
    "pain": "pain characteristics (location, radiation, quality)",
    "history": "past medical history (PMH)",
    "medications": "current medications and allergies",
    "follow_up": "follow-up questions on the patient's answers",
    "empathy": "how the patient is feeling and coping",
}


def _missing_communication(context: ScoringContext) -> List[str]:
    return [text for key, text in COMMUNICATION_GAPS.items() if key not in context.communication.covered]


def generate_what_went_well(context: ScoringContext, case: MedicalCase) -> List[str]:
    items: List[str] = []
    diagnosis = context.diagnosis

    if diagnosis.correctness >= 20:
        items.append(f"Correctly identified the primary diagnosis: {case.diagnosis.primary}")
    elif diagnosis.correctness >= 12:
        items.append("Considered an appropriate differential diagnosis in your clinical assessment")

    if diagnosis.intervention_label == InterventionLabel.APPROPRIATE:
        items.append("Proposed an appropriate initial management plan")

    performed = context.performed_critical_actions
    if performed:
        total = len(case.diagnosis.critical_actions)
        if len(performed) == total:
            items.append("Completed all critical interventions and diagnostic workup")
        else:
            items.append(f"Performed critical interventions such as: {performed[0]}")
            if len(performed) > 1:
                items.append(
                    f"Completed {len(performed)} out of {total} critical interventions in the management plan"
                )

    if context.communication_score >= 15:
        items.append("Demonstrated excellent history-taking and clinical communication skills")
    elif context.communication_score >= 10:
        items.append("Asked clinically relevant questions during the patient interview")

    if context.duration * 100 <= context.time_limit * 75:
        items.append("Managed the case efficiently within the clinical time constraints")

    if not items:
        items.append("Completed the case session")
    return items


def generate_missed(context: ScoringContext, case: MedicalCase) -> List[str]:
    items = [f"Missed critical intervention: {action}" for action in context.missed_critical_actions]

    if context.communication_score < 10:
        gaps = _missing_communication(context)
        items.append("Incomplete history-taking. Consider asking about " + ", ".join(gaps))

    if not context.diagnosis.diagnosis_text:
        items.append("No diagnosis was submitted")
    elif context.diagnosis.correctness == 0:
        items.append(f"Did not identify the correct primary diagnosis: {case.diagnosis.primary}")

    if context.diagnosis.intervention_label == InterventionLabel.INAPPROPRIATE:
        items.append("The proposed intervention was not appropriate for this presentation")
    return items


def generate_red_flags_missed(context: ScoringContext) -> List[str]:
    lines = []
    for flag in context.missed_red_flags:
        if flag.consequence:
            lines.append(f"{flag.action} - {flag.consequence}")
        else:
            lines.append(flag.action)
    return lines


def generate_recommendations(context: ScoringContext, case: MedicalCase) -> List[str]:
    recommendations: List[str] = []

    if context.duration > context.time_limit:
        over_min = math.ceil((context.duration - context.time_limit) / 60)
        limit_min = context.time_limit // 60
        recommendations.append(
            f"Try to work more efficiently: you exceeded the {limit_min}-minute time limit by "
            f"{over_min} minute{'s' if over_min > 1 else ''}. Focus on critical actions first."
        )

    if context.missed_critical_actions:
        recommendations.append(
            f"For patients presenting with {case.patient.chief_complaint.lower()}, ensure you include: "
            f"{context.missed_critical_actions[0]} as part of your initial management plan"
        )

    for flag in context.missed_red_flags:
        if flag.consequence:
            recommendations.append(
                f"{flag.action} is a time-sensitive intervention: {flag.consequence.lower()} if delayed"
            )

    if context.communication_score < 10:
        recommendations.append(
            "Enhance your history-taking by systematically evaluating pain characteristics, associated "
            "symptoms, past medical history, current medications and allergies."
        )

    if context.diagnosis.correctness < 15:
        recommendations.append(
            f"Review the clinical presentation carefully. The primary diagnosis was {case.diagnosis.primary}. "
            "Integrate the history, examination findings and diagnostic workup to reach it."
        )

    if context.diagnosis.diagnosis_text and context.diagnosis.intervention_text is None:
        recommendations.append("State your initial management plan together with your diagnosis.")

    if (
        context.diagnosis.correctness >= 20
        and not context.missed_critical_actions
        and not context.missed_red_flags
    ):
        recommendations.append(
            "Excellent clinical performance! Keep balancing efficiency with a comprehensive assessment."
        )

    if not recommendations:
        recommendations.append(
            "Good clinical performance overall. Keep refining your diagnostic reasoning and intervention planning."
        )
    return recommendations
