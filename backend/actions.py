# backend/actions.py
"""
Deterministic outcomes for clinical actions and history elicitation.

Nothing here touches the session store: each helper returns the outcome text
and a RevealedFacts delta, and the caller hands both to the store so the
mutation happens under the session's lock.
"""

import json
import re
from typing import List, Tuple

from models import MedicalCase, RevealedFacts


def _normalize(text: str) -> str:
    return re.sub(r"[^a-z0-9\s]", " ", (text or "").lower().replace("_", " ")).strip()


def _contains_any(text: str, keywords: List[str]) -> bool:
    return any(kw in text for kw in keywords)


# Body systems: (keywords in the action, PhysicalExamFindings attribute, fallback text)
EXAM_SYSTEMS = [
    (["cardiac", "heart", "cardiovascular"], "cardiovascular",
     "Cardiovascular exam: No murmurs, regular rhythm."),
    (["respiratory", "lung", "chest"], "respiratory",
     "Respiratory exam: Clear to auscultation bilaterally."),
    (["abdominal", "abdomen", "belly"], "abdominal",
     "Abdominal exam: Soft, non-tender, non-distended."),
    (["neuro", "neurological"], "neurological",
     "Neurological exam: Alert and oriented, no focal deficits."),
    (["heent", "head", "eyes", "throat"], "heent",
     "HEENT exam: Unremarkable."),
    (["skin"], "skin", "Skin exam: Warm and dry, no rashes."),
    (["musculoskeletal", "joint", "extremit"], "musculoskeletal",
     "Musculoskeletal exam: Full range of motion, no tenderness."),
]


def _exam(case: MedicalCase, level: int, action: str) -> Tuple[str, RevealedFacts]:
    for keywords, system, default in EXAM_SYSTEMS:
        if _contains_any(action, keywords):
            finding = getattr(case.physical_exam, system)
            delta = RevealedFacts(physical_exam=[system])
            if finding is None:
                return default, delta
            return f"{system.capitalize()} exam: {finding.at(level)}", delta

    delta = RevealedFacts(physical_exam=["general"])
    return f"General appearance: {case.physical_exam.general.at(level)}", delta


def _vitals(case: MedicalCase, level: int) -> str:
    v = case.physical_exam.vitals.at(level)
    return f"Vitals: BP {v.BP}, HR {v.HR} bpm, RR {v.RR}/min, Temp {v.temp}°C, O2 Sat {v.O2}%"


def _ekg(case: MedicalCase, level: int) -> Tuple[str, RevealedFacts]:
    delta = RevealedFacts(diagnostics=["ekg"])
    if case.diagnostics.ekg is None:
        return "EKG ordered. Results pending...", delta
    return f"EKG: {case.diagnostics.ekg.at(level)}", delta


def _lab(case: MedicalCase, level: int, action: str) -> Tuple[str, RevealedFacts]:
    labs = case.diagnostics.labs
    if labs is not None:
        for name in list(labs.results) + labs.available:
            if _normalize(name) and _normalize(name) in action:
                delta = RevealedFacts(diagnostics=[name])
                result = labs.results.get(name)
                if result is None:
                    return f"{name} ordered. Results within normal limits.", delta
                return f"{name} result: {json.dumps(result.at(level))}", delta
    return "Lab test ordered. Results pending...", RevealedFacts()


def _imaging(case: MedicalCase, level: int, action: str) -> Tuple[str, RevealedFacts]:
    imaging = case.diagnostics.imaging
    if imaging is None or not imaging.available:
        return "Imaging ordered. Results pending...", RevealedFacts()

    # Prefer the study named in the action, otherwise the first one available.
    chosen = imaging.available[0]
    for name in imaging.available:
        if _normalize(name) in action:
            chosen = name
            break

    delta = RevealedFacts(diagnostics=[chosen])
    finding = imaging.results.get(chosen)
    if finding is None:
        return f"{chosen} ordered. Results pending...", delta
    return f"{chosen}: {finding.at(level)}", delta


def _treatment(action: str) -> str:
    if "aspirin" in action:
        return "Aspirin 325mg given. Patient reports feeling slightly better."
    if "nitro" in action:
        return "Nitroglycerin administered. Pain decreased."
    if "fluid" in action:
        return "IV fluids started."
    return "Medication administered as ordered."


def process_action(case: MedicalCase, level: int, action_type: str) -> Tuple[str, RevealedFacts]:
    """Resolve an action to its level-graded result text and the facts it reveals."""
    action = _normalize(action_type)
    words = action.split()

    if _contains_any(action, ["exam", "examine", "auscultat", "palpat"]):
        return _exam(case, level, action)

    if "vital" in action:
        return _vitals(case, level), RevealedFacts()

    if "ekg" in words or "ecg" in words or "electrocardiogram" in action:
        return _ekg(case, level)

    if _contains_any(action, ["imaging", "xray", "x ray", "ultrasound"]) or "ct" in words or "mri" in words:
        return _imaging(case, level, action)

    if _contains_any(action, ["order", "lab", "draw"]):
        return _lab(case, level, action)

    if _contains_any(action, ["give", "gave", "administer"]):
        return _treatment(action), RevealedFacts()

    return f'Action "{action_type}" recorded.', RevealedFacts()


# --- HISTORY ELICITATION ---

PMH_CUES = ["medical history", "past history", "conditions", "pmh", "health problems", "illnesses"]
MEDICATION_CUES = ["medication", "meds", "pills", "taking any", "prescription"]
ALLERGY_CUES = ["allerg"]
FAMILY_CUES = ["family", "mother", "father", "parents", "siblings", "runs in"]
HPI_CUES = ["what brings you", "tell me", "what happened", "when did", "describe", "pain"]
SOCIAL_CUES = {
    "smoking": ["smok", "cigarette", "tobacco"],
    "alcohol": ["alcohol", "drink"],
    "drugs": ["drugs", "recreational"],
    "occupation": ["work", "job", "occupation"],
    "living_situation": ["live with", "living", "home"],
}


def elicit_facts(case: MedicalCase, question: str) -> RevealedFacts:
    """Facts the learner's question unlocks, given the case's reveal rules.

    "always" facts are seeded at session start; here we only unlock the ones
    the learner has to ask about.
    """
    text = _normalize(question)
    rules = case.reveal_rules
    history = case.history
    delta = RevealedFacts()

    if rules.hpi != "always" and _contains_any(text, HPI_CUES):
        delta.hpi = True
    if _contains_any(text, PMH_CUES):
        delta.pmh = list(history.pmh)
    if _contains_any(text, MEDICATION_CUES):
        delta.medications = True
    if _contains_any(text, ALLERGY_CUES):
        delta.allergies = True
    if history.family_history and _contains_any(text, FAMILY_CUES):
        delta.family_history = True

    social = history.social_history
    for aspect, cues in SOCIAL_CUES.items():
        if getattr(social, aspect) and _contains_any(text, cues):
            delta.social_history.append(aspect)

    return delta
