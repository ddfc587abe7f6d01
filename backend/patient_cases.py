# backend/patient_cases.py

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from config import get_settings
from errors import CaseNotFound, InvalidCase
from models import CaseSummary, MedicalCase

logger = logging.getLogger("encounter_cases")

# Each entry here is one scripted encounter.
# Fields follow MedicalCase (snake_case here; JSON case files may use camelCase):
# - patient / history: what the virtual patient knows and how they talk
# - physical_exam / diagnostics: findings graded by level (level1 = classic, level3 = subtle)
# - diagnosis: the ground truth used only for scoring and feedback
# - reveal_rules: which history facts are given freely vs. must be elicited
# - progression.red_flags: time-sensitive actions (time_window in minutes)

PATIENT_CASES: List[Dict[str, Any]] = [
    {
        "case_id": "chest-pain-001",
        "level": 1,
        "title": "Chest pain in a middle-aged woman",
        "description": "Acute onset substernal chest pressure with cardiac risk factors.",
        "specialty": "emergency medicine",
        "patient": {
            "name": "Sarah Johnson",
            "age": 58,
            "sex": "F",
            "chief_complaint": "Chest pain for the past 2 hours",
            "personality": {
                "baseline": "anxious, cooperative",
                "emotional_state": "fearful due to pain",
                "communication_style": "answers clearly but worries aloud",
            },
        },
        "history": {
            "hpi": (
                "Pressure-like pain in the center of the chest that started two hours ago "
                "while carrying groceries. It spreads to the left arm and jaw, with nausea "
                "and sweating. Rest has not made it go away."
            ),
            "pmh": ["Hypertension", "Type 2 diabetes", "High cholesterol"],
            "medications": ["Lisinopril 10mg daily", "Metformin 1000mg twice daily", "Atorvastatin 40mg nightly"],
            "allergies": ["Penicillin (rash)"],
            "family_history": "Father had a heart attack at 60.",
            "social_history": {
                "smoking": "30 pack-years, quit 5 years ago",
                "alcohol": "A glass of wine on weekends",
                "occupation": "School administrator",
                "living_situation": "Lives with her husband",
            },
        },
        "physical_exam": {
            "vitals": {
                "level1": {"BP": "158/94", "HR": 102, "RR": 20, "temp": 37.0, "O2": 95, "diaphoretic": True},
                "level2": {"BP": "148/90", "HR": 96, "RR": 18, "temp": 37.0, "O2": 96},
                "level3": {"BP": "142/88", "HR": 92, "RR": 18, "temp": 36.9, "O2": 97},
            },
            "general": {
                "level1": "Diaphoretic, clutching her chest, visibly distressed.",
                "level2": "Uncomfortable, slightly pale.",
                "level3": "Appears anxious but in no acute distress.",
            },
            "cardiovascular": {
                "level1": "Tachycardic, regular rhythm, S4 gallop, no murmurs.",
                "level2": "Mildly tachycardic, regular rhythm, no murmurs.",
                "level3": "Regular rate and rhythm, no murmurs.",
            },
            "respiratory": {
                "level1": "Bibasilar crackles.",
                "level2": "Faint crackles at the bases.",
                "level3": "Clear to auscultation bilaterally.",
            },
        },
        "diagnostics": {
            "labs": {
                "available": ["troponin", "cbc", "bmp"],
                "results": {
                    "troponin": {
                        "level1": {"troponin I": "2.4 ng/mL (high)"},
                        "level2": {"troponin I": "0.9 ng/mL (high)"},
                        "level3": {"troponin I": "0.08 ng/mL (borderline)"},
                    },
                },
            },
            "imaging": {
                "available": ["Chest X-ray"],
                "results": {
                    "Chest X-ray": {
                        "level1": "Mild pulmonary vascular congestion.",
                        "level2": "No acute cardiopulmonary process.",
                        "level3": "No acute cardiopulmonary process.",
                    },
                },
            },
            "ekg": {
                "level1": "Sinus tachycardia, 2 mm ST depression in V4-V6, no ST elevation.",
                "level2": "Sinus rhythm, 1 mm ST depression in V5-V6.",
                "level3": "Sinus rhythm, nonspecific T wave flattening.",
            },
        },
        "diagnosis": {
            "primary": "NSTEMI",
            "differentials": [
                "Unstable angina",
                "Acute coronary syndrome",
                "STEMI",
                "Aortic dissection",
                "Pulmonary embolism",
                "Pericarditis",
            ],
            "critical_actions": [
                "Obtain EKG within 10 minutes",
                "Order troponin",
                "Give aspirin",
                "Give nitroglycerin",
            ],
            "avoid_actions": ["Discharge home"],
        },
        "reveal_rules": {
            "hpi": "always",
            "pmh": "when_asked",
            "medications": "when_asked",
            "allergies": "when_asked",
            "social_history": "when_asked",
            "family_history": "only_if_asked",
        },
        "progression": {
            "red_flags": [
                {
                    "action": "Obtain EKG",
                    "time_window": 10,
                    "severity": "critical",
                    "consequence": "Delayed recognition of ongoing myocardial ischemia",
                },
                {
                    "action": "Give aspirin",
                    "time_window": 20,
                    "severity": "critical",
                    "consequence": "Increased risk of infarct extension",
                },
            ],
        },
        "guardrails": {
            "patient_cannot_say": ["I am having a heart attack", "NSTEMI", "troponin"],
            "custom_rules": ["Do not volunteer the family history unless asked."],
        },
    },
    {
        "case_id": "abdominal-pain-001",
        "level": 2,
        "title": "Right lower quadrant pain in a young man",
        "description": "Periumbilical pain migrating to the right lower quadrant.",
        "specialty": "general surgery",
        "patient": {
            "name": "Daniel Reyes",
            "age": 22,
            "sex": "M",
            "chief_complaint": "Stomach pain since last night",
            "personality": {
                "baseline": "stoic, a little embarrassed",
                "emotional_state": "tired and uncomfortable",
                "communication_style": "short answers unless prompted",
            },
        },
        "history": {
            "hpi": (
                "Dull pain around the belly button started last night, then moved to the "
                "lower right side this morning and became sharp. Lost appetite, vomited once. "
                "Walking and coughing make it worse."
            ),
            "pmh": [],
            "medications": [],
            "allergies": [],
            "social_history": {
                "alcohol": "Occasional beer",
                "occupation": "University student",
            },
        },
        "physical_exam": {
            "vitals": {
                "level1": {"BP": "128/78", "HR": 104, "RR": 18, "temp": 38.4, "O2": 99},
                "level2": {"BP": "126/78", "HR": 98, "RR": 16, "temp": 38.0, "O2": 99},
                "level3": {"BP": "124/76", "HR": 90, "RR": 16, "temp": 37.6, "O2": 99},
            },
            "general": {
                "level1": "Lying still, guarding his abdomen.",
                "level2": "Uncomfortable, prefers not to move.",
                "level3": "Mildly uncomfortable.",
            },
            "abdominal": {
                "level1": "Marked tenderness at McBurney's point, rebound and guarding, positive Rovsing sign.",
                "level2": "Right lower quadrant tenderness with mild guarding.",
                "level3": "Mild right lower quadrant tenderness, no rebound.",
            },
        },
        "diagnostics": {
            "labs": {
                "available": ["cbc", "crp", "urinalysis"],
                "results": {
                    "cbc": {
                        "level1": {"WBC": "16.2 x10^9/L", "neutrophils": "85%"},
                        "level2": {"WBC": "13.1 x10^9/L", "neutrophils": "78%"},
                        "level3": {"WBC": "11.0 x10^9/L", "neutrophils": "72%"},
                    },
                },
            },
            "imaging": {
                "available": ["CT abdomen"],
                "results": {
                    "CT abdomen": {
                        "level1": "Dilated, inflamed appendix with periappendiceal fat stranding.",
                        "level2": "Appendix 9 mm with surrounding fat stranding.",
                        "level3": "Borderline appendiceal enlargement.",
                    },
                },
            },
        },
        "diagnosis": {
            "primary": "Acute appendicitis",
            "differentials": ["Mesenteric adenitis", "Gastroenteritis", "Kidney stone", "Meckel diverticulitis"],
            "critical_actions": [
                "Order CBC",
                "Order CT abdomen",
                "Establish IV access",
                "Request surgical consult",
            ],
            "avoid_actions": ["Discharge home"],
        },
        "reveal_rules": {
            "hpi": "when_asked",
            "pmh": "when_asked",
            "medications": "always",
            "allergies": "always",
            "social_history": "only_if_asked",
            "family_history": "only_if_asked",
        },
        "progression": {
            "red_flags": [
                {
                    "action": "Request surgical consult",
                    "time_window": 30,
                    "severity": "important",
                    "consequence": "Higher chance of perforation",
                },
            ],
        },
        "guardrails": {
            "patient_cannot_say": ["appendicitis", "appendix"],
        },
    },
]

_SAFE_ID = re.compile(r"[^a-zA-Z0-9-]")


def sanitize_case_id(case_id: str) -> str:
    """Keep only characters allowed in case ids (no path traversal)."""
    return _SAFE_ID.sub("", case_id or "")


def _validate(case_id: str, raw: Dict[str, Any]) -> MedicalCase:
    try:
        return MedicalCase.model_validate(raw)
    except ValidationError as e:
        logger.warning("Case failed validation: case_id=%s errors=%d", case_id, e.error_count())
        raise InvalidCase(case_id, f"{e.error_count()} schema error(s)") from e


def _read_case_file(case_id: str, cases_dir: str) -> Optional[Dict[str, Any]]:
    path = Path(cases_dir) / f"{case_id}.json"
    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise InvalidCase(case_id, "file is not valid JSON") from e


def load_case(case_id: str, cases_dir: Optional[str] = None) -> MedicalCase:
    """
    Load a case definition by id.

    Bundled cases are checked first, then `<cases_dir>/<case_id>.json`
    (cases_dir defaults to the CASES_DIR setting).
    Raises CaseNotFound or InvalidCase.
    """
    safe_id = sanitize_case_id(case_id)
    if not safe_id:
        raise CaseNotFound(case_id)

    for raw in PATIENT_CASES:
        if raw["case_id"] == safe_id:
            return _validate(safe_id, raw)

    directory = cases_dir or get_settings().cases_dir
    if directory:
        raw = _read_case_file(safe_id, directory)
        if raw is not None:
            case = _validate(safe_id, raw)
            logger.info("Case loaded from file: case_id=%s dir=%s", safe_id, directory)
            return case

    raise CaseNotFound(safe_id)


def list_cases(cases_dir: Optional[str] = None) -> List[CaseSummary]:
    """Summaries of every loadable case; invalid files are skipped."""
    cases: List[MedicalCase] = [_validate(raw["case_id"], raw) for raw in PATIENT_CASES]

    directory = cases_dir or get_settings().cases_dir
    if directory and Path(directory).is_dir():
        known = {c.case_id for c in cases}
        for path in sorted(Path(directory).glob("*.json")):
            if path.stem in known:
                continue
            try:
                cases.append(load_case(path.stem, directory))
            except InvalidCase:
                logger.warning("Skipping invalid case file: %s", path.name)

    return [
        CaseSummary(
            case_id=c.case_id,
            title=c.title,
            level=c.level,
            specialty=c.specialty,
            chief_complaint=c.patient.chief_complaint,
        )
        for c in cases
    ]
