# backend/submission.py
"""
The learner's end-of-encounter submission is one free-text field:

    submission   := diagnosis [ "|" "Intervention:" intervention ]

The delimiter is matched case-insensitively with optional whitespace around
"|" and ":". Everything before it is the diagnosis; everything after it is
the intervention clause. Both the HTTP layer (when building the field) and
the scoring rules (when reading it back) go through this module.
"""

import re
from typing import NamedTuple, Optional

INTERVENTION_DELIMITER = " | Intervention: "

_SUBMISSION_RE = re.compile(
    r"^(?P<diagnosis>.*?)(?:\s*\|\s*intervention\s*:(?P<intervention>.*))?$",
    re.IGNORECASE | re.DOTALL,
)


class Submission(NamedTuple):
    diagnosis: str
    intervention: Optional[str]


def parse_submission(text: Optional[str]) -> Submission:
    if not text:
        return Submission("", None)

    match = _SUBMISSION_RE.match(text.strip())
    # The pattern accepts any string, so match is never None.
    diagnosis = match.group("diagnosis").strip()
    intervention = match.group("intervention")
    if intervention is not None:
        intervention = intervention.strip() or None
    return Submission(diagnosis, intervention)


def format_submission(diagnosis: Optional[str], intervention: Optional[str] = None) -> Optional[str]:
    diagnosis = (diagnosis or "").strip()
    intervention = (intervention or "").strip()
    if not diagnosis and not intervention:
        return None
    if intervention:
        return f"{diagnosis}{INTERVENTION_DELIMITER}{intervention}"
    return diagnosis
