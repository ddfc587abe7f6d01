# backend/scoring_tables.py
"""
Keyword and synonym tables used by the scoring rules.

These are data, not logic: the matching code in scoring.py only walks the
tables. A deployment can replace them with a JSON file whose keys mirror
MatchingTables (MATCHING_TABLES_PATH); missing keys keep the defaults below.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel

from config import get_settings

logger = logging.getLogger("encounter_scoring")


class MatchingTables(BaseModel):
    # Words ignored when extracting keywords from a critical action.
    stop_words: List[str] = [
        "the", "a", "an", "and", "or", "within", "minutes", "obtain", "get",
    ]

    # term -> spellings that count as the same thing on either side.
    medical_terms: Dict[str, List[str]] = {
        "aspirin": ["aspirin", "asa"],
        "ekg": ["ekg", "ecg", "electrocardiogram"],
        "ecg": ["ekg", "ecg", "electrocardiogram"],
        "troponin": ["troponin", "trop"],
        "nitroglycerin": ["nitro", "nitroglycerin", "gtn"],
        "iv": ["iv", "intravenous", "access"],
        "monitoring": ["monitoring", "monitor", "cardiac"],
        "cardiology": ["cardiology", "cardiac", "consult"],
        "ct": ["ct", "computed tomography", "cat scan"],
        "cbc": ["cbc", "blood count"],
        "surgical": ["surgical", "surgery", "surgeon"],
    }

    # verb -> phrasings of that verb.
    action_verbs: Dict[str, List[str]] = {
        "give": ["give", "gave", "administer", "administered", "provide", "start"],
        "order": ["order", "ordered", "ordering", "request", "requested", "send"],
        "obtain": ["obtain", "ordered", "get", "request"],
    }

    # Lay or alternate name -> terms in a primary diagnosis that make it acceptable.
    diagnosis_synonyms: Dict[str, List[str]] = {
        "heart attack": ["mi", "ami", "stemi", "nstemi", "myocardial infarction"],
    }

    # Communication sub-checks: (points, keywords).
    pain_keywords: List[str] = [
        "where", "pain", "hurt", "radiate", "radiation", "quality", "sharp", "dull", "pressure",
    ]
    history_keywords: List[str] = [
        "past medical", "history", "previous", "conditions", "medical history", "pmh",
    ]
    medication_keywords: List[str] = [
        "medications", "medication", "meds", "drugs", "allergies", "allergic", "taking any",
    ]
    empathy_keywords: List[str] = [
        "how are you", "feel", "worried", "concerned", "understand", "sorry",
    ]


def load_matching_tables(path: Optional[str] = None) -> MatchingTables:
    if not path:
        return MatchingTables()
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    tables = MatchingTables.model_validate(data)
    logger.info("Matching tables loaded: path=%s", path)
    return tables


@lru_cache
def default_tables() -> MatchingTables:
    return load_matching_tables(get_settings().matching_tables_path)
