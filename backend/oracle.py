# backend/oracle.py
"""
Classification oracle: an LLM asked to pick one label from a fixed set.

Every failure mode (transport error, timeout, missing API key, an answer that
is not exactly one known label) is raised as ClassificationUnavailable. The
scoring rules catch it and fall back to deterministic matching.
"""

import logging
import re
from enum import Enum
from typing import List, Optional, Protocol, Type, TypeVar

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from config import get_settings
from errors import ClassificationUnavailable
from llm import get_chat_model, message_text

logger = logging.getLogger("encounter_llm")


class DiagnosisLabel(str, Enum):
    PRIMARY = "PRIMARY"
    DIFFERENTIAL = "DIFFERENTIAL"
    INCORRECT = "INCORRECT"


class InterventionLabel(str, Enum):
    APPROPRIATE = "APPROPRIATE"
    PARTIAL = "PARTIAL"
    INAPPROPRIATE = "INAPPROPRIATE"


class ClassificationOracle(Protocol):
    def classify_diagnosis(
        self, submitted: str, primary: str, differentials: List[str]
    ) -> DiagnosisLabel: ...

    def classify_intervention(
        self,
        intervention: str,
        primary: str,
        critical_actions: List[str],
        avoid_actions: List[str],
    ) -> InterventionLabel: ...


class OfflineOracle:
    """Used when no LLM is configured: always defers to the fallback."""

    def classify_diagnosis(self, submitted, primary, differentials):
        raise ClassificationUnavailable("no classification model configured")

    def classify_intervention(self, intervention, primary, critical_actions, avoid_actions):
        raise ClassificationUnavailable("no classification model configured")


L = TypeVar("L", DiagnosisLabel, InterventionLabel)


def parse_label(raw: str, labels: Type[L]) -> L:
    """Exactly one distinct known label must appear as a whole word."""
    pattern = r"\b(" + "|".join(label.value for label in labels) + r")\b"
    found = set(re.findall(pattern, (raw or "").upper()))
    if len(found) != 1:
        raise ClassificationUnavailable(f"unparseable oracle answer (length={len(raw or '')})")
    return labels(found.pop())


DIAGNOSIS_SYSTEM_PROMPT = """You are a medical education assistant grading a student's diagnosis.

Compare the student's diagnosis with the case answer key:
- Same condition as the PRIMARY diagnosis (exact term, synonym, abbreviation or equivalent medical term): answer PRIMARY
- Same condition as one of the listed DIFFERENTIAL diagnoses: answer DIFFERENTIAL
- Anything else, including related but different conditions: answer INCORRECT

Be strict: "STEMI" is not "NSTEMI". "Non-ST elevation MI" is "NSTEMI".

Respond with exactly one word: PRIMARY, DIFFERENTIAL or INCORRECT."""

INTERVENTION_SYSTEM_PROMPT = """You are a medical education assistant grading a student's initial management plan.

Given the diagnosis, the required critical actions and the actions to avoid:
- The plan covers the critical actions and includes nothing harmful: answer APPROPRIATE
- The plan covers some of them and includes nothing harmful: answer PARTIAL
- The plan is harmful, irrelevant or empty: answer INAPPROPRIATE

Respond with exactly one word: APPROPRIATE, PARTIAL or INAPPROPRIATE."""


class LLMOracle:
    def __init__(self, llm: Optional[BaseChatModel] = None):
        self._llm = llm

    def _model(self) -> BaseChatModel:
        if self._llm is None:
            # Low temperature for consistent grading.
            self._llm = get_chat_model(temperature=0.1, timeout=get_settings().oracle_timeout_sec)
        return self._llm

    def _ask(self, system: str, user: str, context: str) -> str:
        try:
            resp = self._model().invoke([SystemMessage(content=system), HumanMessage(content=user)])
        except Exception as e:
            logger.warning("Oracle call failed in context=%s: %r", context, e)
            raise ClassificationUnavailable(str(e)) from e
        return message_text(resp)

    def classify_diagnosis(self, submitted, primary, differentials):
        user = (
            f"Correct PRIMARY diagnosis: {primary}\n"
            f"Correct DIFFERENTIAL diagnoses: {', '.join(differentials) or 'none'}\n"
            f'Student\'s submitted diagnosis: "{submitted}"'
        )
        label = parse_label(self._ask(DIAGNOSIS_SYSTEM_PROMPT, user, "diagnosis"), DiagnosisLabel)
        logger.info("Oracle diagnosis label=%s", label.value)
        return label

    def classify_intervention(self, intervention, primary, critical_actions, avoid_actions):
        user = (
            f"Diagnosis: {primary}\n"
            f"Critical actions: {', '.join(critical_actions) or 'none'}\n"
            f"Actions to avoid: {', '.join(avoid_actions) or 'none'}\n"
            f'Student\'s plan: "{intervention}"'
        )
        label = parse_label(self._ask(INTERVENTION_SYSTEM_PROMPT, user, "intervention"), InterventionLabel)
        logger.info("Oracle intervention label=%s", label.value)
        return label
