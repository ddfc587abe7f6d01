# backend/analyzer.py

import logging
from typing import Optional

from feedback_templates import (
    generate_missed,
    generate_recommendations,
    generate_red_flags_missed,
    generate_what_went_well,
)
from models import Breakdown, FeedbackResult, MedicalCase, Session, Solution, Timing
from oracle import ClassificationOracle
from scoring import MAX_TOTAL_SCORE, calculate_scoring_context
from scoring_tables import MatchingTables

logger = logging.getLogger("encounter_scoring")


class SessionAnalyzer:
    """Turns a finished session into a FeedbackResult.

    Works on a snapshot, so it never holds a store lock. The HTTP layer calls
    it at most once per session and memoizes the result in the store.
    """

    def __init__(self, oracle: Optional[ClassificationOracle] = None, tables: Optional[MatchingTables] = None):
        self.oracle = oracle
        self.tables = tables

    def analyze(self, session: Session, case: MedicalCase, now: Optional[int] = None) -> FeedbackResult:
        context = calculate_scoring_context(session, case, self.oracle, self.tables, now)

        total = (
            context.diagnosis_score
            + context.critical_actions_score
            + context.communication_score
            + context.efficiency_score
        )
        summary = min(MAX_TOTAL_SCORE, max(0, round(total)))

        exceeded = context.duration - context.time_limit if context.duration > context.time_limit else None
        timing = Timing(
            time_limit_sec=context.time_limit,
            actual_duration_sec=context.duration,
            exceeded_by_sec=exceeded,
            time_used_percent=round(context.time_used_percent, 1),
        )

        result = FeedbackResult(
            summary_score=summary,
            breakdown=Breakdown(
                diagnosis=context.diagnosis_score,
                diagnosis_correctness=context.diagnosis.correctness,
                intervention=context.diagnosis.intervention,
                critical_actions=context.critical_actions_score,
                communication=context.communication_score,
                efficiency=context.efficiency_score,
            ),
            timing=timing,
            what_went_well=generate_what_went_well(context, case),
            missed=generate_missed(context, case),
            red_flags_missed=generate_red_flags_missed(context),
            recommendations=generate_recommendations(context, case),
            solution=Solution(
                primary_diagnosis=case.diagnosis.primary,
                critical_actions=list(case.diagnosis.critical_actions),
            ),
        )

        logger.info(
            "Session analyzed: session_id=%s score=%d (dx:%d ca:%d comm:%d eff:%d)",
            session.session_id,
            summary,
            context.diagnosis_score,
            context.critical_actions_score,
            context.communication_score,
            context.efficiency_score,
        )
        return result
