# backend/errors.py


class EncounterError(Exception):
    """Base class for lifecycle and case errors surfaced to API callers."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SessionNotFound(EncounterError):
    # Unknown and expired sessions look the same from outside the store.
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__("Session not found or expired")
        self.session_id = session_id


class SessionEnded(EncounterError):
    status_code = 409

    def __init__(self, session_id: str, message: str = "Session has ended"):
        super().__init__(message)
        self.session_id = session_id


class LimitReached(SessionEnded):
    """Raised at the API boundary only: the turn cap ended the session."""

    def __init__(self, session_id: str):
        super().__init__(session_id, "Maximum turns reached")


class FeedbackNotReady(EncounterError):
    status_code = 409

    def __init__(self, session_id: str):
        super().__init__("Session must be completed before getting feedback")
        self.session_id = session_id


class CaseNotFound(EncounterError):
    status_code = 404

    def __init__(self, case_id: str):
        super().__init__(f"Case not found: {case_id}")
        self.case_id = case_id


class InvalidCase(EncounterError):
    status_code = 422

    def __init__(self, case_id: str, reason: str):
        super().__init__(f"Invalid case {case_id}: {reason}")
        self.case_id = case_id


class ClassificationUnavailable(Exception):
    """The classification oracle failed or answered outside its label set.

    Never reaches API callers: scoring always falls back to string matching.
    """
