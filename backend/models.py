# backend/models.py
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Level = Literal[1, 2, 3]
GuidanceLevel = Literal["low", "medium", "high"]


# --------- CASE DEFINITION (read-only once loaded) ----------

class CaseModel(BaseModel):
    """Case files are authored in camelCase; bundled cases use snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class Personality(CaseModel):
    baseline: str
    emotional_state: str
    communication_style: str


class PatientInfo(CaseModel):
    name: str
    age: int
    sex: Literal["M", "F", "Other"]
    chief_complaint: str
    personality: Personality


class SocialHistory(CaseModel):
    smoking: Optional[str] = None
    alcohol: Optional[str] = None
    drugs: Optional[str] = None
    occupation: Optional[str] = None
    living_situation: Optional[str] = None


class MedicalHistory(CaseModel):
    hpi: str
    pmh: List[str] = []
    medications: List[str] = []
    allergies: List[str] = []
    family_history: Optional[str] = None
    social_history: SocialHistory = SocialHistory()


class LeveledFinding(CaseModel):
    level1: str
    level2: str
    level3: str

    def at(self, level: int) -> str:
        return getattr(self, f"level{level}")


class VitalSigns(CaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )

    BP: str = Field(alias="BP")
    HR: int = Field(alias="HR")
    RR: int = Field(alias="RR")
    temp: float
    O2: int = Field(alias="O2")


class LeveledVitals(CaseModel):
    level1: VitalSigns
    level2: VitalSigns
    level3: VitalSigns

    def at(self, level: int) -> VitalSigns:
        return getattr(self, f"level{level}")


class PhysicalExamFindings(CaseModel):
    vitals: LeveledVitals
    general: LeveledFinding
    heent: Optional[LeveledFinding] = None
    cardiovascular: Optional[LeveledFinding] = None
    respiratory: Optional[LeveledFinding] = None
    abdominal: Optional[LeveledFinding] = None
    neurological: Optional[LeveledFinding] = None
    musculoskeletal: Optional[LeveledFinding] = None
    skin: Optional[LeveledFinding] = None


class LeveledLabResult(CaseModel):
    level1: Dict[str, Union[str, float, int]]
    level2: Dict[str, Union[str, float, int]]
    level3: Dict[str, Union[str, float, int]]

    def at(self, level: int) -> Dict[str, Union[str, float, int]]:
        return getattr(self, f"level{level}")


class LabPanel(CaseModel):
    available: List[str] = []
    results: Dict[str, LeveledLabResult] = {}


class ImagingPanel(CaseModel):
    available: List[str] = []
    results: Dict[str, LeveledFinding] = {}


class DiagnosticResults(CaseModel):
    labs: Optional[LabPanel] = None
    imaging: Optional[ImagingPanel] = None
    ekg: Optional[LeveledFinding] = None
    other: Dict[str, LeveledFinding] = {}


class DiagnosisInfo(CaseModel):
    primary: str
    differentials: List[str] = []
    critical_actions: List[str] = []
    avoid_actions: List[str] = []


class RevealRules(CaseModel):
    hpi: Literal["always", "when_asked", "requires_rapport"] = "always"
    pmh: Literal["always", "when_asked", "if_relevant"] = "when_asked"
    medications: Literal["always", "when_asked"] = "when_asked"
    allergies: Literal["always", "when_asked"] = "when_asked"
    social_history: Literal["only_if_asked", "when_asked", "volunteers"] = "when_asked"
    family_history: Literal["only_if_asked", "when_asked", "volunteers"] = "when_asked"


class RedFlag(CaseModel):
    action: str
    time_window: Optional[int] = None  # minutes since session start
    severity: Literal["critical", "important", "recommended"] = "critical"
    consequence: Optional[str] = None


class CaseProgression(CaseModel):
    red_flags: List[RedFlag] = []


class Guardrails(CaseModel):
    patient_cannot_say: List[str] = []
    patient_must_stay_in_character: bool = True
    no_self_diagnosis: bool = True
    no_medical_advice: bool = True
    no_hallucination: bool = True
    custom_rules: List[str] = []


class MedicalCase(CaseModel):
    case_id: str
    level: Level
    title: str
    description: Optional[str] = None
    specialty: Optional[str] = None

    patient: PatientInfo
    history: MedicalHistory
    physical_exam: PhysicalExamFindings
    diagnostics: DiagnosticResults = DiagnosticResults()
    diagnosis: DiagnosisInfo
    reveal_rules: RevealRules = RevealRules()
    progression: CaseProgression = CaseProgression()
    guardrails: Guardrails


# --------- SESSION ----------

class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class SessionAction(BaseModel):
    action_type: str
    timestamp: int  # epoch ms
    details: Optional[Any] = None
    result: Optional[str] = None


class RevealedFacts(BaseModel):
    hpi: bool = False
    pmh: List[str] = []
    medications: bool = False
    allergies: bool = False
    social_history: List[str] = []
    family_history: bool = False
    physical_exam: List[str] = []  # body systems examined
    diagnostics: List[str] = []  # tests ordered

    def merge(self, other: "RevealedFacts") -> None:
        """Fold another set of revealed facts into this one (set union)."""
        self.hpi = self.hpi or other.hpi
        self.medications = self.medications or other.medications
        self.allergies = self.allergies or other.allergies
        self.family_history = self.family_history or other.family_history
        for field in ("pmh", "social_history", "physical_exam", "diagnostics"):
            current = getattr(self, field)
            for item in getattr(other, field):
                if item not in current:
                    current.append(item)


class CreateSessionParams(BaseModel):
    case_id: str
    level: Level
    user_name: str
    time_limit_sec: Optional[int] = None
    max_turns: Optional[int] = None
    guidance_level: Optional[GuidanceLevel] = None


class Breakdown(BaseModel):
    diagnosis: int
    diagnosis_correctness: int
    intervention: int
    critical_actions: int
    communication: int
    efficiency: int


class Timing(BaseModel):
    time_limit_sec: int
    actual_duration_sec: int
    exceeded_by_sec: Optional[int] = None
    time_used_percent: float


class Solution(BaseModel):
    primary_diagnosis: str
    critical_actions: List[str]


class FeedbackResult(BaseModel):
    summary_score: int
    breakdown: Breakdown
    timing: Timing
    what_went_well: List[str]
    missed: List[str]
    red_flags_missed: List[str]
    recommendations: List[str]
    solution: Solution


class Session(BaseModel):
    session_id: str
    case_id: str
    level: Level
    user_name: str
    case: MedicalCase

    messages: List[ChatMessage] = []
    revealed_facts: RevealedFacts = Field(default_factory=RevealedFacts)
    actions: List[SessionAction] = []

    # epoch ms
    created_at: int
    updated_at: int
    ended_at: Optional[int] = None

    time_limit_sec: Optional[int] = None
    max_turns: Optional[int] = None
    guidance_level: Optional[GuidanceLevel] = None

    current_turn: int = 0
    is_active: bool = True

    submitted_diagnosis: Optional[str] = None
    feedback_result: Optional[FeedbackResult] = None


# --------- API PAYLOADS ----------

class StartSessionRequest(BaseModel):
    case_id: str = Field(min_length=1)
    level: Level
    user_name: str = Field(min_length=1)
    time_limit_sec: Optional[int] = None
    max_turns: Optional[int] = None
    guidance_level: Optional[GuidanceLevel] = None


class StartSessionResponse(BaseModel):
    session_id: str
    case_id: str
    level: int
    patient_name: str
    chief_complaint: str
    time_limit_sec: Optional[int] = None
    max_turns: Optional[int] = None
    intro_line: str


class ChatRequest(BaseModel):
    # We normalize sessionId/session_id in app.py before validation,
    # so here we just accept `session_id`.
    session_id: str
    message: str


class GuidanceType(str, Enum):
    HINT = "hint"
    QUESTION = "question"
    REMINDER = "reminder"
    SUGGESTION = "suggestion"


class Guidance(BaseModel):
    type: GuidanceType
    message: str


class ChatResponse(BaseModel):
    reply: str
    current_turn: int
    max_turns: Optional[int] = None
    is_active: bool
    guidance: Optional[Guidance] = None


class ActionRequest(BaseModel):
    session_id: str
    action_type: str
    details: Optional[Any] = None


class ActionResponse(BaseModel):
    result: str
    action_recorded: bool


class EndSessionRequest(BaseModel):
    session_id: str
    diagnosis: Optional[str] = None
    intervention: Optional[str] = None


class EndSessionResponse(BaseModel):
    success: bool
    session_id: str
    ended_at: int
    submitted_diagnosis: Optional[str] = None


class CaseSummary(BaseModel):
    case_id: str
    title: str
    level: int
    specialty: Optional[str] = None
    chief_complaint: str


class SessionExport(BaseModel):
    session_id: str
    case_id: str
    level: int
    user_name: str
    messages: List[ChatMessage]
    actions: List[SessionAction]
    revealed_facts: RevealedFacts
    created_at: int
    updated_at: int
    ended_at: Optional[int] = None
    duration_sec: Optional[int] = None
    current_turn: int
    max_turns: Optional[int] = None
    is_active: bool
    submitted_diagnosis: Optional[str] = None
    case_metadata: Dict[str, Any]
