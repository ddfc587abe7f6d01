# backend/graph.py

import logging
from typing import Any, List, Optional, TypedDict

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langgraph.graph import END, StateGraph

from llm import get_chat_model, safe_llm_invoke
from models import ChatMessage, Guidance, GuidanceType, MedicalCase, RevealedFacts, Session

# Logger for graph / LLM layer
logger = logging.getLogger("encounter_llm")

FALLBACK_REPLY = "Sorry, can you repeat that? I didn't catch that."
NO_GUIDANCE = "NO_GUIDANCE"

GUIDANCE_TEMPERATURE = 0.7


class EncounterState(TypedDict, total=False):
    case: MedicalCase
    level: int
    revealed_facts: RevealedFacts
    history: List[BaseMessage]
    user_input: str
    reply: str
    # Guidance is only produced when a level is set and a session is supplied
    guidance_level: Optional[str]
    session: Optional[Session]
    guidance: Optional[Guidance]


# ---------------- Helpers ----------------

def to_langchain_messages(messages: List[ChatMessage]) -> List[BaseMessage]:
    out: List[BaseMessage] = []
    for m in messages:
        if m.role == "user":
            out.append(HumanMessage(content=m.content))
        else:
            out.append(AIMessage(content=m.content))
    return out


def _describe(case: MedicalCase) -> str:
    p = case.patient
    noun = {"M": "man", "F": "woman"}.get(p.sex, "person")
    return f"{p.name}, a {p.age}-year-old {noun}"


def build_system_prompt(case: MedicalCase) -> str:
    p = case.patient
    never_say = "\n".join(f'- "{phrase}"' for phrase in case.guardrails.patient_cannot_say) or "- (nothing specific)"
    extra_rules = "\n".join(f"- {rule}" for rule in case.guardrails.custom_rules)

    return f"""You are {_describe(case)}.

PERSONALITY & BEHAVIOR:
- Baseline: {p.personality.baseline}
- Current emotional state: {p.personality.emotional_state}
- Communication style: {p.personality.communication_style}

CURRENT PRESENTATION:
- Chief complaint: {p.chief_complaint}

RULES:
- You are a PATIENT, not a doctor. You do not know medical terminology.
- You cannot diagnose yourself or give medical advice.
- Only share what a real patient would know about their own body.
- Stay in character. Keep responses concise (2-4 sentences unless asked for details).
{extra_rules}

THINGS YOU MUST NEVER SAY:
{never_say}
"""


def build_revealable_context(case: MedicalCase, revealed: RevealedFacts) -> str:
    history = case.history
    rules = case.reveal_rules
    lines = ["", "MEDICAL INFORMATION YOU CAN SHARE:"]

    if rules.hpi == "always" or revealed.hpi:
        lines.append(f"Your story about the current problem: {history.hpi}")
    if revealed.pmh or rules.pmh == "always":
        lines.append(f"Your past medical conditions: {', '.join(history.pmh) or 'none'}")
    if revealed.medications or rules.medications == "always":
        lines.append(f"Your current medications: {', '.join(history.medications) or 'none'}")
    if revealed.allergies or rules.allergies == "always":
        lines.append(f"Your allergies: {', '.join(history.allergies) or 'none known'}")
    if revealed.family_history and history.family_history:
        lines.append(f"Your family history: {history.family_history}")
    for aspect in revealed.social_history:
        value = getattr(history.social_history, aspect, None)
        if value:
            lines.append(f"Your {aspect.replace('_', ' ')}: {value}")

    lines.append("")
    lines.append("Only share information above if directly asked. Do not volunteer everything at once.")
    return "\n".join(lines)


GUIDANCE_LEVEL_PROMPTS = {
    "low": """Your role: use Socratic questioning to encourage independent thinking.
- Ask ONE brief thought-provoking question (1 sentence).
- Never tell the student what to do and never explain concepts directly.
- If you cannot frame it as a question, or the student is doing well, respond with "NO_GUIDANCE".""",
    "medium": """Your role: give a balanced educational hint that links symptoms to medical knowledge.
- 1-2 sentences. Explain WHY a line of questioning matters.
- Connect symptoms to organ systems and differential diagnoses.
- Don't give away the diagnosis. If the student is doing well, respond with "NO_GUIDANCE".""",
    "high": """Your role: give a detailed educational explanation of what the symptom pattern suggests.
- 2-3 sentences. Link symptoms to organ systems and pathophysiology.
- Use phrases like "is associated with", "suggests", "points toward".
- Never state the exact diagnosis. If the student is doing very well, respond with "NO_GUIDANCE".""",
}


def build_guidance_system_prompt(case: MedicalCase, session: Session, guidance_level: str) -> str:
    turn = f"{session.current_turn}" + (f" / {session.max_turns}" if session.max_turns else "")
    base = f"""You are a medical education assistant helping a medical student learn clinical interviewing and diagnostic reasoning.

The case:
- Patient: {_describe(case)}
- Chief complaint: {case.patient.chief_complaint}
- Critical actions needed: {', '.join(case.diagnosis.critical_actions) or 'Not specified'}

Current turn: {turn}"""
    return f"{base}\n\n{GUIDANCE_LEVEL_PROMPTS.get(guidance_level, GUIDANCE_LEVEL_PROMPTS['medium'])}"


def build_guidance_context(session: Session, last_user: str, last_reply: str) -> str:
    if session.messages:
        recent = "\n".join(
            f"{'Student' if m.role == 'user' else 'Patient'}: {m.content}" for m in session.messages[-6:]
        )
        conversation = f"Conversation so far:\n{recent}"
    else:
        conversation = "This is the start of the conversation."

    if session.actions:
        actions = "Actions performed: " + ", ".join(a.action_type for a in session.actions)
    else:
        actions = "No actions performed yet."

    facts = session.revealed_facts
    revealed = (
        "Information revealed:\n"
        f"- HPI: {'Yes' if facts.hpi else 'No'}\n"
        f"- Past medical history: {', '.join(facts.pmh) if facts.pmh else 'Not yet'}\n"
        f"- Medications: {'Yes' if facts.medications else 'No'}\n"
        f"- Allergies: {'Yes' if facts.allergies else 'No'}"
    )

    return (
        f"{conversation}\n\n{actions}\n\n{revealed}\n\n"
        f'Last student question: "{last_user}"\n'
        f'Last patient response: "{last_reply}"\n\n'
        "Generate appropriate guidance for the student based on this context."
    )


def determine_guidance_type(text: str) -> GuidanceType:
    lower = text.lower()
    if "?" in lower or any(w in lower for w in ("what", "why", "how")):
        return GuidanceType.QUESTION
    if any(w in lower for w in ("remember", "don't forget", "recall")):
        return GuidanceType.REMINDER
    if any(w in lower for w in ("consider", "might want", "could", "may want")):
        return GuidanceType.SUGGESTION
    return GuidanceType.HINT


def parse_guidance(text: str) -> Optional[Guidance]:
    text = (text or "").strip()
    lower = text.lower()
    if not text or NO_GUIDANCE.lower() in lower or "no guidance" in lower or "no hint" in lower:
        return None
    return Guidance(type=determine_guidance_type(text), message=text)


# ---------------- Engine ----------------

class PatientEngine:
    """Patient replies and learning-mode guidance, run as a LangGraph turn graph."""

    def __init__(self, llm: Optional[BaseChatModel] = None, guidance_llm: Optional[BaseChatModel] = None):
        self._llm = llm
        self._guidance_llm = guidance_llm
        self.graph = self._build_graph()

    def _guidance_model(self) -> Optional[BaseChatModel]:
        if self._guidance_llm is not None:
            return self._guidance_llm
        if self._llm is not None:
            return self._llm
        try:
            return get_chat_model(temperature=GUIDANCE_TEMPERATURE)
        except Exception as e:
            logger.error("Guidance model unavailable: %r", e)
            return None

    # ---- nodes ----

    def patient_node(self, state: EncounterState) -> EncounterState:
        case = state["case"]
        messages: List[BaseMessage] = [
            SystemMessage(content=build_system_prompt(case) + build_revealable_context(case, state["revealed_facts"])),
            *state.get("history", []),
            HumanMessage(content=state["user_input"]),
        ]
        reply = safe_llm_invoke(self._llm, messages, context="patient")
        if not reply:
            logger.warning("Empty patient reply from LLM; using fallback text")
            reply = FALLBACK_REPLY
        return {"reply": reply}

    def guidance_node(self, state: EncounterState) -> EncounterState:
        session = state["session"]
        messages = [
            SystemMessage(content=build_guidance_system_prompt(state["case"], session, state["guidance_level"])),
            HumanMessage(content=build_guidance_context(session, state["user_input"], state.get("reply", ""))),
        ]
        model = self._guidance_model()
        if model is None:
            return {"guidance": None}
        guidance = parse_guidance(safe_llm_invoke(model, messages, context="guidance"))
        if guidance is not None:
            logger.info("Guidance generated: type=%s", guidance.type.value)
        return {"guidance": guidance}

    @staticmethod
    def _route_after_reply(state: EncounterState) -> str:
        if state.get("guidance_level") and state.get("session") is not None:
            return "guidance"
        return END

    def _build_graph(self):
        workflow = StateGraph(EncounterState)
        workflow.add_node("patient", self.patient_node)
        workflow.add_node("guidance", self.guidance_node)
        workflow.set_entry_point("patient")
        workflow.add_conditional_edges("patient", self._route_after_reply, {"guidance": "guidance", END: END})
        workflow.add_edge("guidance", END)
        logger.info("LangGraph encounter workflow compiled")
        return workflow.compile()

    # ---- public API ----

    def run_turn(
        self,
        case: MedicalCase,
        level: int,
        revealed_facts: RevealedFacts,
        history: List[ChatMessage],
        user_input: str,
        session: Optional[Session] = None,
        guidance_level: Optional[str] = None,
    ) -> EncounterState:
        state: EncounterState = {
            "case": case,
            "level": level,
            "revealed_facts": revealed_facts,
            "history": to_langchain_messages(history),
            "user_input": user_input,
            "guidance_level": guidance_level,
            "session": session,
            "guidance": None,
        }
        result: Any = self.graph.invoke(state)
        return result

    def generate_reply(
        self,
        case: MedicalCase,
        level: int,
        revealed_facts: RevealedFacts,
        history: List[ChatMessage],
        user_input: str,
    ) -> str:
        return self.run_turn(case, level, revealed_facts, history, user_input)["reply"]

    def generate_guidance(
        self,
        session: Session,
        case: MedicalCase,
        last_user: str,
        last_reply: str,
        guidance_level: str = "medium",
    ) -> Optional[Guidance]:
        state: EncounterState = {
            "case": case,
            "session": session,
            "user_input": last_user,
            "reply": last_reply,
            "guidance_level": guidance_level,
        }
        return self.guidance_node(state).get("guidance")
