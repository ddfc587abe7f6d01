# backend/llm.py

import logging
from functools import lru_cache
from typing import Any, List, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from config import get_settings

# Logger for the LLM layer
logger = logging.getLogger("encounter_llm")


@lru_cache(maxsize=8)
def get_chat_model(temperature: Optional[float] = None, timeout: Optional[float] = None) -> BaseChatModel:
    """Gemini chat model, built on first use so imports never need an API key."""
    settings = get_settings()
    return ChatGoogleGenerativeAI(
        model=settings.gemini_model,
        temperature=settings.llm_temperature if temperature is None else temperature,
        max_tokens=None,
        timeout=timeout,
        max_retries=settings.llm_max_retries,
    )


def message_text(resp: Any) -> str:
    content = getattr(resp, "content", resp)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content)


def safe_llm_invoke(llm: Optional[BaseChatModel], messages: List[BaseMessage], context: str) -> str:
    """Invoke the model; any failure is logged and reported as an empty string."""
    try:
        model = llm if llm is not None else get_chat_model()
        return message_text(model.invoke(messages)).strip()
    except Exception as e:
        # Log error with context but not the prompt (it carries conversation content)
        logger.error("LLM error in context=%s: %r", context, e, exc_info=True)
        return ""
