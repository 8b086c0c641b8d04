"""
Model gateway: one prompt in, one string out.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage

from .config import MODEL_NAME, LLM_TEMPERATURE, LLM_TIMEOUT_SECONDS, get_cohere_key
from .errors import ModelGatewayError

log = logging.getLogger(__name__)


def _content_text(msg: Any) -> str:
    content = getattr(msg, "content", msg)
    if isinstance(content, list):
        # some providers return content blocks
        return "".join(b.get("text", "") if isinstance(b, dict) else str(b) for b in content)
    return str(content)


class ModelGateway:
    """Wraps a LangChain chat model behind `generate(prompt) -> str` with a timeout."""

    def __init__(self, llm: BaseChatModel, timeout: Optional[float] = LLM_TIMEOUT_SECONDS) -> None:
        self.llm = llm
        self.timeout = timeout

    async def generate(self, prompt: str) -> str:
        try:
            msg = await asyncio.wait_for(self.llm.ainvoke([HumanMessage(content=prompt)]), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ModelGatewayError(f"Model gateway error: timed out after {self.timeout}s") from e
        except Exception as e:
            log.warning("model call failed: %s", e)
            raise ModelGatewayError(f"Model gateway error: {e}") from e
        return _content_text(msg)


def build_gateway(*, model: Optional[str] = None, temperature: Optional[float] = None) -> ModelGateway:
    """Production gateway backed by Cohere."""

    from langchain_cohere import ChatCohere

    llm = ChatCohere(
        model=model or MODEL_NAME,
        temperature=LLM_TEMPERATURE if temperature is None else temperature,
        cohere_api_key=get_cohere_key(),
    )
    return ModelGateway(llm)
