import asyncio
import logging
import os
from typing import Optional, Type, TypeVar

from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel

from ..errors import EvaluatorNotConfiguredError
from ..parser import parse_llm_response

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")

T = TypeVar("T", bound=BaseModel)


class OpenRouterBackend:
    """Evaluator backed by an OpenAI-compatible chat model served through OpenRouter."""

    backend_name = "openrouter"

    def __init__(
        self,
        model_name: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_sec: Optional[float] = None,
        max_retries: int = 2,
    ):
        self.model_name = model_name or os.getenv("OPENROUTER_MODEL", "openai/gpt-4o-mini")
        self.api_key = (api_key if api_key is not None else os.getenv("OPENROUTER_API_KEY") or "").strip()
        self.base_url = base_url or OPENROUTER_BASE_URL
        self.timeout_sec = float(timeout_sec or os.getenv("EVALUATOR_TIMEOUT_SEC", "45"))
        self.max_retries = max_retries

        if not self.api_key:
            logger.warning("OpenRouterBackend: OPENROUTER_API_KEY not set. Fallbacks will be used.")
        else:
            logger.info(f"OpenRouterBackend: Initialized with model {self.model_name}")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _chat_model(self, temperature: float) -> ChatOpenAI:
        return ChatOpenAI(
            model=self.model_name,
            openai_api_key=self.api_key,
            openai_api_base=self.base_url,
            temperature=temperature,
            timeout=self.timeout_sec,
        )

    async def generate_text(
        self,
        prompt: str,
        system: Optional[str] = None,
        temperature: float = 0.3,
    ) -> str:
        if not self.api_key:
            raise EvaluatorNotConfiguredError("OPENROUTER_API_KEY is not set")

        messages = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(HumanMessage(content=prompt))

        llm = self._chat_model(temperature)
        last_err = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await asyncio.wait_for(llm.ainvoke(messages), timeout=self.timeout_sec)
                return str(response.content or "").strip()
            except Exception as e:
                last_err = e
                logger.warning("OpenRouter error attempt %s/%s: %s", attempt, self.max_retries, e)
        raise RuntimeError(f"OpenRouter failed after {self.max_retries} attempts: {last_err}")

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[T],
        system: Optional[str] = None,
        temperature: float = 0.2,
    ) -> T:
        raw = await self.generate_text(prompt, system=system, temperature=temperature)
        return schema.model_validate(parse_llm_response(raw))
