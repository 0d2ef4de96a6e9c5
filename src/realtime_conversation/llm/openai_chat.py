"""
LLM: OpenAI chat completions.

generate_response(): cliente síncrono en el executor (como el worker original).
stream_response(): AsyncOpenAI con stream=True; interrupt() corta el stream
en el siguiente fragmento y lo cierra. Lo cancelado no entra al historial.
"""
import asyncio
import logging
from typing import AsyncIterator, Dict, List

import openai
from openai import AsyncOpenAI, OpenAI

from ..config import SYSTEM_PROMPT, ConversationTiming, LLMConfig, get_openai_api_key
from ..errors import LlmError
from .base import LanguageModelProvider

logger = logging.getLogger(__name__)


class OpenAIChatLLM(LanguageModelProvider):

    def __init__(
        self,
        config: LLMConfig | None = None,
        system_prompt: str = SYSTEM_PROMPT,
        *,
        timing: ConversationTiming | None = None,
        client: OpenAI | None = None,
        async_client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(system_prompt)
        self.config = config or LLMConfig()
        self.timing = timing or ConversationTiming()
        self._client = client
        self._async_client = async_client
        self._cancel: asyncio.Event | None = None
        self._generating = False

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=get_openai_api_key(), timeout=self.timing.llm_timeout_ms / 1000)
        return self._client

    @property
    def async_client(self) -> AsyncOpenAI:
        if self._async_client is None:
            self._async_client = AsyncOpenAI(
                api_key=get_openai_api_key(), timeout=self.timing.llm_timeout_ms / 1000
            )
        return self._async_client

    def is_generating(self) -> bool:
        return self._generating

    def interrupt(self) -> None:
        if self._cancel is not None and not self._cancel.is_set():
            logger.info("[LLM] Cancelando generación")
            self._cancel.set()

    def _messages(self, user_message: str) -> List[Dict[str, str]]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        if self.config.history_window > 0:
            messages.extend(self._history[-self.config.history_window:])
        messages.append({"role": "user", "content": user_message})
        return messages

    def _remember(self, user_message: str, response: str) -> None:
        self.add_to_history("user", user_message)
        self.add_to_history("assistant", response)

    async def generate_response(self, user_message: str) -> str:
        logger.info("[LLM][HUMAN] %s", user_message)
        messages = self._messages(user_message)

        def call_llm():
            r = self.client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
            return (r.choices[0].message.content or "").strip()

        self._generating = True
        try:
            response = await asyncio.get_running_loop().run_in_executor(None, call_llm)
        except openai.OpenAIError as e:
            raise LlmError(f"OpenAI falló: {e}", cause=e) from e
        finally:
            self._generating = False

        logger.info("[LLM][AI] %s", response)
        self._remember(user_message, response)
        return response

    async def stream_response(self, user_message: str) -> AsyncIterator[str]:
        # Una generación a la vez: la nueva reemplaza a la anterior
        self.interrupt()
        cancel = asyncio.Event()
        self._cancel = cancel
        self._generating = True
        logger.info("[LLM][HUMAN] %s", user_message)

        parts: List[str] = []
        stream = None
        try:
            stream = await self.async_client.chat.completions.create(
                model=self.config.model,
                messages=self._messages(user_message),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                stream=True,
            )
            async for event in stream:
                if cancel.is_set():
                    break
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                if delta:
                    parts.append(delta)
                    yield delta
                    if cancel.is_set():
                        break
        except openai.OpenAIError as e:
            raise LlmError(f"OpenAI streaming falló: {e}", cause=e) from e
        finally:
            if self._cancel is cancel:
                self._generating = False
            if stream is not None:
                await stream.close()

        if cancel.is_set():
            logger.info("[LLM] Generación cancelada, respuesta parcial descartada")
            return

        response = "".join(parts).strip()
        logger.info("[LLM][AI] %s", response)
        self._remember(user_message, response)
