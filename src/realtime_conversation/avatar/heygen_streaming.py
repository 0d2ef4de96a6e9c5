"""
Avatar HeyGen (Streaming Avatar API) en modo REPEAT.

initialize(): streaming.new + streaming.start → sesión LiveKit.
speak(): streaming.task con task_type=repeat; HeyGen encola las tareas y
devuelve la duración estimada de cada una.
"""
import asyncio
import logging
from typing import Any, Dict

import httpx

from ..config import HEYGEN_BASE_URL, get_heygen_api_key
from ..errors import AvatarError, ProviderInitError
from .base import AvatarEvent, AvatarSpeechProvider, AvatarStream, SpeakMode

logger = logging.getLogger(__name__)


class HeyGenStreamingAvatar(AvatarSpeechProvider):

    def __init__(
        self,
        avatar_id: str,
        voice_id: str | None = None,
        *,
        language: str = "es",
        quality: str = "medium",
        base_url: str = HEYGEN_BASE_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self.avatar_id = avatar_id
        self.voice_id = voice_id
        self.language = language
        self.quality = quality
        self.base_url = base_url
        self._client = client
        self._session: Dict[str, Any] | None = None
        self._speaking = False
        self._speech_until = 0.0
        self._end_timer: asyncio.Task | None = None

    @property
    def session_id(self) -> str | None:
        return self._session["session_id"] if self._session else None

    @property
    def output_stream(self) -> AvatarStream | None:
        if not self._session:
            return None
        return AvatarStream(
            kind="livekit",
            url=self._session.get("url"),
            access_token=self._session.get("access_token"),
            session_id=self._session.get("session_id"),
        )

    def is_speaking(self) -> bool:
        return self._speaking

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"x-api-key": get_heygen_api_key()},
                timeout=30.0,
            )
        resp = await self._client.post(f"/v1/{path}", json=payload)
        resp.raise_for_status()
        body = resp.json()
        return body.get("data") or {}

    async def initialize(self) -> None:
        """Crea y arranca la sesión de streaming. Idempotente."""
        if self._session:
            logger.warning("[AVATAR] HeyGen ya inicializado")
            return
        payload: Dict[str, Any] = {
            "quality": self.quality,
            "avatar_name": self.avatar_id,
            "language": self.language,
            "version": "v2",
        }
        if self.voice_id:
            payload["voice"] = {"voice_id": self.voice_id}
        try:
            session = await self._post("streaming.new", payload)
            await self._post("streaming.start", {"session_id": session["session_id"]})
        except (httpx.HTTPError, KeyError) as e:
            raise ProviderInitError(f"HeyGen no pudo iniciar la sesión: {e}", cause=e) from e
        self._session = session
        logger.info("[AVATAR] Sesión HeyGen %s lista", self.session_id)

    async def speak(self, text: str, mode: SpeakMode = SpeakMode.REPEAT) -> None:
        mode = self._force_repeat(mode)
        text = (text or "").strip()
        if not text:
            return
        if not self._session:
            raise AvatarError("HeyGen no inicializado (llamar initialize())")
        try:
            data = await self._post(
                "streaming.task",
                {
                    "session_id": self.session_id,
                    "text": text,
                    "task_type": mode.value,
                    "task_mode": "async",
                },
            )
        except httpx.HTTPError as e:
            raise AvatarError(f"HeyGen rechazó la tarea: {e}", cause=e) from e

        duration_s = float(data.get("duration_ms") or 0) / 1000.0
        loop = asyncio.get_running_loop()
        self._speech_until = max(loop.time(), self._speech_until) + duration_s
        if not self._speaking:
            self._speaking = True
            logger.info("[AVATAR] Avatar empezó a hablar")
            self._emit(AvatarEvent.SPEECH_STARTED)
        self._schedule_end(self._speech_until - loop.time())

    def _schedule_end(self, delay: float) -> None:
        if self._end_timer is not None:
            self._end_timer.cancel()
        self._end_timer = asyncio.create_task(self._end_after(delay))

    async def _end_after(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))
        self._end_timer = None
        self._finish_speech()

    def _finish_speech(self) -> None:
        if not self._speaking:
            return
        self._speaking = False
        self._speech_until = 0.0
        logger.info("[AVATAR] Avatar dejó de hablar")
        self._emit(AvatarEvent.SPEECH_ENDED)

    async def interrupt(self) -> None:
        if self._end_timer is not None:
            self._end_timer.cancel()
            self._end_timer = None
        if not self._session:
            return
        try:
            await self._post("streaming.interrupt", {"session_id": self.session_id})
        except httpx.HTTPError as e:
            raise AvatarError(f"HeyGen interrupt falló: {e}", cause=e) from e
        finally:
            self._finish_speech()

    async def cleanup(self) -> None:
        await super().cleanup()
        if self._session:
            try:
                await self._post("streaming.stop", {"session_id": self.session_id})
            except httpx.HTTPError as e:
                logger.warning("[AVATAR] streaming.stop falló: %s", e)
            self._session = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
