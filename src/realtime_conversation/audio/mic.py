"""
Entrada de audio: micrófono vía sounddevice.
RawInputStream en chunks de 80 ms linear16, entregados en el loop de asyncio.
"""
import asyncio
import logging
from typing import Callable

import sounddevice as sd

from ..config import AudioConfig
from ..errors import AudioCaptureError, MissingAudioPermission

logger = logging.getLogger(__name__)


def list_audio_devices() -> None:
    """Imprime los dispositivos de audio disponibles."""
    print("=== Dispositivos de audio disponibles ===")
    print(sd.query_devices())


class MicrophoneCapture:
    """
    Captura del micrófono. El callback de PortAudio corre en otro hilo:
    cada chunk se reenvía al loop con call_soon_threadsafe.
    """

    def __init__(self, config: AudioConfig | None = None, device: int | None = None) -> None:
        self.config = config or AudioConfig()
        self.device = device
        self._stream: sd.RawInputStream | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def start(
        self,
        on_chunk: Callable[[bytes], None],
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        """Abre el dispositivo. Debe llamarse desde el loop de asyncio."""
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        loop = self._loop

        def callback(indata, frames, time, status):
            if status:
                logger.warning("[MIC] Status: %s", status)
                if on_error and (status.input_overflow or status.input_underflow):
                    loop.call_soon_threadsafe(
                        on_error, AudioCaptureError(f"Captura degradada: {status}")
                    )
            loop.call_soon_threadsafe(on_chunk, bytes(indata))

        try:
            stream = sd.RawInputStream(
                samplerate=self.config.sample_rate,
                blocksize=self.config.chunk_frames,
                dtype="int16",
                channels=self.config.channels,
                callback=callback,
                device=self.device,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as e:
            raise MissingAudioPermission(f"No se pudo abrir el micrófono: {e}", cause=e) from e

        self._stream = stream
        logger.info(
            "[MIC] Capturando %d Hz, %d canal(es), bloques de %d muestras",
            self.config.sample_rate, self.config.channels, self.config.chunk_frames,
        )

    def close(self) -> None:
        """Detiene y libera el dispositivo. Idempotente."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
        logger.info("[MIC] Captura cerrada")
