"""
VAD local con Silero (snakers4/silero-vad).

Los chunks del micrófono son de 80 ms (1280 muestras) y Silero espera
ventanas de 512: se acumula en un buffer y se procesan ventanas completas.
"""
import logging
from typing import Any, List

import numpy as np
import torch

from ..config import MIC_SAMPLE_RATE, SILERO_WINDOW_SAMPLES, SileroVADConfig

logger = logging.getLogger(__name__)

_WINDOW_BYTES = SILERO_WINDOW_SAMPLES * 2


def load_silero_vad(config: SileroVADConfig | None = None) -> Any:
    """
    Carga el modelo Silero VAD y devuelve un VADIterator para streaming
    (chunks de 512 muestras @ 16 kHz).
    """
    if config is None:
        config = SileroVADConfig()
    model, utils = torch.hub.load(
        repo_or_dir="snakers4/silero-vad",
        model="silero_vad",
        force_reload=False,
        trust_repo=True,
    )
    (_, _, _, VADIterator, _) = utils
    return VADIterator(
        model,
        threshold=config.threshold,
        sampling_rate=MIC_SAMPLE_RATE,
        min_silence_duration_ms=config.min_silence_duration_ms,
        speech_pad_ms=config.speech_pad_ms,
    )


def int2float(audio_int16: np.ndarray) -> np.ndarray:
    """Convierte int16 a float32 [-1, 1] para Silero."""
    return audio_int16.astype(np.float32) / 32768.0


class SileroSpeechDetector:
    """
    Detector de inicio/fin de habla. process() es síncrono y pesado:
    el caller lo corre en un executor de un solo hilo para mantener el orden.
    """

    def __init__(self, config: SileroVADConfig | None = None, vad_iterator: Any = None) -> None:
        self.config = config or SileroVADConfig()
        self._vad = vad_iterator
        self._buffer = b""

    def load(self) -> None:
        if self._vad is None:
            logger.info("[VAD] Cargando Silero VAD…")
            self._vad = load_silero_vad(self.config)
            logger.info("[VAD] Silero VAD listo")

    def process(self, chunk: bytes) -> List[str]:
        """Devuelve los eventos detectados en el chunk: 'start' y/o 'end'."""
        if self._vad is None:
            raise RuntimeError("Silero VAD no cargado")
        self._buffer += chunk
        events: List[str] = []
        while len(self._buffer) >= _WINDOW_BYTES:
            window, self._buffer = self._buffer[:_WINDOW_BYTES], self._buffer[_WINDOW_BYTES:]
            arr = np.frombuffer(window, dtype=np.int16)
            tensor = torch.from_numpy(int2float(arr)).unsqueeze(0)
            with torch.no_grad():
                result = self._vad(tensor, return_seconds=False)
            if not result:
                continue
            if "start" in result:
                logger.debug("[VAD][Silero] Speech started")
                events.append("start")
            if "end" in result:
                logger.debug("[VAD][Silero] Speech ended")
                events.append("end")
        return events

    def reset(self) -> None:
        self._buffer = b""
        if self._vad is not None:
            self._vad.reset_states()
