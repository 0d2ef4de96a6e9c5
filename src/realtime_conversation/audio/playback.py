"""
Reproducción de audio: PCM crudo a ffplay por stdin.
Lo usa la voz local (ElevenLabs) para salida en tiempo real.
"""
import asyncio
import logging
import subprocess
from typing import AsyncIterator

from ..config import TTS_SAMPLE_RATE

logger = logging.getLogger(__name__)


def create_ffplay_process(sample_rate: int = TTS_SAMPLE_RATE) -> subprocess.Popen:
    """
    Crea un proceso ffplay que lee PCM s16le mono desde stdin.
    El caller escribe chunks y luego cierra stdin.
    """
    try:
        return subprocess.Popen(
            [
                "ffplay",
                "-f", "s16le",
                "-ar", str(sample_rate),
                "-autoexit",
                "-nodisp",
                "-loglevel", "quiet",
                "-",
            ],
            stdin=subprocess.PIPE,
        )
    except FileNotFoundError:
        raise RuntimeError("ffplay no encontrado en PATH. Instala ffmpeg.")


async def play_pcm_stream(
    stream: AsyncIterator[bytes],
    stop_event: asyncio.Event,
    *,
    on_first_chunk=None,
    process_factory=create_ffplay_process,
) -> bool:
    """
    Reproduce un stream de chunks PCM escribiéndolos al stdin de ffplay.
    Se corta en cuanto stop_event se activa. on_first_chunk se llama una vez,
    cuando el primer chunk sale por el parlante.

    Devuelve True si la reproducción terminó sin interrupción.
    """
    proc = process_factory()
    first = True
    try:
        async for chunk in stream:
            if stop_event.is_set():
                logger.info("[PLAYBACK] Reproducción cortada")
                proc.kill()
                return False
            if first:
                first = False
                if on_first_chunk:
                    on_first_chunk()
            if proc.stdin:
                try:
                    proc.stdin.write(chunk)
                    proc.stdin.flush()
                except BrokenPipeError:
                    return False
            await asyncio.sleep(0)
        return not stop_event.is_set()
    finally:
        if proc.stdin and not proc.stdin.closed:
            try:
                proc.stdin.close()
            except BrokenPipeError:
                pass
        try:
            await asyncio.to_thread(proc.wait, 5)
        except subprocess.TimeoutExpired:
            proc.terminate()
