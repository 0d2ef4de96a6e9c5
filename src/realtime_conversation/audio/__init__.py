from .playback import create_ffplay_process, play_pcm_stream

__all__ = ["create_ffplay_process", "play_pcm_stream"]
