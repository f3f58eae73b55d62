"""
TTS subpackage - speech rendering providers and playback
"""

from .engine import TTSEngine
from .speaker import Speaker, create_speaker

__all__ = ["TTSEngine", "Speaker", "create_speaker"]
