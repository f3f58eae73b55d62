"""
ElevenLabs TTS - function-based module using the official SDK.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from ..errors import SpeechError

_client = None


def _ensure_client(api_key: str):
    """Get or create the ElevenLabs client"""
    global _client
    if _client is None:
        try:
            from elevenlabs.client import ElevenLabs
        except ImportError as e:
            raise SpeechError("elevenlabs is not installed. Install via: pip install btw[elevenlabs]") from e
        _client = ElevenLabs(api_key=api_key)
    return _client


async def close() -> None:
    global _client
    _client = None


def _get_voice_settings(cfg: dict):
    """VoiceSettings only when at least one setting is configured"""
    keys = (
        "elevenlabs_stability",
        "elevenlabs_similarity_boost",
        "elevenlabs_style",
        "elevenlabs_use_speaker_boost",
    )
    if not any(key in cfg for key in keys):
        return None

    from elevenlabs.types import VoiceSettings
    return VoiceSettings(
        stability=float(cfg.get("elevenlabs_stability", 0.5)),
        similarity_boost=float(cfg.get("elevenlabs_similarity_boost", 0.75)),
        style=float(cfg.get("elevenlabs_style", 0.0)),
        use_speaker_boost=bool(cfg.get("elevenlabs_use_speaker_boost", True)),
        speed=float(cfg.get("rate", 1.0)),
    )


async def synthesize(text: str, cfg: dict) -> bytes:
    """Download the full clip before returning."""
    api_key: Optional[str] = cfg.get("elevenlabs_api_key")
    voice_id: Optional[str] = cfg.get("elevenlabs_voice_id")
    if not api_key or not voice_id:
        raise SpeechError("ElevenLabs needs an API key and a voice id")

    model_id = cfg.get("elevenlabs_model_id", "eleven_turbo_v2_5")
    output_format = cfg.get("elevenlabs_output_format", "mp3_44100_128")

    client = _ensure_client(api_key)
    voice_settings = _get_voice_settings(cfg)

    # SDK is sync
    loop = asyncio.get_running_loop()

    def _convert():
        audio_generator = client.text_to_speech.convert(
            voice_id=voice_id,
            text=text,
            model_id=model_id,
            output_format=output_format,
            voice_settings=voice_settings
        )
        return b"".join(audio_generator)

    return await loop.run_in_executor(None, _convert)
