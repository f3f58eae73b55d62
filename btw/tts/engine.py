"""
TTS Engine - provider abstraction

Providers:
    edge    - Microsoft Edge online voices (edge-tts)
    openai  - OpenAI /audio/speech
    groq    - Groq /audio/speech (OpenAI-compatible)
    local   - piper if installed, espeak otherwise
    11labs  - ElevenLabs SDK
"""

import asyncio
import io
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

import aiohttp
import numpy as np

from ..errors import SpeechError

logger = logging.getLogger(__name__)

# provider -> (speech endpoint, api key env var, default model, default voice)
HTTP_PROVIDERS = {
    "openai": ("https://api.openai.com/v1/audio/speech", "OPENAI_API_KEY", "gpt-4o-mini-tts", "alloy"),
    "groq": ("https://api.groq.com/openai/v1/audio/speech", "GROQ_API_KEY",
             "canopylabs/orpheus-v1-english", "alloy"),
}

PIPER_SAMPLE_RATE = 22050


def edge_rate(rate: float) -> str:
    """1.0 -> '+0%', 1.25 -> '+25%', 0.8 -> '-20%'"""
    percent = int(round((rate - 1.0) * 100))
    return f"{percent:+d}%"


class TTSEngine:
    """Text to encoded audio bytes. Every failure raises SpeechError."""

    def __init__(self, provider: str = "edge", config: Optional[dict] = None):
        self.provider = provider
        self.config = config or {}
        self.voice = self.config.get("voice") or None
        self.format = self.config.get("format", "wav")
        self.rate = float(self.config.get("rate", 1.0))

        if provider == "local":
            self._init_local()
        elif provider == "11labs":
            self._init_elevenlabs()
        elif provider == "edge":
            self._init_edge()
        elif provider in HTTP_PROVIDERS:
            self._init_http()
        else:
            raise SpeechError(f"Unknown TTS provider: {provider}")

    def _init_local(self):
        if shutil.which("piper"):
            self.local_engine = "piper"
            self.piper_model = self.config.get(
                "model_path",
                "~/.local/share/piper/en_US-lessac-medium.onnx"
            )
        else:
            self.local_engine = "espeak"

    def _init_elevenlabs(self):
        api_key = self.config.get("elevenlabs_api_key") or os.getenv("ELEVENLABS_API_KEY")
        if not api_key:
            raise SpeechError("ElevenLabs API key missing (speech_output.elevenlabs_api_key or ELEVENLABS_API_KEY)")
        if not self.config.get("elevenlabs_voice_id"):
            raise SpeechError("speech_output.elevenlabs_voice_id missing in config")
        self.elevenlabs_cfg = dict(self.config, elevenlabs_api_key=api_key)

    def _init_edge(self):
        import edge_tts
        self.edge_tts = edge_tts
        self.voice = self.voice or "en-US-GuyNeural"

    def _init_http(self):
        endpoint, key_var, model, voice = HTTP_PROVIDERS[self.provider]
        self.api_key = os.getenv(key_var, "")
        if not self.api_key:
            raise SpeechError(f"{key_var} not set")
        self.endpoint = self.config.get("endpoint") or endpoint
        self.model = self.config.get("model") or model
        self.voice = self.voice or voice
        self.timeout = float(self.config.get("timeout_seconds", 20.0))

    async def synthesize_async(self, text: str) -> bytes:
        if not text or not text.strip():
            raise SpeechError("Nothing to say")
        if self.provider == "local":
            data = await self._synthesize_local(text)
        elif self.provider == "11labs":
            data = await self._synthesize_elevenlabs(text)
        elif self.provider == "edge":
            data = await self._synthesize_edge(text)
        else:
            data = await self._synthesize_http(text)
        if not data:
            raise SpeechError(f"{self.provider} TTS returned no audio")
        return data

    async def _synthesize_local(self, text: str) -> bytes:
        if self.local_engine == "piper":
            model_path = Path(self.piper_model).expanduser()
            if not model_path.exists():
                raise SpeechError(f"Piper model not found: {model_path}")

            cmd = ["piper", "-m", str(model_path), "--output-raw",
                   "--length_scale", f"{1.0 / max(self.rate, 0.1):.2f}"]
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate(text.encode())
            if proc.returncode != 0:
                raise SpeechError(f"piper failed: {stderr.decode(errors='replace').strip()}")
            return _pcm_to_wav(stdout, PIPER_SAMPLE_RATE)

        with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as f:
            tmp = f.name
        try:
            words_per_minute = str(int(175 * self.rate))
            try:
                proc = await asyncio.create_subprocess_exec(
                    "espeak", "-s", words_per_minute, "-w", tmp, text,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
            except OSError as e:
                raise SpeechError(f"espeak not available: {e}") from e
            await proc.wait()
            return Path(tmp).read_bytes()
        finally:
            Path(tmp).unlink(missing_ok=True)

    async def _synthesize_elevenlabs(self, text: str) -> bytes:
        from . import elevenlabs
        try:
            return await elevenlabs.synthesize(text, self.elevenlabs_cfg)
        except SpeechError:
            raise
        except Exception as e:
            raise SpeechError(f"ElevenLabs error: {e}") from e

    async def _synthesize_edge(self, text: str) -> bytes:
        with tempfile.NamedTemporaryFile(suffix=".mp3", delete=False) as f:
            tmp = f.name
        try:
            communicate = self.edge_tts.Communicate(text, self.voice, rate=edge_rate(self.rate))
            await communicate.save(tmp)
            return Path(tmp).read_bytes()
        except Exception as e:
            raise SpeechError(f"Edge TTS error: {e}") from e
        finally:
            Path(tmp).unlink(missing_ok=True)

    async def _synthesize_http(self, text: str) -> bytes:
        payload = {
            "model": self.model,
            "voice": self.voice,
            "input": text,
            "response_format": self.format,
            "speed": self.rate,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.endpoint,
                    headers=headers,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise SpeechError(f"{self.provider} TTS status {response.status}: {error_text[:200]}")
                    return await response.read()
        except asyncio.TimeoutError:
            raise SpeechError(f"{self.provider} TTS timeout ({self.timeout:.0f}s)")
        except aiohttp.ClientError as e:
            raise SpeechError(f"{self.provider} TTS request failed: {e}") from e

    async def close(self):
        # close module session
        if self.provider == "11labs":
            from . import elevenlabs
            await elevenlabs.close()


def _pcm_to_wav(pcm: bytes, sample_rate: int) -> bytes:
    import soundfile as sf

    samples = np.frombuffer(pcm, dtype=np.int16)
    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()
