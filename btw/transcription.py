"""
Audio transcription

Adapters:
    FasterWhisperTranscriber - local faster-whisper, run in a worker thread
    HTTPTranscriber          - OpenAI-compatible /audio/transcriptions (Groq, OpenAI)

TranscriptionBridge wraps an adapter with a timeout and turns every failure
into TranscriptionError. Each utterance is sent at most once.
"""

import asyncio
import io
import logging
import os
from typing import Optional

import aiohttp
import numpy as np

from .errors import TranscriptionError

logger = logging.getLogger(__name__)

# Whisper likes to "hear" these in silence
HALLUCINATIONS = {"thank you", "thanks", "thank you for watching", "you"}


def clean_transcript(text: str) -> str:
    text = " ".join((text or "").split())
    if text.lower().strip(" .!?,") in HALLUCINATIONS:
        return ""
    return text


class Transcriber:
    """Interface: int16 mono samples in, text out."""

    name = "transcriber"

    async def transcribe_async(self, samples: np.ndarray, sample_rate: int) -> str:
        raise NotImplementedError


class FasterWhisperTranscriber(Transcriber):
    """Async wrapper for faster-whisper"""

    name = "faster-whisper"

    def __init__(self, model: str = "small", device: str = "cpu", threads: Optional[int] = None,
                 language: Optional[str] = "en"):
        from faster_whisper import WhisperModel

        self.model_name = model
        self.device = device
        self.language = language or None

        if threads is None:
            threads = os.cpu_count()

        compute_type = "int8" if device == "cpu" else "float16"

        logger.info(f"Loading Whisper model '{model}' on {device}...")
        self.model = WhisperModel(
            model,
            device=device,
            compute_type=compute_type,
            cpu_threads=threads or 0,
        )
        logger.info(f"Whisper loaded ({threads} threads)")

    async def transcribe_async(self, samples: np.ndarray, sample_rate: int) -> str:
        # Run transcription in executor to avoid blocking
        return await asyncio.get_running_loop().run_in_executor(
            None, self._transcribe_sync, samples, sample_rate
        )

    def _transcribe_sync(self, samples: np.ndarray, sample_rate: int) -> str:
        audio_float = samples.astype(np.float32) / 32768.0
        if audio_float.ndim > 1:
            audio_float = audio_float[:, 0]
        if sample_rate != 16000:
            from .audio import resample_audio
            audio_float = resample_audio(samples, sample_rate, 16000).astype(np.float32) / 32768.0

        segments, _ = self.model.transcribe(
            audio_float,
            beam_size=1,
            vad_filter=True,
            language=self.language,
            condition_on_previous_text=False,
            no_speech_threshold=0.4
        )
        return " ".join(s.text.strip() for s in segments if s.text.strip())


class HTTPTranscriber(Transcriber):
    """OpenAI-compatible speech-to-text endpoint"""

    name = "http"

    def __init__(self, endpoint: str = "https://api.groq.com/openai/v1/audio/transcriptions",
                 api_key: Optional[str] = None, model: str = "whisper-large-v3-turbo",
                 language: Optional[str] = "en"):
        self.endpoint = endpoint
        self.api_key = api_key if api_key is not None else os.getenv("GROQ_API_KEY", "")
        self.model = model
        self.language = language or None

    async def transcribe_async(self, samples: np.ndarray, sample_rate: int) -> str:
        import soundfile as sf

        buf = io.BytesIO()
        sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")

        form = aiohttp.FormData()
        form.add_field("file", buf.getvalue(), filename="utterance.wav", content_type="audio/wav")
        form.add_field("model", self.model)
        form.add_field("response_format", "json")
        if self.language:
            form.add_field("language", self.language)

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with aiohttp.ClientSession() as session:
            async with session.post(self.endpoint, data=form, headers=headers) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise TranscriptionError(f"STT status {response.status}: {error_text[:200]}")
                data = await response.json()
        return str(data.get("text", ""))


def create_transcriber(stt_cfg: dict) -> Transcriber:
    provider = stt_cfg.get("provider", "faster-whisper")
    if provider in ("faster-whisper", "local"):
        return FasterWhisperTranscriber(
            model=stt_cfg.get("model", "small"),
            device=stt_cfg.get("device", "cpu"),
            threads=stt_cfg.get("threads") or None,
            language=stt_cfg.get("language", "en"),
        )
    if provider in ("http", "groq", "openai"):
        defaults = {
            "openai": ("https://api.openai.com/v1/audio/transcriptions", "OPENAI_API_KEY", "whisper-1"),
        }
        endpoint, key_var, model = defaults.get(
            provider,
            ("https://api.groq.com/openai/v1/audio/transcriptions", "GROQ_API_KEY", "whisper-large-v3-turbo"),
        )
        return HTTPTranscriber(
            endpoint=stt_cfg.get("endpoint") or endpoint,
            api_key=os.getenv(key_var, ""),
            model=stt_cfg.get("model") or model,
            language=stt_cfg.get("language", "en"),
        )
    raise TranscriptionError(f"Unknown STT provider: {provider}")


class TranscriptionBridge:
    """Bounded, at-most-once transcription of a finalized utterance."""

    def __init__(self, transcriber: Transcriber, timeout_seconds: float = 20.0):
        self.transcriber = transcriber
        self.timeout_seconds = timeout_seconds
        self.calls = 0

    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> str:
        if samples is None or len(samples) == 0:
            raise TranscriptionError("empty utterance")

        self.calls += 1
        duration = len(samples) / float(sample_rate)
        logger.info(f"Transcribing {duration:.2f}s with {self.transcriber.name}")
        try:
            text = await asyncio.wait_for(
                self.transcriber.transcribe_async(samples, sample_rate), self.timeout_seconds
            )
        except asyncio.TimeoutError:
            raise TranscriptionError(f"transcription timed out after {self.timeout_seconds:.0f}s")
        except TranscriptionError:
            raise
        except Exception as e:
            raise TranscriptionError(f"transcription failed: {e}") from e

        text = clean_transcript(text)
        if not text:
            raise TranscriptionError("empty transcript")
        logger.info(f"Transcript: {text!r}")
        return text
