"""
Tests for the transcription bridge
"""

import numpy as np
import pytest

from btw.errors import TranscriptionError
from btw.transcription import TranscriptionBridge, clean_transcript, create_transcriber

from conftest import FakeTranscriber

AUDIO = np.full(16000, 1000, dtype=np.int16)


class TestCleanTranscript:
    @pytest.mark.parametrize("text", ["Thank you.", "you", " thanks! ", ""])
    def test_hallucinations_dropped(self, text):
        assert clean_transcript(text) == ""

    def test_whitespace_collapsed(self):
        assert clean_transcript("  lock   my\ncomputer ") == "lock my computer"


class TestTranscriptionBridge:
    @pytest.mark.asyncio
    async def test_success(self):
        transcriber = FakeTranscriber("Lock my computer.")
        bridge = TranscriptionBridge(transcriber)

        assert await bridge.transcribe(AUDIO, 16000) == "Lock my computer."
        assert transcriber.calls == 1
        assert bridge.calls == 1

    @pytest.mark.asyncio
    async def test_empty_audio_never_sent(self):
        transcriber = FakeTranscriber()
        bridge = TranscriptionBridge(transcriber)

        with pytest.raises(TranscriptionError):
            await bridge.transcribe(np.zeros(0, dtype=np.int16), 16000)
        assert transcriber.calls == 0

    @pytest.mark.asyncio
    async def test_timeout(self):
        transcriber = FakeTranscriber(delay=5)
        bridge = TranscriptionBridge(transcriber, timeout_seconds=0.05)

        with pytest.raises(TranscriptionError, match="timed out"):
            await bridge.transcribe(AUDIO, 16000)
        # Not retried
        assert transcriber.calls == 1

    @pytest.mark.asyncio
    async def test_backend_failure_wrapped(self):
        transcriber = FakeTranscriber(error=RuntimeError("model crashed"))
        bridge = TranscriptionBridge(transcriber)

        with pytest.raises(TranscriptionError, match="model crashed"):
            await bridge.transcribe(AUDIO, 16000)
        assert transcriber.calls == 1

    @pytest.mark.asyncio
    async def test_hallucination_is_failure(self):
        bridge = TranscriptionBridge(FakeTranscriber("Thank you."))
        with pytest.raises(TranscriptionError):
            await bridge.transcribe(AUDIO, 16000)

    def test_user_message(self):
        assert TranscriptionError("x").user_message == "Sorry, I couldn't understand that."


class TestCreateTranscriber:
    def test_unknown_provider(self):
        with pytest.raises(TranscriptionError):
            create_transcriber({"provider": "carrier-pigeon"})

    def test_http_provider(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
        transcriber = create_transcriber({"provider": "groq", "model": "", "language": "en"})
        assert transcriber.api_key == "gsk-test"
        assert transcriber.model == "whisper-large-v3-turbo"
        assert transcriber.endpoint.endswith("/audio/transcriptions")
