"""
Shared fakes for the btw test suite.

Every external capability (wake model, STT, LLM, search, TTS, notify-send,
/bin/sh) is replaced by an in-memory fake that records its calls.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

from btw.audio import AudioFrame, make_frame
from btw.commands import CommandCatalog, load_catalog
from btw.errors import LLMError, SearchError
from btw.intent import IntentRouter
from btw.pipeline import Assistant
from btw.responder import ResponseRouter
from btw.safety import CommandSafety, RunResult
from btw.search import SearchResult
from btw.session import SessionMachine
from btw.transcription import Transcriber
from btw.wake import NO_WAKE, WakeDetector, WakeResult

SAMPLE_RATE = 16000


def speech_frame(length: int = 512, amplitude: int = 10000, sequence: int = 0) -> AudioFrame:
    return make_frame(np.full(length, amplitude, dtype=np.int16), sequence, SAMPLE_RATE, timestamp=0.0)


def silence_frame(length: int = 512, sequence: int = 0) -> AudioFrame:
    return make_frame(np.zeros(length, dtype=np.int16), sequence, SAMPLE_RATE, timestamp=0.0)


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeDetector(WakeDetector):
    """Detects on the listed call numbers (1-based)."""

    def __init__(self, fire_on: Sequence[int] = (), frame_length: int = 512):
        self.frame_length = frame_length
        self.fire_on = set(fire_on)
        self.calls = 0
        self.closed = False

    def process(self, samples: np.ndarray) -> WakeResult:
        assert len(samples) == self.frame_length
        self.calls += 1
        if self.calls in self.fire_on:
            return WakeResult(True, 0.9)
        return NO_WAKE

    def close(self) -> None:
        self.closed = True


class FakeRunner:
    def __init__(self, exit_code: int = 0, stderr: str = ""):
        self.commands: List[str] = []
        self.exit_code = exit_code
        self.stderr = stderr

    async def run(self, command: str, timeout: Optional[float] = None) -> RunResult:
        self.commands.append(command)
        return RunResult(exit_code=self.exit_code, stderr=self.stderr)


class FakeLLM:
    """Returns canned answers in order; an Exception instance is raised instead."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.prompts: List[str] = []

    async def answer_short(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.answers:
            raise LLMError("no more answers")
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeSearch:
    def __init__(self, snippets: Sequence[str] = ("Result - https://example.com\nfact",), error: Optional[Exception] = None,
                 answer: Optional[str] = None):
        self.answer = answer
        self.snippets = list(snippets)
        self.error = error
        self.queries: List[str] = []

    async def search(self, query: str, timeout_ms: int = 5000, country: Optional[str] = None) -> SearchResult:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        if not self.snippets:
            raise SearchError("search returned no results")
        return SearchResult(query=query, snippets=list(self.snippets), answer=self.answer)


class FakeNotifier:
    def __init__(self, enabled: bool = True, confirmation: Optional[bool] = None):
        self.enabled = enabled
        self.confirmation = confirmation
        self.messages: List[str] = []
        self.answers: List[Dict] = []
        self.prompts: List[str] = []
        self.listening = 0

    def notify(self, message: str, title: Optional[str] = None, urgency: str = "normal") -> None:
        self.messages.append(message)

    def notify_listening(self) -> None:
        self.listening += 1

    def notify_answer(self, answer: str, source: str) -> None:
        self.answers.append({"text": answer, "source": source, "link": None})

    def notify_answer_with_link(self, answer: str, source: str, query: str) -> None:
        self.answers.append({"text": answer, "source": source, "link": query})

    async def ask_confirmation(self, message: str, timeout_ms: int) -> Optional[bool]:
        self.prompts.append(message)
        return self.confirmation

    async def drain(self) -> None:
        pass

    def cancel_all(self) -> None:
        pass


class FakeSpeaker:
    def __init__(self):
        self.spoken: List[str] = []
        self.speaking = False
        self.stopped = 0

    def speak_background(self, text: str, on_error=None):
        self.spoken.append(text)
        return None

    async def stop(self) -> None:
        self.stopped += 1

    async def wait(self) -> None:
        pass

    async def close(self) -> None:
        pass


class FakeTranscriber(Transcriber):
    name = "fake"

    def __init__(self, text: str = "lock my computer", error: Optional[Exception] = None, delay: float = 0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.calls = 0

    async def transcribe_async(self, samples: np.ndarray, sample_rate: int) -> str:
        import asyncio

        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.text


@pytest.fixture
def catalog() -> CommandCatalog:
    return load_catalog()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier(enabled=False)


@pytest.fixture
def speaker() -> FakeSpeaker:
    return FakeSpeaker()


def make_assistant(
    catalog: CommandCatalog,
    runner: FakeRunner,
    llm=None,
    search=None,
    notifier=None,
    speaker=None,
    dry_run: bool = False,
    confirmation_timeout: float = 10.0,
    clock=None,
    online: bool = True,
) -> Assistant:
    async def connectivity(_timeout_ms: int) -> bool:
        return online

    kwargs = {"clock": clock} if clock is not None else {}
    safety = CommandSafety(runner=runner, confirmation_timeout_seconds=confirmation_timeout,
                           dry_run=dry_run, **kwargs)
    responder = ResponseRouter(
        llm=llm if llm is not None else FakeLLM("Paris is the capital of France."),
        search=search,
        speaker=speaker,
        notifier=notifier,
        search_cfg={"enabled": search is not None, "timeout_ms": 500},
        connectivity=connectivity,
    )
    return Assistant(
        router=IntentRouter(catalog),
        safety=safety,
        responder=responder,
        notifier=notifier,
        speaker=speaker,
        session=SessionMachine(),
    )
