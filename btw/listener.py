"""
Voice listener - the daemon loop

Frames are consumed on the event loop. While IDLE they go to the wake gate;
while CAPTURING to the segmenter; in every other state they are dropped.
A finished utterance is handed to a turn task (transcribe -> route ->
respond) so frame consumption never stalls on the network.
"""

import asyncio
import logging
import os
import pathlib
import time
from typing import Optional, Union

import numpy as np

from .audio import AudioFrame, FrameSource
from .commands import load_catalog
from .errors import BtwError, CatalogError, ErrorCategory
from .pipeline import Assistant
from .segmenter import SegmentEvent, UtteranceSegmenter
from .session import SessionMachine, SessionState
from .transcription import TranscriptionBridge
from .wake import WakeGate

logger = logging.getLogger(__name__)

PIDFILE = "/tmp/btwd.pid"
DEBUG_AUDIO_ENV = "BTWD_DEBUG_AUDIO_DIR"


class VoiceListener:
    def __init__(
        self,
        source: FrameSource,
        wake_gate: WakeGate,
        segmenter: UtteranceSegmenter,
        bridge: TranscriptionBridge,
        assistant: Assistant,
        session: Optional[SessionMachine] = None,
        notifier=None,
        speaker=None,
        stop_on_wake: bool = True,
        debug_audio_dir: Optional[str] = None,
        pidfile: Optional[str] = PIDFILE,
    ):
        self.source = source
        self.wake_gate = wake_gate
        self.segmenter = segmenter
        self.bridge = bridge
        self.assistant = assistant
        self.session = session or assistant.session or SessionMachine()
        self.assistant.session = self.session
        self.notifier = notifier
        self.speaker = speaker
        self.stop_on_wake = stop_on_wake
        self.debug_audio_dir = debug_audio_dir if debug_audio_dir is not None else os.getenv(DEBUG_AUDIO_ENV)
        self.pidfile = pidfile

        self._turn_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._fatal: Optional[BaseException] = None
        self.false_wakes = 0
        self.utterances = 0

    @property
    def sample_rate(self) -> int:
        return self.segmenter.sample_rate

    async def run(self) -> None:
        """Capture until stop() or a fatal error. Fatal errors are re-raised."""
        self.source.start()
        if self.pidfile:
            pathlib.Path(self.pidfile).write_text(str(os.getpid()))
        logger.info("Listening for wake word")

        try:
            async for frame in self.source.aframes():
                if self._stop.is_set():
                    break
                await self.process_frame(frame)
        finally:
            await self.shutdown()

        if self._fatal is not None:
            raise self._fatal

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Stopping listener")
        self._stop.set()
        self.source.stop()

    async def process_frame(self, frame: AudioFrame) -> None:
        state = self.session.state

        if state is SessionState.IDLE:
            result = self.wake_gate.process(frame, state)
            if result.detected:
                await self._on_wake()
            return

        if state is SessionState.CAPTURING:
            event = self.segmenter.push(frame)
            if event is SegmentEvent.COMPLETE:
                self._on_utterance()
            elif event is SegmentEvent.FALSE_WAKE:
                self.false_wakes += 1
                self.session.reset()
            return

        # Mid-turn: the gate discards the frame and keeps nothing
        self.wake_gate.process(frame, state)

    async def _on_wake(self) -> None:
        if not self.session.try_wake():
            return
        if self.speaker is not None and self.stop_on_wake and self.speaker.speaking:
            await self.speaker.stop()
        if self.notifier is not None:
            self.notifier.notify_listening()
        self.segmenter.start()
        self.session.transition(SessionState.CAPTURING)

    def _on_utterance(self) -> None:
        audio = self.segmenter.take_buffer()
        self.session.transition(SessionState.TRANSCRIBING)
        self.utterances += 1
        if self.debug_audio_dir:
            self._dump_audio(audio)
        self._turn_task = asyncio.get_running_loop().create_task(self._run_turn(audio))

    async def _run_turn(self, audio: np.ndarray) -> None:
        try:
            text = await self.bridge.transcribe(audio, self.sample_rate)
            if self.notifier is not None:
                self.notifier.notify(text, title="You")
            await self.assistant.handle_transcript(text)
        except BtwError as e:
            if e.category is ErrorCategory.FATAL:
                logger.error(f"Fatal: {e.message}")
                self._fatal = e
                self.stop()
            else:
                self.assistant.report_error(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Turn failed")
            self.assistant.report_error(BtwError(f"Something went wrong: {e}"))
        finally:
            self.session.reset()

    def reload_catalog(self, path: Optional[Union[str, os.PathLike]] = None) -> bool:
        """Swap in a freshly loaded catalog. The old one stays on failure."""
        try:
            catalog = load_catalog(path)
        except CatalogError as e:
            logger.error(f"Catalog reload failed, keeping current catalog: {e.message}")
            return False
        self.assistant.router.catalog = catalog
        logger.info(f"Catalog reloaded ({len(catalog)} commands)")
        return True

    def _dump_audio(self, audio: np.ndarray) -> None:
        directory = pathlib.Path(self.debug_audio_dir).expanduser()
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / f"utterance-{int(time.time() * 1000)}-{self.utterances}.pcm"
            path.write_bytes(audio.astype(np.int16).tobytes())
            logger.info(f"Debug audio: {path} ({len(audio)} samples @ {self.sample_rate}Hz)")
        except OSError as e:
            logger.warning(f"Could not write debug audio: {e}")

    async def shutdown(self) -> None:
        task, self._turn_task = self._turn_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        await self.assistant.shutdown()
        if self.speaker is not None:
            await self.speaker.close()
        if self.notifier is not None:
            self.notifier.cancel_all()

        self.segmenter.reset()
        self.session.reset()
        self.source.stop()
        self.wake_gate.detector.close()

        if self.pidfile:
            pathlib.Path(self.pidfile).unlink(missing_ok=True)
        logger.info("Stopped")
