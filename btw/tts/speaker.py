"""
Speaker - synthesize and play, one utterance at a time
"""

import asyncio
import logging
from typing import Optional

from ..audio import AudioOutput
from ..errors import SpeechError
from .engine import TTSEngine

logger = logging.getLogger(__name__)


class Speaker:
    """
    Renders text through a TTSEngine and plays it.

    A new utterance interrupts the previous one. Background playback never
    raises; failures are logged and reported to the caller's callback.
    """

    def __init__(self, engine: TTSEngine, output: Optional[AudioOutput] = None, enabled: bool = True):
        self.engine = engine
        self.output = output or AudioOutput()
        self.enabled = enabled
        self._task: Optional[asyncio.Task] = None

    @property
    def speaking(self) -> bool:
        return self._task is not None and not self._task.done()

    async def speak(self, text: str) -> None:
        """Synthesize and play. Raises SpeechError."""
        if not self.enabled:
            return
        try:
            audio = await self.engine.synthesize_async(text)
            await self.output.play_bytes(audio)
        except SpeechError:
            raise
        except Exception as e:
            raise SpeechError(f"Speech failed: {e}") from e

    def speak_background(self, text: str, on_error=None) -> Optional[asyncio.Task]:
        if not self.enabled:
            return None
        if self.speaking:
            self._task.cancel()

        async def _run():
            try:
                await self.speak(text)
            except SpeechError as e:
                logger.warning(f"Speech degraded to text only: {e.message}")
                if on_error:
                    on_error(e)

        self._task = asyncio.get_running_loop().create_task(_run())
        return self._task

    async def wait(self) -> None:
        """Let the current utterance finish."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def stop(self) -> None:
        """Barge-in: cut off whatever is playing."""
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.output.stop()

    async def close(self) -> None:
        await self.stop()
        await self.engine.close()


def create_speaker(speech_cfg: dict) -> Optional[Speaker]:
    """Speaker from the [speech_output] section, None when disabled"""
    if not speech_cfg.get("enabled", True):
        return None
    engine = TTSEngine(speech_cfg.get("provider", "edge"), speech_cfg)
    return Speaker(engine)
