"""
Energy-based utterance segmentation.

Decides when the utterance that follows a wake detection has ended:
either enough continuous silence after speech, or the hard duration cap.
All timing is counted in samples, so results do not depend on frame size.
"""

import logging
from enum import Enum
from typing import List, Optional

import numpy as np

from .audio import AudioFrame

logger = logging.getLogger(__name__)

INT16_FULL_SCALE = 32768.0


def frame_energy(samples: np.ndarray) -> float:
    """RMS of an int16 block, normalised to [0, 1]."""
    if samples.size == 0:
        return 0.0
    data = samples.astype(np.float64)
    rms = float(np.sqrt(np.mean(data * data))) / INT16_FULL_SCALE
    return min(rms, 1.0)


class BufferClosed(RuntimeError):
    pass


class UtteranceBuffer:
    """
    Append-only audio accumulator bounded by a sample budget.

    Ownership moves out with take(); the buffer cannot be used afterwards.
    """

    def __init__(self, max_samples: int, sample_rate: int):
        self.max_samples = int(max_samples)
        self.sample_rate = sample_rate
        self._chunks: List[np.ndarray] = []
        self._length = 0
        self._closed = False

    def __len__(self) -> int:
        return self._length

    @property
    def duration(self) -> float:
        return self._length / self.sample_rate

    @property
    def remaining(self) -> int:
        return self.max_samples - self._length

    @property
    def closed(self) -> bool:
        return self._closed

    def append(self, samples: np.ndarray) -> int:
        """Append up to the remaining budget; returns how many samples were kept."""
        if self._closed:
            raise BufferClosed("utterance buffer already handed off")
        keep = min(len(samples), self.remaining)
        if keep > 0:
            self._chunks.append(samples[:keep])
            self._length += keep
        return keep

    def take(self) -> np.ndarray:
        if self._closed:
            raise BufferClosed("utterance buffer already handed off")
        self._closed = True
        if self._chunks:
            audio = np.concatenate(self._chunks).astype(np.int16, copy=False)
        else:
            audio = np.zeros(0, dtype=np.int16)
        self._chunks = []
        return audio

    def release(self) -> None:
        self._chunks = []
        self._length = 0
        self._closed = True


class SegmentEvent(Enum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    FALSE_WAKE = "false_wake"


class UtteranceSegmenter:
    """Speech/silence state for a single listening window."""

    def __init__(
        self,
        sample_rate: int = 16000,
        silence_threshold: float = 0.02,
        silence_duration_ms: int = 1200,
        max_utterance_seconds: float = 12.0,
        keep_leading_silence: bool = False,
    ):
        if not 0.0 <= silence_threshold <= 1.0:
            raise ValueError("silence_threshold must be within [0, 1]")
        if silence_duration_ms <= 0 or max_utterance_seconds <= 0:
            raise ValueError("silence_duration_ms and max_utterance_seconds must be positive")

        self.sample_rate = int(sample_rate)
        self.silence_threshold = float(silence_threshold)
        self.silence_duration_ms = int(silence_duration_ms)
        self.max_utterance_seconds = float(max_utterance_seconds)
        self.keep_leading_silence = keep_leading_silence
        self.max_samples = int(round(self.max_utterance_seconds * self.sample_rate))

        self._buffer: Optional[UtteranceBuffer] = None
        self._finished = True
        self.reset()

    @property
    def active(self) -> bool:
        return self._buffer is not None and not self._finished

    @property
    def elapsed_seconds(self) -> float:
        return self.elapsed_samples / self.sample_rate

    def reset(self) -> None:
        """Drop any in-progress utterance."""
        if self._buffer is not None and not self._buffer.closed:
            self._buffer.release()
        self._buffer = None
        self._finished = True
        self.elapsed_samples = 0
        self.silence_samples = 0
        self.speech_frames = 0
        self.last_energy = 0.0

    def start(self) -> None:
        """Open a fresh listening window (called on wake)."""
        self.reset()
        self._buffer = UtteranceBuffer(self.max_samples, self.sample_rate)
        self._finished = False

    def _silence_elapsed(self) -> bool:
        return self.silence_samples * 1000 >= self.silence_duration_ms * self.sample_rate

    def push(self, frame: AudioFrame) -> SegmentEvent:
        if not self.active:
            raise RuntimeError("segmenter is not listening")

        samples = frame.samples
        remaining = self.max_samples - self.elapsed_samples
        if len(samples) > remaining:
            samples = samples[:remaining]

        energy = frame_energy(samples)
        self.last_energy = energy
        is_speech = energy >= self.silence_threshold
        self.elapsed_samples += len(samples)

        if is_speech:
            self.speech_frames += 1
            self.silence_samples = 0
        else:
            self.silence_samples += len(samples)

        if self.speech_frames or self.keep_leading_silence:
            self._buffer.append(samples)

        logger.debug(
            "segment: rms=%.4f threshold=%.3f speech=%s silence_ms=%.0f elapsed=%.2fs",
            energy, self.silence_threshold, is_speech,
            self.silence_samples * 1000 / self.sample_rate, self.elapsed_seconds,
        )

        if self._silence_elapsed():
            return self._finish(reason="silence")
        if self.elapsed_samples >= self.max_samples:
            return self._finish(reason="max duration")
        return SegmentEvent.CONTINUE

    def _finish(self, reason: str) -> SegmentEvent:
        self._finished = True
        if self.speech_frames == 0:
            logger.info("segment: false wake (%s with no speech after %.2fs)", reason, self.elapsed_seconds)
            self._buffer.release()
            return SegmentEvent.FALSE_WAKE
        logger.info(
            "segment: stop on %s (samples=%d, elapsed=%.2fs, speech_frames=%d)",
            reason, len(self._buffer), self.elapsed_seconds, self.speech_frames,
        )
        return SegmentEvent.COMPLETE

    def take_buffer(self) -> np.ndarray:
        """Hand the finalized utterance to the caller."""
        if self._buffer is None or not self._finished:
            raise RuntimeError("no finalized utterance")
        audio = self._buffer.take()
        self._buffer = None
        return audio
