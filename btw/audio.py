"""
Audio I/O - microphone frame source and speech playback
"""

import asyncio
import io
import logging
import queue
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import AsyncIterator, Iterator, List, Optional, Tuple

import numpy as np

from .errors import AudioDeviceError, SpeechError

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
CHANNELS = 1
FRAME_LENGTH = 512


def _sounddevice():
    """Import sounddevice on first use; a missing PortAudio is a device error."""
    try:
        import sounddevice
    except OSError as exc:
        raise AudioDeviceError(f"PortAudio unavailable: {exc}") from exc
    return sounddevice


@dataclass(frozen=True)
class AudioFrame:
    """Fixed-length block of int16 mono samples."""

    samples: np.ndarray
    sequence: int
    timestamp: float
    sample_rate: int = SAMPLE_RATE

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate


def make_frame(samples: np.ndarray, sequence: int, sample_rate: int = SAMPLE_RATE,
               timestamp: Optional[float] = None) -> AudioFrame:
    data = np.ascontiguousarray(samples, dtype=np.int16).copy()
    data.setflags(write=False)
    return AudioFrame(
        samples=data,
        sequence=sequence,
        timestamp=time.monotonic() if timestamp is None else timestamp,
        sample_rate=sample_rate,
    )


def resolve_input_sample_rate(
    target_rate: int,
    channels: int = CHANNELS,
    device: Optional[int] = None,
) -> Tuple[int, Optional[str]]:
    """Pick a capture rate: the target if the device accepts it, else its default."""
    sd = _sounddevice()
    try:
        sd.check_input_settings(device=device, samplerate=target_rate, channels=channels, dtype="int16")
        return int(target_rate), None
    except Exception as exc:
        try:
            device_id = device if device is not None else sd.default.device[0]
            info = sd.query_devices(device_id, "input")
            default_rate = int(info["default_samplerate"])
        except Exception as dev_exc:
            raise AudioDeviceError(
                f"No usable input device: {exc}; device lookup error: {dev_exc}"
            ) from dev_exc

        try:
            sd.check_input_settings(device=device, samplerate=default_rate, channels=channels, dtype="int16")
        except Exception as fallback_exc:
            raise AudioDeviceError(
                f"Input device rejects {target_rate}Hz and {default_rate}Hz: {fallback_exc}"
            ) from fallback_exc

        return default_rate, (
            f"Audio input sample rate {target_rate}Hz not supported; "
            f"capturing at device default {default_rate}Hz and resampling"
        )


def resample_audio(audio: np.ndarray, input_rate: float, target_rate: float) -> np.ndarray:
    """Linear-interpolation resample of a mono int16 block."""
    if input_rate == target_rate or audio.size == 0:
        return audio

    new_length = int(round(audio.shape[0] * target_rate / input_rate))
    if new_length <= 0:
        return audio[:0]

    x_old = np.arange(audio.shape[0], dtype=np.float32)
    x_new = np.linspace(0, audio.shape[0] - 1, new_length, dtype=np.float32)
    resampled = np.interp(x_new, x_old, audio.astype(np.float32))
    return np.clip(np.round(resampled), -32768, 32767).astype(np.int16)


class FrameSource:
    """
    Continuous microphone frame producer.

    The PortAudio callback thread regroups whatever block sizes the device
    delivers into fixed ``frame_length`` frames at ``sample_rate`` and puts
    them in a bounded queue. When the consumer falls behind the oldest frame
    is dropped.

    The device handle is owned exclusively for the life of the source.
    """

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        frame_length: int = FRAME_LENGTH,
        device: Optional[int] = None,
        queue_size: int = 64,
        read_timeout: float = 2.0,
        max_read_retries: int = 3,
    ):
        self.sample_rate = int(sample_rate)
        self.frame_length = int(frame_length)
        self.device = device
        self.read_timeout = read_timeout
        self.max_read_retries = max_read_retries

        self._queue: "queue.Queue[Optional[AudioFrame]]" = queue.Queue(maxsize=queue_size)
        self._stream = None
        self._input_rate = self.sample_rate
        self._pending = np.zeros(0, dtype=np.int16)
        self._sequence = 0
        self._started = False
        self._closed = False
        self._executor: Optional[ThreadPoolExecutor] = None

        self.dropped_frames = 0
        self.status_warnings = 0

    def _callback(self, indata, frames, time_info, status):
        """Audio callback - runs on the PortAudio thread"""
        if status:
            self.status_warnings += 1
            logger.warning("Audio capture status: %s", status)

        data = indata[:, 0] if indata.ndim > 1 else indata
        data = np.asarray(data, dtype=np.int16)
        if self._input_rate != self.sample_rate:
            data = resample_audio(data, self._input_rate, self.sample_rate)

        self._pending = np.concatenate((self._pending, data))
        while self._pending.shape[0] >= self.frame_length:
            block = self._pending[:self.frame_length]
            self._pending = self._pending[self.frame_length:]
            self._push(make_frame(block, self._sequence, self.sample_rate))
            self._sequence += 1

    def _push(self, frame: AudioFrame) -> None:
        try:
            self._queue.put_nowait(frame)
        except queue.Full:
            # Drop oldest so the consumer always sees recent audio
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self.dropped_frames += 1
            try:
                self._queue.put_nowait(frame)
            except queue.Full:
                pass

    def _open_stream(self) -> None:
        self._input_rate, note = resolve_input_sample_rate(
            self.sample_rate, channels=CHANNELS, device=self.device
        )
        if note:
            logger.warning(note)

        sd = _sounddevice()
        try:
            self._stream = sd.InputStream(
                samplerate=self._input_rate,
                channels=CHANNELS,
                dtype="int16",
                device=self.device,
                callback=self._callback,
            )
            self._stream.start()
        except Exception as exc:
            self._stream = None
            raise AudioDeviceError(f"Failed to open input stream: {exc}") from exc

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            logger.warning("Error closing input stream: %s", exc)

    def start(self) -> None:
        """Open the input device. Device unavailability is fatal."""
        if self._started:
            raise AudioDeviceError("Frame source already started")
        self._started = True
        self._open_stream()
        logger.info(
            "Audio capture started (%dHz capture, %dHz frames of %d samples)",
            self._input_rate, self.sample_rate, self.frame_length,
        )

    def stop(self) -> None:
        """Stop capturing; ends the frame sequence."""
        if self._closed:
            return
        self._closed = True
        self._close_stream()
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self._queue.put_nowait(None)
        if self._executor is not None:
            self._executor.shutdown(wait=False)
        logger.info("Audio capture stopped (dropped=%d)", self.dropped_frames)

    def _restart(self) -> None:
        self._close_stream()
        self._pending = np.zeros(0, dtype=np.int16)
        self._open_stream()

    def frames(self) -> Iterator[AudioFrame]:
        """
        Infinite frame sequence.

        A read that times out restarts the stream; more than
        ``max_read_retries`` consecutive failures raise AudioDeviceError.
        """
        if not self._started:
            self.start()

        failures = 0
        while True:
            try:
                frame = self._queue.get(timeout=self.read_timeout)
            except queue.Empty:
                if self._closed:
                    return
                failures += 1
                logger.warning(
                    "No audio for %.1fs (attempt %d/%d)",
                    self.read_timeout, failures, self.max_read_retries,
                )
                if failures > self.max_read_retries:
                    raise AudioDeviceError("Audio input stopped delivering frames")
                try:
                    self._restart()
                except AudioDeviceError as exc:
                    logger.warning("Stream restart failed: %s", exc)
                continue

            if frame is None:
                return
            failures = 0
            yield frame

    async def aframes(self) -> AsyncIterator[AudioFrame]:
        """Async view of frames(); blocking reads run on a dedicated thread."""
        loop = asyncio.get_running_loop()
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="btw-audio")
        iterator = self.frames()
        sentinel = object()

        while True:
            frame = await loop.run_in_executor(self._executor, next, iterator, sentinel)
            if frame is sentinel:
                return
            yield frame


def _find_player() -> Optional[List[str]]:
    if shutil.which("ffplay"):
        return ["ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet", "-"]
    if shutil.which("mpv"):
        return ["mpv", "--no-video", "--no-terminal", "-"]
    return None


class AudioOutput:
    """Play synthesized speech through the speakers"""

    def __init__(self, player_cmd: Optional[List[str]] = None):
        self.player_cmd = player_cmd if player_cmd is not None else _find_player()
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stop_event = asyncio.Event()

    async def play_bytes(self, audio_data: bytes) -> None:
        """Play encoded audio (wav/mp3/ogg). Raises SpeechError on failure."""
        if not audio_data:
            raise SpeechError("No audio data to play")

        self._stop_event = asyncio.Event()
        if self.player_cmd:
            await self._play_with_player(audio_data)
        else:
            await self._play_with_sounddevice(audio_data)

    async def _play_with_player(self, audio_data: bytes) -> None:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.player_cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await self._proc.communicate(audio_data)
        except OSError as exc:
            raise SpeechError(f"Audio player failed: {exc}") from exc
        finally:
            proc, self._proc = self._proc, None
            if proc and proc.returncode is None:
                proc.kill()
                await proc.wait()

    async def _play_with_sounddevice(self, audio_data: bytes) -> None:
        import soundfile as sf

        try:
            sd = _sounddevice()
        except AudioDeviceError as exc:
            raise SpeechError(exc.message) from exc
        loop = asyncio.get_running_loop()
        stop_event = self._stop_event

        def _play():
            data, samplerate = sf.read(io.BytesIO(audio_data))
            sd.play(data, samplerate)
            while sd.get_stream().active:
                if stop_event.is_set():
                    sd.stop()
                    break
                time.sleep(0.05)

        try:
            await loop.run_in_executor(None, _play)
        except Exception as exc:
            raise SpeechError(f"Audio playback error: {exc}") from exc

    async def stop(self) -> None:
        """Interrupt playback in progress."""
        self._stop_event.set()
        proc = self._proc
        if proc and proc.returncode is None:
            proc.kill()
            await proc.wait()
