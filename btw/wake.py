"""
Wake word gating.

Backends:
    1. Porcupine (Picovoice) - needs an access key, keyword .ppn files
    2. openWakeWord - free, ONNX/TFLite models

The gate only consults the detector while the session is idle. Frames
seen in any other state are discarded.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .audio import AudioFrame
from .errors import WakeModelError
from .session import SessionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WakeResult:
    detected: bool
    score: Optional[float] = None


NO_WAKE = WakeResult(False)


class WakeDetector:
    """Interface every wake word backend implements."""

    frame_length: int = 512
    sample_rate: int = 16000

    def process(self, samples: np.ndarray) -> WakeResult:
        raise NotImplementedError

    def close(self) -> None:
        pass


class PorcupineDetector(WakeDetector):
    """Porcupine wake word detection."""

    def __init__(
        self,
        access_key: str,
        keyword_paths: Optional[Sequence[str]] = None,
        keywords: Optional[Sequence[str]] = None,
        model_path: Optional[str] = None,
        sensitivity: float = 0.5,
    ):
        try:
            import pvporcupine
        except ImportError as exc:
            raise WakeModelError("pvporcupine is not installed") from exc

        if not access_key:
            raise WakeModelError("Porcupine access key missing (set PV_ACCESS_KEY)")

        kwargs: Dict[str, Any] = {"access_key": access_key}
        if keyword_paths:
            paths = [os.path.expanduser(p) for p in keyword_paths]
            kwargs["keyword_paths"] = paths
            count = len(paths)
        else:
            names = list(keywords or ["jarvis"])
            kwargs["keywords"] = names
            count = len(names)
        if model_path:
            kwargs["model_path"] = os.path.expanduser(model_path)
        kwargs["sensitivities"] = [float(sensitivity)] * count

        try:
            self._porcupine = pvporcupine.create(**kwargs)
        except Exception as exc:
            raise WakeModelError(f"Porcupine init failed: {exc}") from exc

        self.frame_length = self._porcupine.frame_length
        self.sample_rate = self._porcupine.sample_rate
        self.version = getattr(self._porcupine, "version", "unknown")

    def process(self, samples: np.ndarray) -> WakeResult:
        index = self._porcupine.process(samples.tolist())
        if index >= 0:
            return WakeResult(True, 1.0)
        return NO_WAKE

    def close(self) -> None:
        if self._porcupine is not None:
            self._porcupine.delete()
            self._porcupine = None


class OpenWakeWordDetector(WakeDetector):
    """openWakeWord detection; a score at or above sensitivity is a hit."""

    frame_length = 1280

    def __init__(self, model_paths: Optional[List[str]] = None, sensitivity: float = 0.5,
                 inference_framework: str = "onnx"):
        try:
            from openwakeword.model import Model
        except ImportError as exc:
            raise WakeModelError("openwakeword is not installed") from exc

        kwargs: Dict[str, Any] = {"inference_framework": inference_framework}
        if model_paths:
            kwargs["wakeword_models"] = [os.path.expanduser(p) for p in model_paths]

        try:
            self._model = Model(**kwargs)
        except Exception as exc:
            raise WakeModelError(f"openWakeWord init failed: {exc}") from exc

        if not self._model.models:
            raise WakeModelError("openWakeWord loaded no models")
        self.sensitivity = float(sensitivity)

    def process(self, samples: np.ndarray) -> WakeResult:
        prediction = self._model.predict(samples)
        score = max((float(v) for v in prediction.values()), default=0.0)
        if score >= self.sensitivity:
            self._model.reset()
            return WakeResult(True, score)
        return WakeResult(False, score)


def build_detector(wake_cfg: Dict[str, Any]) -> WakeDetector:
    """Create the configured backend. Any failure here is fatal."""
    provider = wake_cfg.get("provider", "porcupine")
    sensitivity = float(wake_cfg.get("sensitivity", 0.5))

    if provider == "porcupine":
        keyword_path = wake_cfg.get("ppn_path") or ""
        detector: WakeDetector = PorcupineDetector(
            access_key=os.getenv("PV_ACCESS_KEY", wake_cfg.get("access_key", "")),
            keyword_paths=[keyword_path] if keyword_path else None,
            keywords=wake_cfg.get("keywords") or None,
            model_path=wake_cfg.get("model_path") or None,
            sensitivity=sensitivity,
        )
    elif provider == "openwakeword":
        model_path = wake_cfg.get("model_path") or ""
        detector = OpenWakeWordDetector(
            model_paths=[model_path] if model_path else None,
            sensitivity=sensitivity,
        )
    else:
        raise WakeModelError(f"Unknown wake word provider: {provider}")

    logger.info(
        "Wake word: %s (frame_length=%d, sample_rate=%d, sensitivity=%.2f)",
        provider, detector.frame_length, detector.sample_rate, sensitivity,
    )
    return detector


class WakeGate:
    """Feeds idle-state frames to the detector in its required block size."""

    def __init__(self, detector: WakeDetector):
        self.detector = detector
        self.block_size = int(detector.frame_length)
        self._pending = np.zeros(0, dtype=np.int16)
        self.detections = 0

    def clear(self) -> None:
        self._pending = np.zeros(0, dtype=np.int16)

    def process(self, frame: AudioFrame, state: SessionState) -> WakeResult:
        if state is not SessionState.IDLE:
            self.clear()
            return NO_WAKE

        if len(frame.samples) == self.block_size and self._pending.size == 0:
            blocks = [frame.samples]
        else:
            self._pending = np.concatenate((self._pending, frame.samples))
            blocks = []
            while self._pending.shape[0] >= self.block_size:
                blocks.append(self._pending[:self.block_size])
                self._pending = self._pending[self.block_size:]

        best = NO_WAKE
        for block in blocks:
            result = self.detector.process(block)
            if result.detected:
                self.detections += 1
                self.clear()
                logger.info("wake: detected (score=%s)", result.score)
                return result
            if result.score is not None:
                best = result
        return best
