"""
Configuration system for btw.

TOML configuration under $XDG_CONFIG_HOME/btw/, written with defaults on
first run. Credentials come from the environment, optionally loaded from a
.env file next to config.toml.
"""

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .errors import ConfigError

# Use tomllib (Python 3.11+) or tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_TOML = """# btw configuration

[wake_word]
provider = "porcupine"       # "porcupine" or "openwakeword"
sensitivity = 0.5
ppn_path = ""                # custom Porcupine keyword file (.ppn)
keywords = ["jarvis"]        # built-in Porcupine keywords when ppn_path is empty
model_path = ""              # Porcupine params (.pv) or openWakeWord model
# PV_ACCESS_KEY is read from the environment

[audio]
sample_rate = 16000
frame_length = 512
device = ""                  # sounddevice input name or index, empty for default
queue_size = 64

[speech]
# Energy-based end-of-utterance detection
silence_threshold = 0.02     # RMS, 0..1
silence_duration_ms = 1200
max_utterance_seconds = 12
keep_leading_silence = false

[stt]
provider = "faster-whisper"  # "faster-whisper", "groq" or "openai"
model = "small"
device = "cpu"               # or "cuda"
threads = 4
language = "en"
timeout_seconds = 20

[intent]
min_confidence = 0.6

[execution]
dry_run = false
confirmation_timeout_seconds = 10
command_timeout_seconds = 30
confirm_via_notification = true
affirmative = ["yes", "confirm", "do it", "yes please", "go ahead"]
negative = ["no", "cancel", "stop", "abort", "never mind"]

[llm]
provider = "mistral"         # "anthropic", "openai", "groq", "mistral" or "ollama"
model = ""                   # Leave empty for provider defaults
endpoint = ""
timeout_seconds = 30
temperature = 0.2

[search]
enabled = true
timeout_ms = 5000
country = ""
probe_timeout_ms = 800
# TAVILY_API_KEY is read from the environment

[speech_output]
enabled = true
provider = "edge"            # "edge", "openai", "groq", "local" or "11labs"
voice = ""                   # Leave empty for provider defaults
format = "wav"
rate = 1.0
stop_on_wake = true

[ui]
osd = true
osd_timeout_ms = 5000
answer_timeout_ms = 15000

[logging]
level = "INFO"
file = "/tmp/btwd.log"
"""


def default_config_dir() -> Path:
    # Use XDG_CONFIG_HOME or default to ~/.config
    xdg_config = os.getenv("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / "btw"
    return Path.home() / ".config" / "btw"


def _parse_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


DEFAULTS: Dict[str, Any] = tomllib.loads(DEFAULT_CONFIG_TOML)


class BtwConfig:
    """
    Configuration manager for btw.

    Values missing from the user's file fall back to DEFAULT_CONFIG_TOML.
    A file that cannot be parsed is a ConfigError.
    """

    def __init__(self, config_path: Optional[str] = None, write_default: bool = True):
        if config_path:
            self.config_file = Path(config_path).expanduser()
            self.config_dir = self.config_file.parent
        else:
            self.config_dir = default_config_dir()
            self.config_file = self.config_dir / "config.toml"

        if write_default:
            self._ensure_config_exists()
        self.load_env()
        self._config = self._load_config()

    def _ensure_config_exists(self):
        """Create default config file if it doesn't exist."""
        if self.config_file.exists():
            return
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self.config_file.write_text(DEFAULT_CONFIG_TOML)
            logger.info(f"Initialized default config at: {self.config_file}")
        except OSError as e:
            logger.warning(f"Could not write default config {self.config_file}: {e}")

    def load_env(self) -> None:
        """Load .env from the config dir; real environment variables win."""
        env_file = self.config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file, override=False)
            logger.debug(f"Loaded environment from {env_file}")

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_file.exists():
            return copy.deepcopy(DEFAULTS)
        try:
            with open(self.config_file, "rb") as f:
                user = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Failed to load config {self.config_file}: {e}") from e
        return _merge(DEFAULTS, user)

    def reload(self):
        """Reload configuration from file."""
        self._config = self._load_config()

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self._config.get(section, {}).get(key, default)

    def get_section(self, section: str) -> Dict[str, Any]:
        return dict(self._config.get(section, {}))

    @property
    def commands_path(self) -> Path:
        return self.config_dir / "commands.json"

    def get_wake_config(self) -> Dict[str, Any]:
        cfg = self.get_section("wake_word")
        sensitivity = _parse_float(cfg.get("sensitivity"), 0.5)
        if not 0.0 <= sensitivity <= 1.0:
            raise ConfigError(f"wake_word.sensitivity must be within [0, 1], got {sensitivity}")
        cfg["sensitivity"] = sensitivity
        return cfg

    def get_audio_config(self) -> Dict[str, Any]:
        cfg = self.get_section("audio")
        device = cfg.get("device")
        if isinstance(device, str) and device.isdigit():
            device = int(device)
        return {
            "sample_rate": _parse_int(cfg.get("sample_rate"), 16000),
            "frame_length": _parse_int(cfg.get("frame_length"), 512),
            "device": device if device not in ("", None) else None,
            "queue_size": _parse_int(cfg.get("queue_size"), 64),
        }

    def get_speech_config(self) -> Dict[str, Any]:
        """Segmenter thresholds"""
        cfg = self.get_section("speech")
        threshold = _parse_float(cfg.get("silence_threshold"), 0.02)
        if not 0.0 <= threshold <= 1.0:
            raise ConfigError(f"speech.silence_threshold must be within [0, 1], got {threshold}")
        silence_ms = _parse_int(cfg.get("silence_duration_ms"), 1200)
        max_seconds = _parse_float(cfg.get("max_utterance_seconds"), 12.0)
        if silence_ms <= 0 or max_seconds <= 0:
            raise ConfigError("speech.silence_duration_ms and speech.max_utterance_seconds must be positive")
        return {
            "silence_threshold": threshold,
            "silence_duration_ms": silence_ms,
            "max_utterance_seconds": max_seconds,
            "keep_leading_silence": bool(cfg.get("keep_leading_silence", False)),
        }

    def get_stt_config(self) -> Dict[str, Any]:
        cfg = self.get_section("stt")
        cfg["timeout_seconds"] = _parse_float(cfg.get("timeout_seconds"), 20.0)
        return cfg

    def get_intent_config(self) -> Dict[str, Any]:
        cfg = self.get_section("intent")
        min_confidence = _parse_float(cfg.get("min_confidence"), 0.6)
        if not 0.0 <= min_confidence <= 1.0:
            raise ConfigError(f"intent.min_confidence must be within [0, 1], got {min_confidence}")
        return {"min_confidence": min_confidence}

    def get_execution_config(self) -> Dict[str, Any]:
        cfg = self.get_section("execution")
        return {
            "dry_run": bool(cfg.get("dry_run", False)),
            "confirmation_timeout_seconds": _parse_float(cfg.get("confirmation_timeout_seconds"), 10.0),
            "command_timeout_seconds": _parse_float(cfg.get("command_timeout_seconds"), 30.0),
            "confirm_via_notification": bool(cfg.get("confirm_via_notification", True)),
            "affirmative": self._phrases(cfg.get("affirmative"), DEFAULTS["execution"]["affirmative"]),
            "negative": self._phrases(cfg.get("negative"), DEFAULTS["execution"]["negative"]),
        }

    @staticmethod
    def _phrases(value: Any, default: List[str]) -> List[str]:
        phrases = []
        if isinstance(value, list):
            phrases = [str(p).strip() for p in value if str(p).strip()]
        return phrases or list(default)

    def get_llm_config(self) -> Dict[str, Any]:
        """
        LLM configuration with environment variable override.

        Environment variables take precedence over config file.
        """
        llm_config = self.get_section("llm")

        provider = os.getenv("BTW_LLM_PROVIDER", llm_config.get("provider", "mistral"))
        model = os.getenv("BTW_LLM_MODEL", llm_config.get("model", ""))
        endpoint = os.getenv("BTW_LLM_ENDPOINT", llm_config.get("endpoint", ""))

        return {
            "provider": provider,
            "model": model if model else None,
            "endpoint": endpoint if endpoint else None,
            "timeout_seconds": _parse_float(llm_config.get("timeout_seconds"), 30.0),
            "temperature": _parse_float(llm_config.get("temperature"), 0.2),
        }

    def get_search_config(self) -> Dict[str, Any]:
        cfg = self.get_section("search")
        return {
            "enabled": bool(cfg.get("enabled", True)),
            "timeout_ms": _parse_int(cfg.get("timeout_ms"), 5000),
            "country": (cfg.get("country") or "").strip() or None,
            "probe_timeout_ms": _parse_int(cfg.get("probe_timeout_ms"), 800),
        }

    def get_speech_output_config(self) -> Dict[str, Any]:
        cfg = self.get_section("speech_output")
        cfg["rate"] = _parse_float(cfg.get("rate"), 1.0)
        cfg["enabled"] = bool(cfg.get("enabled", True))
        return cfg

    def get_ui_config(self) -> Dict[str, Any]:
        cfg = self.get_section("ui")
        return {
            "osd": bool(cfg.get("osd", True)),
            "osd_timeout_ms": _parse_int(cfg.get("osd_timeout_ms"), 5000),
            "answer_timeout_ms": _parse_int(cfg.get("answer_timeout_ms"), 15000),
        }

    def get_logging_config(self) -> Dict[str, Any]:
        cfg = self.get_section("logging")
        return {
            "level": str(cfg.get("level", "INFO")).upper(),
            "file": cfg.get("file") or None,
        }


# Global config instance
_global_config: Optional[BtwConfig] = None


def get_config(config_path: Optional[str] = None) -> BtwConfig:
    """Global configuration instance; config_path is only used on first call."""
    global _global_config

    if _global_config is None:
        _global_config = BtwConfig(config_path)

    return _global_config


def init_config(config_path: Optional[str] = None, write_default: bool = True) -> BtwConfig:
    """Initialize configuration system. Called once at startup."""
    global _global_config
    _global_config = BtwConfig(config_path, write_default=write_default)
    return _global_config
