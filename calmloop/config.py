# calmloop/config.py
from __future__ import annotations
import copy
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from calmloop.control.stress import StressRules

log = logging.getLogger(__name__)

# --------- defaults (mirror configs/defaults.yaml) ---------
DEFAULTS: Dict[str, Dict[str, Any]] = {
    "stress": {
        "threshold_bpm": 95,
        "min_bpm": 50,
        "max_bpm": 150,
        "initial_bpm": 75,
    },
    "audio": {
        "output": "sounddevice",
        "sample_rate": 44100,
        "channels": 2,
        "device": None,
        "blocksize": 1024,
    },
    "white_noise": {
        "duration_sec": 8.0,
        "seed": 4242,
        "highpass_hz": 40,
        "lowpass_hz": 9000,
        "peak_target": 0.5,
        "seam_ms": 250,
    },
    "uploads": {
        "allowed_extensions": [".mp3", ".wav"],
        "max_bytes": 50 * 1024 * 1024,
    },
    "subject": {
        "name": "The user",
    },
    "logging": {
        "level": "INFO",
    },
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class AudioConfig:
    output: str = "sounddevice"
    sample_rate: int = 44100
    channels: int = 2
    device: Optional[str] = None
    blocksize: int = 1024

    def output_options(self) -> Dict[str, Any]:
        if self.output == "sounddevice":
            return {"device": self.device, "blocksize": self.blocksize}
        return {}


@dataclass
class WhiteNoiseConfig:
    sample_rate: int = 44100
    channels: int = 2
    duration_sec: float = 8.0
    seed: int = 4242
    highpass_hz: float = 40.0
    lowpass_hz: float = 9000.0
    peak_target: float = 0.5
    seam_ms: float = 250.0


@dataclass
class UploadConfig:
    allowed_extensions: Tuple[str, ...] = (".mp3", ".wav")
    max_bytes: int = 50 * 1024 * 1024

    def accepts(self, filename: str) -> bool:
        return Path(filename).suffix.lower() in self.allowed_extensions


@dataclass
class AppConfig:
    rules: StressRules = field(default_factory=StressRules)
    initial_bpm: float = 75.0
    audio: AudioConfig = field(default_factory=AudioConfig)
    white_noise: WhiteNoiseConfig = field(default_factory=WhiteNoiseConfig)
    uploads: UploadConfig = field(default_factory=UploadConfig)
    subject: str = "The user"
    log_level: str = "INFO"


def _safe_load_yaml(path) -> Dict[str, Any]:
    """Load YAML if present; else return {} (warn on unreadable files)."""
    if path is None:
        return {}
    p = Path(path)
    if not p.exists():
        return {}
    try:
        import yaml  # requires PyYAML
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except Exception as e:
        log.warning("Could not parse YAML at %s (%s). Falling back to defaults.", p, e)
        return {}
    if not isinstance(data, dict):
        log.warning("YAML at %s is not a mapping. Falling back to defaults.", p)
        return {}
    return data


def _merge(cfg: Dict[str, Any], user: Dict[str, Any]) -> None:
    # None means "not set" so unset CLI flags never clobber YAML values
    for k, v in (user or {}).items():
        if isinstance(v, dict) and isinstance(cfg.get(k), dict):
            cfg[k].update({kk: vv for kk, vv in v.items() if vv is not None})
        elif v is not None:
            cfg[k] = v


def _finite(name: str, value) -> float:
    x = float(value)
    if not math.isfinite(x):
        raise ValueError(f"{name} must be finite (got {value!r})")
    return x


def resolve(raw: Dict[str, Any]) -> AppConfig:
    """Validate a merged config dict into an AppConfig."""
    from calmloop.audio.output import available_outputs

    s, a, w, u = raw["stress"], raw["audio"], raw["white_noise"], raw["uploads"]

    rules = StressRules(
        threshold_bpm=_finite("stress.threshold_bpm", s["threshold_bpm"]),
        min_bpm=_finite("stress.min_bpm", s["min_bpm"]),
        max_bpm=_finite("stress.max_bpm", s["max_bpm"]),
    )
    if rules.min_bpm >= rules.max_bpm:
        raise ValueError(f"stress.min_bpm ({rules.min_bpm}) must be below stress.max_bpm ({rules.max_bpm})")

    output = str(a["output"]).lower()
    if output not in available_outputs():
        raise ValueError(f"Unknown audio output '{a['output']}'. Available: {available_outputs()}")
    sample_rate, channels = int(a["sample_rate"]), int(a["channels"])
    if sample_rate <= 0:
        raise ValueError(f"audio.sample_rate must be > 0 (got {sample_rate})")
    if channels < 1:
        raise ValueError(f"audio.channels must be >= 1 (got {channels})")
    audio = AudioConfig(
        output=output,
        sample_rate=sample_rate,
        channels=channels,
        device=a.get("device"),
        blocksize=int(a["blocksize"]),
    )

    noise = WhiteNoiseConfig(
        sample_rate=sample_rate,
        channels=channels,
        duration_sec=_finite("white_noise.duration_sec", w["duration_sec"]),
        seed=int(w["seed"]),
        highpass_hz=_finite("white_noise.highpass_hz", w["highpass_hz"]),
        lowpass_hz=_finite("white_noise.lowpass_hz", w["lowpass_hz"]),
        peak_target=_finite("white_noise.peak_target", w["peak_target"]),
        seam_ms=_finite("white_noise.seam_ms", w["seam_ms"]),
    )
    if noise.duration_sec <= 0:
        raise ValueError(f"white_noise.duration_sec must be > 0 (got {noise.duration_sec})")

    exts = tuple(("." + str(e).lower().lstrip(".")) for e in u["allowed_extensions"])
    uploads = UploadConfig(allowed_extensions=exts, max_bytes=int(u["max_bytes"]))

    level = str(raw["logging"]["level"]).upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {LOG_LEVELS} (got {level!r})")

    return AppConfig(
        rules=rules,
        initial_bpm=_finite("stress.initial_bpm", s["initial_bpm"]),
        audio=audio,
        white_noise=noise,
        uploads=uploads,
        subject=str(raw["subject"]["name"]),
        log_level=level,
    )


def load_config(path=None, overrides: Optional[Dict[str, Any]] = None) -> AppConfig:
    """Defaults, then YAML at `path` (if any), then `overrides` (same nesting)."""
    cfg = copy.deepcopy(DEFAULTS)
    _merge(cfg, _safe_load_yaml(path))
    _merge(cfg, overrides or {})
    return resolve(cfg)
