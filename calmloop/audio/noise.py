# calmloop/audio/noise.py
from __future__ import annotations
import io
import logging
import numpy as np
import soundfile as sf

from calmloop.audio.postfx import highpass, lowpass, normalize_peak, loop_seam_xfade
from calmloop.audio.metrics import describe

log = logging.getLogger(__name__)


def render_white_noise(
    *,
    sample_rate: int,
    channels: int,
    duration_sec: float,
    seed: int,
    highpass_hz: float,
    lowpass_hz: float,
    peak_target: float,
    seam_ms: float,
) -> np.ndarray:
    """
    Seeded, band-limited white noise shaped into a loopable clip.
    Returns float32 frames x channels.
    """
    if duration_sec <= 0:
        raise ValueError(f"duration_sec must be > 0 (got {duration_sec})")
    seam = int(sample_rate * seam_ms / 1000.0)
    n = int(sample_rate * duration_sec) + seam

    rng = np.random.default_rng(seed)
    x = rng.standard_normal((n, channels)).astype(np.float32)
    x = highpass(x, sample_rate, highpass_hz)
    x = lowpass(x, sample_rate, lowpass_hz)
    x = loop_seam_xfade(x, seam)
    return normalize_peak(x, target=peak_target)


def encode_wav(audio: np.ndarray, sample_rate: int) -> bytes:
    buf = io.BytesIO()
    sf.write(buf, audio, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def white_noise_payload(cfg) -> bytes:
    """Render the built-in white-noise clip from a `WhiteNoiseConfig` and encode it as WAV."""
    audio = render_white_noise(
        sample_rate=cfg.sample_rate,
        channels=cfg.channels,
        duration_sec=cfg.duration_sec,
        seed=cfg.seed,
        highpass_hz=cfg.highpass_hz,
        lowpass_hz=cfg.lowpass_hz,
        peak_target=cfg.peak_target,
        seam_ms=cfg.seam_ms,
    )
    if log.isEnabledFor(logging.DEBUG):
        m = describe(audio)
        log.debug("white noise: %d frames, rms=%.3f peak=%.3f flatness=%.3f",
                  len(audio), m["rms"], m["peak"], m["flatness"])
    return encode_wav(audio, cfg.sample_rate)
