# calmloop/audio/postfx.py
from __future__ import annotations
import numpy as np
from scipy.signal import butter, sosfiltfilt

def _butter_filter(x: np.ndarray, sr: int, cutoff: float, btype: str, order: int = 4) -> np.ndarray:
    ny = 0.5 * sr
    wc = np.clip(cutoff / ny, 1e-6, 0.999999)
    sos = butter(order, wc, btype=btype, output="sos")
    # zero-phase along the time axis
    return sosfiltfilt(sos, x, axis=0).astype(np.float32)

def highpass(x: np.ndarray, sr: int, cutoff_hz: float) -> np.ndarray:
    if cutoff_hz <= 0:
        return x
    return _butter_filter(x, sr, cutoff_hz, btype="highpass")

def lowpass(x: np.ndarray, sr: int, cutoff_hz: float) -> np.ndarray:
    if cutoff_hz <= 0 or cutoff_hz >= 0.5 * sr:
        return x
    return _butter_filter(x, sr, cutoff_hz, btype="lowpass")

def normalize_peak(x: np.ndarray, target: float = 0.90) -> np.ndarray:
    target = float(np.clip(target, 0.0, 1.0))
    peak = float(np.max(np.abs(x))) if x.size else 0.0
    if peak <= 1e-12 or target == 0.0:
        return x
    return (x * (target / peak)).astype(np.float32)

def loop_seam_xfade(x: np.ndarray, overlap: int) -> np.ndarray:
    """
    Make `x` loop without a click: the last `overlap` frames are equal-power
    crossfaded into the first `overlap` frames and then dropped, so the
    returned clip is `overlap` frames shorter and its end flows into its start.
    """
    overlap = min(int(overlap), len(x) // 2)
    if overlap <= 0:
        return x.astype(np.float32)
    head = x[:overlap].astype(np.float32)
    tail = x[-overlap:].astype(np.float32)
    t = np.linspace(0.0, np.pi / 2, overlap, dtype=np.float32)
    w_tail = np.cos(t) ** 2
    w_head = np.sin(t) ** 2
    if x.ndim == 2:
        w_tail = w_tail[:, None]
        w_head = w_head[:, None]
    cross = w_tail * tail + w_head * head
    return np.concatenate([cross, x[overlap:-overlap]]).astype(np.float32)
