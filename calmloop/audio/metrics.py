# calmloop/audio/metrics.py
from __future__ import annotations
import numpy as np

def _mono(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=np.float32)
    return x.mean(axis=1) if x.ndim == 2 else x

def rms(x: np.ndarray) -> float:
    x = np.asarray(x, dtype=np.float32)
    if x.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(x), dtype=np.float64)))

def peak(x: np.ndarray) -> float:
    x = np.asarray(x)
    return float(np.max(np.abs(x))) if x.size else 0.0

def crest_db(x: np.ndarray) -> float:
    r = rms(x)
    p = peak(x)
    if r <= 1e-12:
        return 0.0
    return float(20.0 * np.log10((p + 1e-12) / (r + 1e-12)))

def spectral_flatness(x: np.ndarray) -> float:
    # ~1.0 for white noise, ~0.0 for a pure tone
    mag = np.abs(np.fft.rfft(_mono(x))) + 1e-12
    geo = np.exp(np.mean(np.log(mag)))
    arith = np.mean(mag)
    return float(geo / (arith + 1e-12))

def describe(x: np.ndarray) -> dict:
    return {
        "rms": rms(x),
        "peak": peak(x),
        "crest_db": crest_db(x),
        "flatness": spectral_flatness(x),
    }
