# tests/conftest.py
from pathlib import Path
import io
import sys

import numpy as np
import soundfile as sf
import pytest

# Ensure project root is on sys.path for `import calmloop.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from calmloop.config import load_config

TEST_SR = 8000


def make_wav(seconds: float = 0.25, sr: int = TEST_SR, channels: int = 1, freq: float = 440.0) -> bytes:
    t = np.arange(int(seconds * sr)) / sr
    tone = (0.3 * np.sin(2 * np.pi * freq * t)).astype(np.float32)
    audio = np.repeat(tone[:, None], channels, axis=1)
    buf = io.BytesIO()
    sf.write(buf, audio, sr, format="WAV", subtype="PCM_16")
    return buf.getvalue()


@pytest.fixture
def wav_bytes():
    return make_wav


@pytest.fixture
def cfg():
    # silent backend + a short, cheap noise clip
    return load_config(None, {
        "audio": {"output": "null", "sample_rate": TEST_SR, "channels": 2},
        "white_noise": {"duration_sec": 0.5, "seam_ms": 20, "lowpass_hz": 3000},
    })
