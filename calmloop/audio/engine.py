from __future__ import annotations
import asyncio
import enum
import functools
import io
import logging
import threading
from dataclasses import dataclass
from math import gcd
from typing import Optional, Dict, Any

import numpy as np
import soundfile as sf
from scipy.signal import resample_poly

from calmloop.audio.output import AudioOutput, Voice, create_output

log = logging.getLogger(__name__)


class PlaybackState(str, enum.Enum):
    STOPPED = "stopped"
    PLAYING = "playing"


class DecodeFailure(Exception):
    """Raw audio bytes could not be turned into a playable buffer."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"could not decode '{name or '<unnamed>'}': {reason}")
        self.name = name
        self.reason = reason


@dataclass(frozen=True, eq=False)
class DecodedBuffer:
    samples: np.ndarray      # float32, frames x channels, engine rate
    sample_rate: int
    name: str = ""

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration_sec(self) -> float:
        return self.frames / float(self.sample_rate)


def _match_channels(audio: np.ndarray, channels: int) -> np.ndarray:
    have = audio.shape[1]
    if have == channels:
        return audio
    if have == 1:
        return np.repeat(audio, channels, axis=1)
    if channels == 1:
        return audio.mean(axis=1, keepdims=True)
    if have > channels:
        return audio[:, :channels]
    pad = np.repeat(audio[:, -1:], channels - have, axis=1)
    return np.concatenate([audio, pad], axis=1)


def decode_audio(data: bytes, *, sample_rate: int, channels: int, name: str = "") -> DecodedBuffer:
    """
    Decode WAV/MP3/... bytes (anything libsndfile reads) into a DecodedBuffer
    at `sample_rate` with `channels` channels. Raises DecodeFailure.
    """
    if not data:
        raise DecodeFailure(name, "empty payload")
    try:
        audio, sr = sf.read(io.BytesIO(bytes(data)), dtype="float32", always_2d=True)
    except (sf.SoundFileError, RuntimeError, TypeError, ValueError) as e:
        raise DecodeFailure(name, str(e)) from e
    if audio.size == 0:
        raise DecodeFailure(name, "no audio frames")

    audio = np.nan_to_num(audio, nan=0.0, posinf=0.0, neginf=0.0)
    audio = _match_channels(audio, channels)
    if sr != sample_rate:
        g = gcd(int(sr), int(sample_rate))
        audio = resample_poly(audio, sample_rate // g, sr // g, axis=0)
    audio = np.clip(audio, -1.0, 1.0).astype(np.float32)
    return DecodedBuffer(samples=np.ascontiguousarray(audio), sample_rate=sample_rate, name=name)


class AudioEngine:
    """
    Looping playback over a single, lazily-created AudioOutput.

    The output is opened on the first play/suspend/resume and lives until
    `close()`, which runs exactly once. `play()` always stops the previous
    voice first, so at most one buffer is ever audible.
    """

    def __init__(
        self,
        *,
        sample_rate: int = 44100,
        channels: int = 2,
        output: str = "sounddevice",
        output_options: Optional[Dict[str, Any]] = None,
        executor=None,
    ) -> None:
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self._output_name = output
        self._output_options = dict(output_options or {})
        self._executor = executor
        self._output: Optional[AudioOutput] = None
        self._loaded: Optional[DecodedBuffer] = None
        self._current: Optional[DecodedBuffer] = None
        self._closed = False
        self._lock = threading.RLock()

    # ---------- state ----------
    @property
    def output(self) -> Optional[AudioOutput]:
        return self._output

    @property
    def loaded(self) -> Optional[DecodedBuffer]:
        """Last buffer successfully produced by `load()`."""
        return self._loaded

    @property
    def current(self) -> Optional[DecodedBuffer]:
        """Buffer of the active voice, if any."""
        return self._current if self.playback_state is PlaybackState.PLAYING else None

    @property
    def playback_state(self) -> PlaybackState:
        if self._output is not None and self._output.voice is not None:
            return PlaybackState.PLAYING
        return PlaybackState.STOPPED

    @property
    def suspended(self) -> bool:
        return self._output is not None and self._output.suspended

    @property
    def closed(self) -> bool:
        return self._closed

    # ---------- resource ----------
    def _ensure_output(self) -> AudioOutput:
        with self._lock:
            if self._closed:
                raise RuntimeError("audio engine is closed")
            if self._output is None:
                out = create_output(
                    self._output_name,
                    sample_rate=self.sample_rate,
                    channels=self.channels,
                    **self._output_options,
                )
                try:
                    out.open()
                except Exception:
                    out.close()
                    raise
                self._output = out
                log.debug("audio output '%s' opened", self._output_name)
            return self._output

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.stop()
            out, self._output = self._output, None
            self._loaded = None
            if out is not None:
                out.close()
                log.debug("audio output '%s' closed", self._output_name)

    def __enter__(self) -> "AudioEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---------- decode ----------
    async def load(self, source) -> DecodedBuffer:
        """
        Decode `source.data` off the event loop. `source` is anything with
        `data` (bytes) and `display_name`. Raises DecodeFailure; on failure no
        engine state changes.
        """
        if self._closed:
            raise RuntimeError("audio engine is closed")
        name = getattr(source, "display_name", "")
        loop = asyncio.get_running_loop()
        buf = await loop.run_in_executor(
            self._executor,
            functools.partial(
                decode_audio, source.data,
                sample_rate=self.sample_rate, channels=self.channels, name=name,
            ),
        )
        if self._closed:
            raise RuntimeError("audio engine closed during decode")
        self._loaded = buf
        log.debug("decoded '%s': %d frames (%.1fs)", name, buf.frames, buf.duration_sec)
        return buf

    # ---------- transport ----------
    def play(self, buffer: DecodedBuffer) -> None:
        with self._lock:
            self.stop()
            out = self._ensure_output()
            out.start_voice(Voice(buffer.samples, buffer.name))
            self._current = buffer
            log.info("playing '%s' (loop, %.1fs)", buffer.name, buffer.duration_sec)

    def stop(self) -> None:
        with self._lock:
            if self._output is None:
                return
            try:
                voice = self._output.stop_voice()
            except Exception as e:
                log.debug("ignoring error while stopping: %s", e)
                return
            self._current = None
            if voice is not None:
                log.info("stopped '%s'", voice.name)

    def suspend(self) -> None:
        with self._lock:
            self._ensure_output().suspend()

    def resume(self) -> None:
        with self._lock:
            self._ensure_output().resume()
