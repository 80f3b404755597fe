from __future__ import annotations
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Type, Optional, List

import numpy as np

log = logging.getLogger(__name__)


class Voice:
    """Playback handle: one buffer looping from frame zero."""

    def __init__(self, samples: np.ndarray, name: str = "") -> None:
        if samples.ndim != 2 or len(samples) == 0:
            raise ValueError("voice needs a non-empty frames x channels buffer")
        self.samples = samples
        self.name = name
        self.position = 0
        self.stopped = False

    def read(self, frames: int) -> np.ndarray:
        out = np.empty((frames, self.samples.shape[1]), dtype=np.float32)
        n = len(self.samples)
        filled = 0
        while filled < frames:
            take = min(frames - filled, n - self.position)
            out[filled:filled + take] = self.samples[self.position:self.position + take]
            filled += take
            self.position = (self.position + take) % n
        return out


class AudioOutput(ABC):
    """
    Unified interface for the native output resource. One output, at most one
    voice. Resource operations serialize on `_lock`; the voice slot has its own
    `_voice_lock`, which is all the backend's render thread ever takes, so a
    native stop that waits on the callback cannot deadlock.
    """

    def __init__(self, *, sample_rate: int, channels: int, **kwargs) -> None:
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self._kwargs = kwargs
        self._lock = threading.RLock()
        self._voice_lock = threading.Lock()
        self._voice: Optional[Voice] = None
        self._opened = False
        self._closed = False
        self._suspended = False

    # ---------- backend hooks ----------
    @abstractmethod
    def _open_native(self) -> None:
        """Acquire and start the native stream."""
        ...

    @abstractmethod
    def _suspend_native(self) -> None:
        ...

    @abstractmethod
    def _resume_native(self) -> None:
        ...

    @abstractmethod
    def _close_native(self) -> None:
        """Release the native stream. Must tolerate a half-opened state."""
        ...

    # ---------- public API ----------
    @property
    def opened(self) -> bool:
        return self._opened and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def voice(self) -> Optional[Voice]:
        return self._voice

    def open(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("audio output is closed")
            if self._opened:
                return
            self._open_native()
            self._opened = True

    def start_voice(self, voice: Voice) -> None:
        with self._lock:
            if not self.opened:
                raise RuntimeError("audio output is not open")
            with self._voice_lock:
                if self._voice is not None:
                    raise RuntimeError("a voice is already active; stop it first")
                self._voice = voice

    def stop_voice(self) -> Optional[Voice]:
        with self._lock, self._voice_lock:
            voice, self._voice = self._voice, None
            if voice is not None:
                voice.stopped = True
            return voice

    def suspend(self) -> None:
        with self._lock:
            if not self.opened or self._suspended:
                return
            self._suspend_native()
            self._suspended = True

    def resume(self) -> None:
        with self._lock:
            if not self.opened or not self._suspended:
                return
            self._resume_native()
            self._suspended = False

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.stop_voice()
            try:
                self._close_native()
            except Exception as e:
                log.warning("closing audio output failed: %s", e)

    def render(self, frames: int) -> np.ndarray:
        """Next `frames` frames of output; silence when no voice is active."""
        with self._voice_lock:
            if self._voice is None:
                return np.zeros((frames, self.channels), dtype=np.float32)
            return self._voice.read(frames)


_OUTPUT_REGISTRY: Dict[str, Type[AudioOutput]] = {}

def register_output(name: str):
    """Decorator to register a concrete AudioOutput under a config/CLI name."""
    def deco(cls: Type[AudioOutput]) -> Type[AudioOutput]:
        _OUTPUT_REGISTRY[name.lower()] = cls
        return cls
    return deco

def create_output(name: str, **kwargs) -> AudioOutput:
    key = (name or "").lower()
    if key not in _OUTPUT_REGISTRY:
        raise ValueError(f"Unknown audio output '{name}'. Available: {sorted(_OUTPUT_REGISTRY.keys())}")
    return _OUTPUT_REGISTRY[key](**kwargs)

def available_outputs() -> List[str]:
    return sorted(_OUTPUT_REGISTRY.keys())


@register_output("null")
class NullOutput(AudioOutput):
    """Silent output; `render()` can be pulled by hand to advance playback."""

    def _open_native(self) -> None:
        pass

    def _suspend_native(self) -> None:
        pass

    def _resume_native(self) -> None:
        pass

    def _close_native(self) -> None:
        pass


@register_output("sounddevice")
class SoundDeviceOutput(AudioOutput):
    """PortAudio stream via sounddevice; the callback pulls from `render()`."""

    def __init__(self, *, sample_rate: int, channels: int, device=None, blocksize: int = 1024, **kwargs) -> None:
        super().__init__(sample_rate=sample_rate, channels=channels, **kwargs)
        self.device = device
        self.blocksize = int(blocksize)
        self._stream = None

    def _callback(self, outdata, frames, time_info, status):
        if status:
            log.warning("audio callback status: %s", status)
        outdata[:] = self.render(frames)

    def _open_native(self) -> None:
        import sounddevice as sd  # requires PortAudio
        self._stream = sd.OutputStream(
            samplerate=self.sample_rate,
            channels=self.channels,
            dtype="float32",
            blocksize=self.blocksize,
            device=self.device,
            callback=self._callback,
        )
        self._stream.start()
        log.debug("sounddevice stream started (device=%s, sr=%d)", self.device, self.sample_rate)

    def _suspend_native(self) -> None:
        self._stream.stop()

    def _resume_native(self) -> None:
        self._stream.start()

    def _close_native(self) -> None:
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        stream.close(ignore_errors=True)


def list_output_devices() -> List[str]:
    """Human-readable PortAudio output devices, index first (for `audio.device`)."""
    import sounddevice as sd  # requires PortAudio
    rows = []
    for i, d in enumerate(sd.query_devices()):
        if d["max_output_channels"] > 0:
            rows.append(f"[{i}] {d['name']} ({d['max_output_channels']} ch, {d['default_samplerate']:.0f} Hz)")
    return rows
