from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from calmloop.audio.engine import DecodedBuffer

log = logging.getLogger(__name__)

WHITE_NOISE = "white-noise"
CUSTOM_AUDIO = "custom-audio"


@dataclass(eq=False)
class WhiteNoise:
    """Built-in procedural clip; decoded once, then served from `buffer`."""
    data: bytes = field(repr=False)
    buffer: Optional[DecodedBuffer] = field(default=None, repr=False)
    error: Optional[str] = None
    kind: str = WHITE_NOISE

    @property
    def display_name(self) -> str:
        return "White Noise"


@dataclass(eq=False)
class CustomFile:
    """User-supplied asset; the raw bytes stay around so it can be re-selected."""
    name: str
    data: bytes = field(repr=False)
    buffer: Optional[DecodedBuffer] = field(default=None, repr=False)
    error: Optional[str] = None
    kind: str = CUSTOM_AUDIO

    @property
    def display_name(self) -> str:
        return self.name or "Custom Audio"


AudioSource = Union[WhiteNoise, CustomFile]


class AudioSourceSelector:
    """
    Which source is selected, plus a generation counter. Every selection bumps
    `generation`; a decode started under an older generation is stale and
    must not start playback.
    """

    def __init__(self, white_noise: WhiteNoise) -> None:
        self.white_noise = white_noise
        self.custom: Optional[CustomFile] = None
        self.current: AudioSource = white_noise
        self.generation = 0

    def _select(self, source: AudioSource) -> int:
        self.current = source
        self.generation += 1
        log.debug("source -> %s (generation %d)", source.display_name, self.generation)
        return self.generation

    def is_current(self, generation: int) -> bool:
        return generation == self.generation

    def select_white_noise(self) -> int:
        return self._select(self.white_noise)

    def select_custom(self) -> int:
        if self.custom is None:
            raise LookupError("no custom audio has been uploaded")
        return self._select(self.custom)

    def select(self, kind: str) -> int:
        key = (kind or "").strip().lower()
        if key in (WHITE_NOISE, "white", "noise"):
            return self.select_white_noise()
        if key in (CUSTOM_AUDIO, "custom", "file"):
            return self.select_custom()
        raise ValueError(f"Unknown audio source '{kind}'. Use '{WHITE_NOISE}' or '{CUSTOM_AUDIO}'.")

    def upload(self, name: str, data: bytes) -> int:
        """Replace the custom file (dropping its old buffer) and select it."""
        self.custom = CustomFile(name=name, data=bytes(data))
        return self._select(self.custom)

    def release_buffers(self) -> None:
        self.white_noise.buffer = None
        if self.custom is not None:
            self.custom.buffer = None
