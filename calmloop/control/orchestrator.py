from __future__ import annotations
import asyncio
import dataclasses
import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional, Set

from calmloop.audio.engine import AudioEngine, DecodeFailure, DecodedBuffer, PlaybackState
from calmloop.audio.noise import white_noise_payload
from calmloop.control.alert import AlertPresenter, NotificationState
from calmloop.control.source import AudioSource, AudioSourceSelector, WhiteNoise
from calmloop.control.stress import Edge, StressEvaluator, StressState

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Status:
    heart_rate: Optional[float]
    threshold: float
    stress: StressState
    notification: NotificationState
    enabled: bool
    playback: PlaybackState
    suspended: bool
    source: str
    now_playing: str


class Orchestrator:
    """
    Vital samples in, alert + calming audio out.

    `enabled` is the one switch for whether audio should be playing. Stress
    edges and the manual controls both go through `set_enabled()`; whichever
    writes last wins.
    """

    def __init__(
        self,
        engine: AudioEngine,
        selector: AudioSourceSelector,
        *,
        evaluator: StressEvaluator | None = None,
        alert: AlertPresenter | None = None,
    ) -> None:
        self.engine = engine
        self.selector = selector
        self.evaluator = evaluator or StressEvaluator()
        self.alert = alert or AlertPresenter()
        self.enabled = False
        self._tasks: Set[asyncio.Task] = set()
        # sources with a decode in flight -> generation that decode answers to
        self._decoding: Dict[AudioSource, int] = {}

    @classmethod
    def from_config(cls, cfg) -> "Orchestrator":
        """Build the full loop from an `AppConfig`."""
        engine = AudioEngine(
            sample_rate=cfg.audio.sample_rate,
            channels=cfg.audio.channels,
            output=cfg.audio.output,
            output_options=cfg.audio.output_options(),
        )
        selector = AudioSourceSelector(WhiteNoise(data=white_noise_payload(cfg.white_noise)))
        return cls(
            engine,
            selector,
            evaluator=StressEvaluator(dataclasses.replace(cfg.rules)),
            alert=AlertPresenter(subject=cfg.subject),
        )

    # ---------- lifecycle ----------
    async def start(self) -> None:
        """Decode the built-in white noise once, up front."""
        await self._decode(self.selector.white_noise, self.selector.generation)

    async def aclose(self) -> None:
        try:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            self.engine.close()
            self.selector.release_buffers()

    async def __aenter__(self) -> "Orchestrator":
        try:
            await self.start()
        except BaseException:
            await self.aclose()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ---------- vitals ----------
    def update_vital(self, sample: float) -> StressState:
        state, edge = self.evaluator.update(sample)
        if edge is Edge.STRESSED:
            log.info("stressed: %.0f bpm >= %.0f", self.evaluator.last_sample, self.evaluator.rules.threshold_bpm)
            self.alert.show()
            self.set_enabled(True)
        elif edge is Edge.CALMED:
            log.info("calm again: %.0f bpm", self.evaluator.last_sample)
            self.alert.reset_episode()
            self.set_enabled(False)
        return state

    def set_threshold(self, threshold: float) -> StressState:
        value = float(threshold)
        if not math.isfinite(value):
            raise ValueError(f"threshold must be a finite BPM value (got {threshold!r})")
        self.evaluator.rules.threshold_bpm = value
        if self.evaluator.last_sample is None:
            return self.evaluator.state
        return self.update_vital(self.evaluator.last_sample)

    # ---------- engine switch ----------
    def set_enabled(self, flag: bool) -> None:
        self.enabled = bool(flag)
        if not self.enabled:
            self.engine.stop()
            return
        source = self.selector.current
        if source.buffer is not None:
            self.engine.play(source.buffer)
        elif source.error is not None:
            log.warning("'%s' is not playable (%s); choose another source", source.display_name, source.error)
        else:
            log.debug("'%s' still decoding; playback starts when it is ready", source.display_name)

    def toggle(self) -> bool:
        self.set_enabled(not self.enabled)
        return self.enabled

    def play(self) -> None:
        """Dashboard Play button: wake a paused output, then enable."""
        if self.engine.suspended:
            self.engine.resume()
        self.set_enabled(True)

    def pause(self) -> None:
        """Dashboard Pause button: suspend the output; `enabled` is untouched."""
        self.engine.suspend()

    def stop(self) -> None:
        self.set_enabled(False)

    # ---------- sources ----------
    def select_white_noise(self) -> None:
        self._activate(self.selector.select_white_noise())

    def select_custom(self) -> None:
        self._activate(self.selector.select_custom())

    def select(self, kind: str) -> None:
        self._activate(self.selector.select(kind))

    async def upload(self, name: str, data: bytes) -> Optional[DecodedBuffer]:
        """Select a new custom file and decode it; plays it if still wanted."""
        gen = self.selector.upload(name, data)
        # the previous source keeps sounding until this one is playable
        return await self._decode(self.selector.current, gen)

    def _activate(self, gen: int) -> None:
        source = self.selector.current
        if source.buffer is not None:
            if self.enabled:
                self.engine.play(source.buffer)
            return
        if source.error is not None:
            # known unplayable; the old source must not keep sounding under its name
            self.engine.stop()
            return
        if source in self._decoding:
            self._decoding[source] = gen
            log.debug("'%s' already decoding; waiting for it", source.display_name)
            return
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._decode(source, gen))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _decode(self, source: AudioSource, gen: int) -> Optional[DecodedBuffer]:
        self._decoding[source] = gen
        try:
            buf = await self.engine.load(source)
        except DecodeFailure as e:
            source.error = e.reason
            log.warning("%s", e)
            return None
        finally:
            gen = self._decoding.pop(source, gen)
        source.buffer = buf
        if not self.selector.is_current(gen):
            log.info("selection changed while decoding '%s'; not playing it", source.display_name)
            return buf
        if self.enabled:
            self.engine.play(buf)
        return buf

    # ---------- alert ----------
    def acknowledge(self) -> bool:
        return self.alert.acknowledge()

    # ---------- read-out ----------
    def status(self) -> Status:
        source = self.selector.current.display_name
        return Status(
            heart_rate=self.evaluator.last_sample,
            threshold=self.evaluator.rules.threshold_bpm,
            stress=self.evaluator.state,
            notification=self.alert.state,
            enabled=self.enabled,
            playback=self.engine.playback_state,
            suspended=self.engine.suspended,
            source=source,
            now_playing=source if self.enabled else "None",
        )
