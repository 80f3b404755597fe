import asyncio
import math

import pytest

from calmloop.audio.engine import PlaybackState
from calmloop.control.alert import NotificationState
from calmloop.control.orchestrator import Orchestrator
from calmloop.control.stress import StressState


def _run(cfg, scenario):
    async def main():
        async with Orchestrator.from_config(cfg) as orch:
            return await scenario(orch)
    return asyncio.run(main())


def _spy_play(orch, monkeypatch):
    calls = []
    real = orch.engine.play

    def play(buf):
        calls.append(buf.name)
        real(buf)

    monkeypatch.setattr(orch.engine, "play", play)
    return calls


def test_stress_episodes_drive_alert_and_audio(cfg):
    async def scenario(orch):
        shows = []
        orch.alert.on_show(shows.append)

        assert orch.update_vital(75) is StressState.CALM
        assert orch.enabled is False
        assert orch.engine.playback_state is PlaybackState.STOPPED

        assert orch.update_vital(96) is StressState.STRESSED
        assert len(shows) == 1
        assert orch.enabled is True
        assert orch.engine.current is orch.selector.white_noise.buffer

        orch.update_vital(99)
        assert len(shows) == 1

        assert orch.update_vital(90) is StressState.CALM
        assert orch.enabled is False
        assert orch.engine.playback_state is PlaybackState.STOPPED
        assert orch.alert.shown_this_episode is False

        orch.acknowledge()
        orch.update_vital(96)
        assert len(shows) == 2
        assert orch.alert.state is NotificationState.SHOWN

    _run(cfg, scenario)


def test_white_noise_is_decoded_once(cfg):
    async def scenario(orch):
        buf = orch.selector.white_noise.buffer
        assert buf is not None
        orch.update_vital(100)
        await orch.upload("calm.wav", b"junk")
        orch.select_white_noise()
        assert orch.selector.white_noise.buffer is buf
        assert orch.engine.current is buf

    _run(cfg, scenario)


def test_acknowledge_keeps_audio_playing(cfg):
    async def scenario(orch):
        orch.update_vital(120)
        assert orch.acknowledge() is True
        assert orch.alert.state is NotificationState.HIDDEN
        assert orch.enabled is True
        assert orch.evaluator.state is StressState.STRESSED
        assert orch.engine.playback_state is PlaybackState.PLAYING

    _run(cfg, scenario)


def test_manual_switch_and_automatic_edges_share_one_flag(cfg):
    async def scenario(orch):
        orch.update_vital(100)
        assert orch.toggle() is False
        assert orch.engine.playback_state is PlaybackState.STOPPED

        # still stressed, no new edge: stays silenced
        orch.update_vital(110)
        assert orch.enabled is False

        # re-crossing the threshold re-enables it
        orch.update_vital(80)
        orch.update_vital(100)
        assert orch.enabled is True
        assert orch.engine.playback_state is PlaybackState.PLAYING

        # manual on while calm wins until the next edge
        orch.update_vital(80)
        orch.set_enabled(True)
        assert orch.engine.playback_state is PlaybackState.PLAYING

    _run(cfg, scenario)


def test_upload_while_disabled_does_not_play(cfg, wav_bytes):
    async def scenario(orch):
        orch.update_vital(75)
        buf = await orch.upload("calm.wav", wav_bytes())
        assert buf is not None
        assert orch.selector.current.display_name == "calm.wav"
        assert orch.selector.custom.buffer is buf
        assert orch.engine.playback_state is PlaybackState.STOPPED

        orch.set_enabled(True)
        assert orch.engine.current is buf
        assert orch.status().now_playing == "calm.wav"

    _run(cfg, scenario)


def test_upload_while_playing_switches_exclusively(cfg, wav_bytes, monkeypatch):
    async def scenario(orch):
        orch.update_vital(100)
        assert orch.engine.current.name == "White Noise"
        calls = _spy_play(orch, monkeypatch)

        await orch.upload("calm.wav", wav_bytes())
        assert calls == ["calm.wav"]
        assert orch.engine.current.name == "calm.wav"
        assert orch.engine.output.voice.name == "calm.wav"

    _run(cfg, scenario)


def test_stale_decode_is_not_played(cfg, wav_bytes, monkeypatch):
    async def scenario(orch):
        orch.update_vital(100)
        calls = _spy_play(orch, monkeypatch)

        pending = asyncio.ensure_future(orch.upload("late.wav", wav_bytes()))
        await asyncio.sleep(0)
        orch.select_white_noise()
        buf = await pending

        assert buf is not None
        assert calls == ["White Noise"]
        assert orch.engine.current.name == "White Noise"

    _run(cfg, scenario)


def test_decode_after_disable_stays_silent(cfg, wav_bytes):
    async def scenario(orch):
        orch.update_vital(100)
        pending = asyncio.ensure_future(orch.upload("late.wav", wav_bytes()))
        await asyncio.sleep(0)
        orch.update_vital(80)
        await pending
        assert orch.enabled is False
        assert orch.engine.playback_state is PlaybackState.STOPPED

    _run(cfg, scenario)


def test_bad_upload_is_non_fatal(cfg):
    async def scenario(orch):
        orch.update_vital(100)
        assert await orch.upload("broken.mp3", b"\x00\x01\x02") is None
        assert orch.selector.custom.error
        # the previous source keeps playing
        assert orch.engine.playback_state is PlaybackState.PLAYING
        assert orch.engine.current.name == "White Noise"
        assert orch.enabled is True
        # alert is reserved for stress
        assert orch.alert.state is NotificationState.SHOWN
        orch.acknowledge()
        orch.set_enabled(True)
        assert orch.alert.state is NotificationState.HIDDEN
        assert orch.engine.current.name == "White Noise"

        orch.select_white_noise()
        assert orch.engine.current.name == "White Noise"

        # re-selecting the known-bad file silences the old source
        orch.select_custom()
        assert orch.engine.playback_state is PlaybackState.STOPPED
        assert orch.enabled is True

    _run(cfg, scenario)


def test_reselecting_custom_reuses_its_buffer(cfg, wav_bytes, monkeypatch):
    async def scenario(orch):
        buf = await orch.upload("calm.wav", wav_bytes())
        orch.select_white_noise()
        orch.update_vital(100)
        calls = _spy_play(orch, monkeypatch)
        orch.select("custom-audio")
        assert calls == ["calm.wav"]
        assert orch.engine.current is buf

    _run(cfg, scenario)


def test_threshold_change_reevaluates(cfg):
    async def scenario(orch):
        orch.update_vital(90)
        assert orch.set_threshold(85) is StressState.STRESSED
        assert orch.enabled is True
        assert orch.set_threshold(95) is StressState.CALM
        assert orch.enabled is False

    _run(cfg, scenario)


def test_playback_buttons(cfg):
    async def scenario(orch):
        orch.play()
        assert orch.enabled and orch.engine.playback_state is PlaybackState.PLAYING
        orch.pause()
        assert orch.engine.suspended and orch.enabled
        assert orch.status().suspended
        orch.play()
        assert not orch.engine.suspended
        orch.stop()
        assert orch.enabled is False
        assert orch.status().now_playing == "None"

    _run(cfg, scenario)


def test_status_snapshot(cfg):
    async def scenario(orch):
        orch.update_vital(97)
        return orch.status()

    s = _run(cfg, scenario)
    assert s.heart_rate == 97.0
    assert s.threshold == 95.0
    assert s.stress is StressState.STRESSED
    assert s.notification is NotificationState.SHOWN
    assert s.enabled is True
    assert s.playback is PlaybackState.PLAYING
    assert s.source == s.now_playing == "White Noise"


def test_close_releases_everything(cfg):
    async def main():
        orch = Orchestrator.from_config(cfg)
        async with orch:
            orch.update_vital(100)
            out = orch.engine.output
        return orch, out

    orch, out = asyncio.run(main())
    assert out.closed
    assert orch.engine.closed
    assert orch.selector.white_noise.buffer is None


def test_reselecting_during_decode_reuses_it(cfg, wav_bytes, monkeypatch):
    async def scenario(orch):
        orch.update_vital(100)
        loads = []
        real = orch.engine.load

        async def load(source):
            loads.append(source.display_name)
            return await real(source)

        monkeypatch.setattr(orch.engine, "load", load)

        pending = asyncio.ensure_future(orch.upload("calm.wav", wav_bytes()))
        await asyncio.sleep(0)
        orch.select_white_noise()
        orch.select_custom()
        buf = await pending

        assert loads == ["calm.wav"]
        assert orch.engine.current is buf
        assert orch.engine.current.name == "calm.wav"

    _run(cfg, scenario)


@pytest.mark.parametrize("bad", [math.nan, math.inf, -math.inf])
def test_non_finite_threshold_rejected(cfg, bad):
    async def scenario(orch):
        with pytest.raises(ValueError):
            orch.set_threshold(bad)
        assert orch.evaluator.rules.threshold_bpm == 95.0
        assert orch.update_vital(150) is StressState.STRESSED

    _run(cfg, scenario)


def test_threshold_change_leaves_config_alone(cfg):
    async def scenario(orch):
        orch.set_threshold(120)
        assert orch.status().threshold == 120.0

    _run(cfg, scenario)
    assert cfg.rules.threshold_bpm == 95.0

    async def fresh(orch):
        return orch.status().threshold

    assert _run(cfg, fresh) == 95.0
