# calmloop/cli.py
import argparse
import asyncio
import logging
import shlex
import sys
from pathlib import Path

# --- ensure project root on sys.path (so `python calmloop/cli.py` works from a checkout) ---
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
# --------------------------------------------------------------------------------------

from calmloop.config import load_config, LOG_LEVELS
from calmloop.audio.output import available_outputs, list_output_devices
from calmloop.control.orchestrator import Orchestrator

HELP = """\
Commands:
  hr <bpm>              new heart-rate sample (slider)
  threshold <bpm>       change the stress threshold
  toggle | on | off     manual noise-cancellation switch
  play | pause | stop   playback buttons
  source white|custom   choose the calming audio source
  upload <path>         load a .mp3/.wav file as custom audio
  ack                   close the stress alert
  status                show the dashboard read-out
  sleep <sec>           wait (useful in --script files)
  help | quit"""


# --------- CLI ---------
def build_parser():
    p = argparse.ArgumentParser(
        prog="calmloop",
        description="Heart-rate stress monitor with looping calming audio (white noise or your own file)."
    )
    p.add_argument("--config", default="configs/defaults.yaml", help="Path to defaults.yaml.")
    p.add_argument("--threshold", type=float, help="Stress threshold in BPM (default 95).")
    p.add_argument("--initial-bpm", type=float, help="Heart rate shown before the first sample.")
    p.add_argument("--output", choices=available_outputs(), help="Audio output backend.")
    p.add_argument("--device", help="sounddevice output device (name or index).")
    p.add_argument("--sample-rate", type=int, help="Output sample rate.")
    p.add_argument("--subject", help="Name shown in the stress alert.")
    p.add_argument("--script", help="Run commands from a file instead of the prompt.")
    p.add_argument("--list-devices", action="store_true", help="List audio output devices and exit.")
    p.add_argument("--log-level", choices=LOG_LEVELS, help="Logging level.")
    return p


def _overrides(args):
    device = args.device
    if device is not None and device.isdigit():
        device = int(device)
    return {
        "stress": {"threshold_bpm": args.threshold, "initial_bpm": args.initial_bpm},
        "audio": {"output": args.output, "device": device, "sample_rate": args.sample_rate},
        "subject": {"name": args.subject},
        "logging": {"level": args.log_level},
    }


def format_status(orch: Orchestrator) -> str:
    s = orch.status()
    hr = f"{s.heart_rate:.0f}" if s.heart_rate is not None else "-"
    playback = s.playback.value + (" (paused)" if s.suspended else "")
    return "\n".join([
        "=== Dashboard ===",
        f"Heart rate       : {hr} BPM   threshold={s.threshold:.0f}",
        f"State            : {s.stress.value.capitalize()}",
        f"Alert            : {s.notification.value}",
        f"Noise cancelling : {'On' if s.enabled else 'Off'}   playback={playback}",
        f"Audio source     : {s.source}",
        f"Currently playing: {s.now_playing}",
    ])


def _alert_banner(message: str) -> None:
    print("\n!!! Sensory Overload Alert !!!")
    print(f"    {message}")
    print("    (type 'ack' to close the alert)\n")


async def run_command(orch: Orchestrator, cfg, line: str) -> bool:
    """Execute one dashboard command. Returns False when the session should end."""
    parts = shlex.split(line, comments=True)
    if not parts:
        return True
    cmd, rest = parts[0].lower(), parts[1:]

    if orch.alert.inert and cmd not in ("ack", "status", "help", "quit", "exit", "hr", "bpm", "sleep"):
        # the rest of the dashboard is inert until the alert is acknowledged
        print("[WARN] Alert is open; type 'ack' first.")
        return True

    if cmd in ("quit", "exit"):
        return False
    if cmd == "help":
        print(HELP)
    elif cmd in ("hr", "bpm"):
        orch.update_vital(float(_arg(rest, "hr <bpm>")))
    elif cmd == "threshold":
        orch.set_threshold(float(_arg(rest, "threshold <bpm>")))
    elif cmd == "toggle":
        orch.toggle()
    elif cmd == "on":
        orch.set_enabled(True)
    elif cmd == "off":
        orch.set_enabled(False)
    elif cmd == "play":
        orch.play()
    elif cmd == "pause":
        orch.pause()
    elif cmd == "stop":
        orch.stop()
    elif cmd == "source":
        orch.select(_arg(rest, "source white|custom"))
    elif cmd == "upload":
        path = Path(_arg(rest, "upload <path>"))
        if not cfg.uploads.accepts(path.name):
            raise ValueError(f"Only {', '.join(cfg.uploads.allowed_extensions)} files are accepted (got {path.name}).")
        if path.stat().st_size > cfg.uploads.max_bytes:
            raise ValueError(f"{path.name} is larger than {cfg.uploads.max_bytes} bytes.")
        await orch.upload(path.name, path.read_bytes())
    elif cmd == "ack":
        orch.acknowledge()
    elif cmd == "status":
        print(format_status(orch))
    elif cmd == "sleep":
        await asyncio.sleep(float(_arg(rest, "sleep <sec>")))
    else:
        print(f"[ERROR] Unknown command '{cmd}'. Type 'help'.")
    return True


def _arg(rest, usage):
    if not rest:
        raise ValueError(f"usage: {usage}")
    return rest[0]


async def _lines_from_prompt():
    loop = asyncio.get_running_loop()
    while True:
        try:
            yield await loop.run_in_executor(None, input, "calmloop> ")
        except EOFError:
            return


async def _lines_from_file(path: Path):
    for line in path.read_text(encoding="utf-8").splitlines():
        print(f"calmloop> {line}")
        yield line


async def run_session(cfg, script=None) -> None:
    orch = Orchestrator.from_config(cfg)
    orch.alert.on_show(_alert_banner)
    async with orch:
        orch.update_vital(cfg.initial_bpm)
        print(format_status(orch))
        lines = _lines_from_file(Path(script)) if script else _lines_from_prompt()
        async for line in lines:
            try:
                if not await run_command(orch, cfg, line):
                    break
            except Exception as e:
                print(f"[ERROR] {e}")


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.list_devices:
        try:
            rows = list_output_devices()
        except Exception as e:
            print(f"[ERROR] Could not query audio devices: {e}")
            sys.exit(2)
        print("Output devices:")
        for ln in rows:
            print(" ", ln)
        sys.exit(0)

    try:
        cfg = load_config(args.config, _overrides(args))
    except (ValueError, KeyError) as e:
        print(f"[ERROR] Invalid configuration: {e}")
        sys.exit(2)

    logging.basicConfig(level=cfg.log_level, format="[%(levelname)s] %(message)s")

    if args.script and not Path(args.script).exists():
        print(f"[ERROR] Script not found: {args.script}")
        sys.exit(2)

    try:
        asyncio.run(run_session(cfg, args.script))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"[ERROR] Session failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
