"""
Command Line Interface for Tap2Music
====================================

Runs the engine outside the browser/MIDI front end: check a checkpoint
against its reference trace, replay a recorded list of taps, or write a
development checkpoint.

Usage Examples:
    # Write a (randomly initialised) checkpoint + reference trace
    tap2music export --kind hand --out model/hand

    # Compare the forward pass with the recorded trace
    tap2music selftest --engine hand --checkpoint model/hand --trace model/hand/test.json

    # Replay taps and print the predicted pitches
    tap2music play events.json --config settings.yaml --seed 7
    tap2music play events.json --engine dummy --json

    # Show help
    tap2music --help

An events file is a JSON list such as:
    [{"type": "on", "time": 0, "pitch": 60, "velocity": 80},
     {"type": "off", "time": 240},
     {"type": "on", "time": 500, "pitch": 64}]
"""

import argparse
import json
import logging
import sys
from typing import Dict, List, Optional

from pydantic import ValidationError

from tap2music.app.engine import NoteContext, create_engine, engine_from_settings
from tap2music.data.loader import load_events, load_settings
from tap2music.data.schema import VALID_ENGINES, VALID_STRATEGIES, EngineSettings
from tap2music.errors import Tap2MusicError
from tap2music.models.reference import REFERENCE_CONFIG, REFERENCE_MODULES, export_reference


NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]


# =============================================================================
# PART 1: ARGUMENT PARSER SETUP
# =============================================================================

def _add_engine_options(parser: argparse.ArgumentParser) -> None:
    """Options shared by the commands that build an engine."""
    parser.add_argument(
        "-c", "--config",
        type=str,
        help="YAML settings file (command-line options override it)"
    )
    parser.add_argument(
        "--engine",
        choices=VALID_ENGINES,
        help="Engine kind"
    )
    parser.add_argument(
        "--checkpoint",
        type=str,
        help="Checkpoint directory or weights_manifest.json"
    )
    parser.add_argument(
        "--trace",
        type=str,
        help="Reference trace JSON for the self-test"
    )


def create_argument_parser() -> argparse.ArgumentParser:
    """
    Create and configure the command-line argument parser.

    Returns:
        Configured ArgumentParser object
    """
    parser = argparse.ArgumentParser(
        prog="tap2music",
        description="Tap2Music - turn tap timing into piano pitches with an LSTM.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show debug logging (per-step latency, load details)"
    )

    subparsers = parser.add_subparsers(dest="command")

    # ─────────────────────────────────────────────────────────────────────────
    # selftest
    # ─────────────────────────────────────────────────────────────────────────
    selftest = subparsers.add_parser("selftest", help="Check a checkpoint against its reference trace")
    _add_engine_options(selftest)

    # ─────────────────────────────────────────────────────────────────────────
    # play
    # ─────────────────────────────────────────────────────────────────────────
    play = subparsers.add_parser("play", help="Replay recorded note events through an engine")
    play.add_argument("events", type=str, help="JSON file with note-on/note-off events")
    _add_engine_options(play)
    play.add_argument("--seed", type=int, help="Sampler seed (reproducible output)")
    play.add_argument("--strategy", choices=VALID_STRATEGIES, help="Sampling strategy")
    play.add_argument("-t", "--temperature", type=float, help="Softmax temperature (> 0)")
    play.add_argument("--top-p", type=float, dest="top_p", help="Nucleus threshold in (0, 1]")
    play.add_argument(
        "--no-self-test",
        action="store_true",
        help="Skip the self-test before loading"
    )
    play.add_argument(
        "--json",
        action="store_true",
        help="Output result as JSON (useful for scripting)"
    )

    # ─────────────────────────────────────────────────────────────────────────
    # export
    # ─────────────────────────────────────────────────────────────────────────
    export = subparsers.add_parser("export", help="Write a random-init checkpoint and reference trace")
    export.add_argument("--kind", choices=sorted(REFERENCE_MODULES), default="uc", help="Model kind")
    export.add_argument("--out", type=str, required=True, help="Output directory")
    export.add_argument("--seed", type=int, default=0, help="Seed for weights and trace")
    export.add_argument(
        "--steps",
        type=int,
        default=REFERENCE_CONFIG["trace_steps"],
        help="Rows in the reference trace"
    )

    return parser


# =============================================================================
# PART 2: SETTINGS
# =============================================================================

def build_settings(args: argparse.Namespace) -> EngineSettings:
    """
    Merge the optional YAML settings file with command-line overrides.

    Raises:
        LoadError: Settings file unreadable
        pydantic.ValidationError: Invalid override value
    """
    settings = load_settings(args.config) if args.config else EngineSettings()
    data = settings.model_dump()

    for name in ("engine", "checkpoint", "trace", "seed"):
        value = getattr(args, name, None)
        if value is not None:
            data[name] = value
    for name in ("strategy", "temperature", "top_p"):
        value = getattr(args, name, None)
        if value is not None:
            data["sampling"][name] = value
    if getattr(args, "no_self_test", False):
        data["run_self_test"] = False

    return EngineSettings.model_validate(data)


# =============================================================================
# PART 3: OUTPUT FORMATTING
# =============================================================================

def pitch_name(pitch: Optional[int]) -> str:
    """MIDI pitch → note name, e.g. 60 → 'C4'."""
    if pitch is None:
        return "-"
    return f"{NOTE_NAMES[pitch % 12]}{pitch // 12 - 1}"


def format_played_pretty(played: List[Dict]) -> str:
    lines = [f"{'time (ms)':>10}  {'tapped':>7}  {'played':>7}"]
    for row in played:
        lines.append(
            f"{row['time']:>10.1f}  {pitch_name(row['tapped']):>7}  "
            f"{pitch_name(row['pitch']):>4} ({row['pitch']})"
        )
    return "\n".join(lines)


def format_played_json(played: List[Dict], settings: EngineSettings) -> str:
    output = {
        "engine": settings.engine,
        "sampling": settings.sampling.model_dump(),
        "seed": settings.seed,
        "notes": played,
    }
    return json.dumps(output, indent=2)


# =============================================================================
# PART 4: COMMANDS
# =============================================================================

def run_selftest(args: argparse.Namespace) -> int:
    settings = build_settings(args)
    engine = create_engine(settings.engine, checkpoint=settings.checkpoint, trace=settings.trace)
    try:
        result = engine.self_test(force=True, progress=args.verbose)
    finally:
        engine.dispose()

    if result is None:
        print(f"Engine '{settings.engine}' has no model to test")
    else:
        print(f"✅ {result}")
    return 0


def run_play(args: argparse.Namespace) -> int:
    settings = build_settings(args)
    events = load_events(args.events)

    engine = engine_from_settings(settings)
    played = []
    try:
        for event in events:
            if event.type == "off":
                engine.note_off(event.time)
                continue
            pitch = engine.predict(
                event.time,
                event.velocity,
                NoteContext(pitch=event.pitch, hand=event.hand)
            )
            played.append({"time": event.time, "tapped": event.pitch, "pitch": pitch})
    finally:
        engine.dispose()

    if args.json:
        print(format_played_json(played, settings))
    else:
        print(format_played_pretty(played))
    return 0


def run_export(args: argparse.Namespace) -> int:
    manifest_path, trace_path = export_reference(
        args.out,
        kind=args.kind,
        seed=args.seed,
        num_steps=args.steps
    )
    print(f"Checkpoint: {manifest_path}")
    print(f"Trace:      {trace_path}")
    return 0


COMMANDS = {
    "selftest": run_selftest,
    "play": run_play,
    "export": run_export,
}


# =============================================================================
# PART 5: MAIN ENTRY POINT
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        Process exit code (0 on success, 1 on any engine or input error)
    """
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s"
    )

    if args.command is None:
        parser.print_help()
        return 1

    try:
        return COMMANDS[args.command](args)
    except (Tap2MusicError, ValidationError) as e:
        print(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
