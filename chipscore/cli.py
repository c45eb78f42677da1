from __future__ import annotations

import argparse
import logging
import sys
import traceback
from pathlib import Path
from typing import IO, Any, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.traceback import Traceback

from .config import STYLE_FLAGS
from .errors import InvalidOptionsError
from .library import default_library
from .logging_utils import DEBUG_ENV, configure_logging, debug_enabled, get_log_path, log_exception
from .models import PipelineResult
from .pipeline import run_pipeline

_LOGGER = logging.getLogger("chipscore.cli")
_CONSOLE = Console()

_MOODS = ("upbeat", "sad", "tense", "peaceful")
_TEMPOS = ("slow", "medium", "fast")
_PRESETS = ("minimalTechno", "progressiveHouse", "retroLoopwave", "breakbeatJungle", "lofiChillhop")
_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})


def render_error(context: str, exc: BaseException, *, stream: IO[str] | None = None) -> None:
    target = stream or sys.stderr
    debug = debug_enabled()
    log_path = get_log_path()
    if not target.isatty():
        target.write(f"{context} failed: {type(exc).__name__}: {exc} (logs: {log_path})\n")
        if debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=target)
        return
    console = Console(file=target)
    body = Text.assemble(
        ("chipscore error while ", "bold"),
        (context, "bold"),
        (":\n\n", "bold"),
        Text(type(exc).__name__, style="bold red"),
        (": ", "bold"),
        Text(str(exc)),
        (f"\nLogs: {log_path}", "dim"),
        (f"\n\nSet {DEBUG_ENV}=1 for console trace.", "dim"),
    )
    console.print(Panel(body, title="Error", border_style="red"))
    if debug:
        console.print(Traceback.from_exception(type(exc), exc, exc.__traceback__))


def parse_override(raw: str) -> tuple[str, bool]:
    """``flag=bool`` with the flag in snake_case or camelCase."""

    name, sep, value = raw.partition("=")
    if not sep:
        raise InvalidOptionsError(f"Override must look like flag=true, got {raw!r}")
    flag = "".join(f"_{char.lower()}" if char.isupper() else char for char in name.strip())
    if flag not in STYLE_FLAGS:
        raise InvalidOptionsError(f"Unknown style flag: {name!r}")
    word = value.strip().lower()
    if word in _TRUE_WORDS:
        return flag, True
    if word in _FALSE_WORDS:
        return flag, False
    raise InvalidOptionsError(f"Override value for {name!r} must be a boolean, got {value!r}")


def options_from_args(args: argparse.Namespace) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "mood": args.mood,
        "tempo": args.tempo,
        "length_in_measures": args.length,
        "seed": args.seed,
    }
    if args.preset:
        payload["style_preset"] = args.preset
    if args.override:
        payload["style_overrides"] = dict(parse_override(raw) for raw in args.override)
    if args.repeat_bias is not None:
        payload["section_repeat_bias"] = args.repeat_bias
    return payload


def summary_table(result: PipelineResult) -> Table:
    meta = result.meta
    table = Table(title="chipscore composition", show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    table.add_row("mood / tempo", f"{meta.mood} / {meta.tempo}")
    table.add_row("bpm", str(meta.bpm))
    table.add_row("key", meta.key)
    table.add_row("measures", str(meta.length_in_measures))
    table.add_row("duration", f"{meta.loop_info.total_duration:.2f}s")
    table.add_row("arrangement", meta.voice_arrangement.id)
    table.add_row("style", ", ".join(meta.style_intent.enabled()) or "-")
    table.add_row("sections", " ".join(plan.section_id for plan in result.diagnostics.section_motif_plan))
    for channel in ("square1", "square2", "triangle", "noise"):
        notes = sum(1 for event in result.events_for(channel) if event.command == "noteOn")
        table.add_row(f"{channel} notes", str(notes))
    table.add_row("events", str(len(result.events)))
    table.add_row("digest", result.digest()[:16])
    return table


def library_table() -> Table:
    table = Table(title="built-in motif library")
    table.add_column("table", style="bold")
    table.add_column("count", justify="right")
    for name, count in default_library().summary().items():
        table.add_row(name, str(count))
    return table


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chipscore")
    sub = parser.add_subparsers(dest="command", required=True)

    generate = sub.add_parser("generate", help="Generate a composition.")
    generate.add_argument("--mood", choices=_MOODS, default="upbeat")
    generate.add_argument("--tempo", choices=_TEMPOS, default="medium")
    generate.add_argument("--length", type=int, default=32, help="Length in measures.")
    generate.add_argument("--seed", type=int, default=42)
    generate.add_argument("--preset", choices=_PRESETS, default=None)
    generate.add_argument(
        "--override",
        action="append",
        default=[],
        metavar="FLAG=BOOL",
        help="Force a style flag, e.g. harmonicStatic=true. Repeatable.",
    )
    generate.add_argument("--repeat-bias", type=float, default=None)
    generate.add_argument("--output", type=str, default=None, help="Write the JSON result here.")
    generate.add_argument("--indent", type=int, default=None)

    sub.add_parser("library", help="Show built-in library table sizes.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    try:
        parser = build_parser()
        args = parser.parse_args(argv)

        if args.command == "generate":
            result = run_pipeline(options_from_args(args))
            _CONSOLE.print(summary_table(result))
            if args.output:
                path = Path(args.output)
                path.write_text(result.to_json(indent=args.indent), encoding="utf-8")
                _LOGGER.info("Wrote composition to %s", path)
            return 0

        if args.command == "library":
            _CONSOLE.print(library_table())
            return 0

        parser.print_help()
        return 1
    except Exception as exc:
        log_exception("chipscore CLI", exc)
        render_error("chipscore CLI", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
