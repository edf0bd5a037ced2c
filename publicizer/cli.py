#!/usr/bin/env python3
"""
publicizer - widen every type, method and field of a .NET assembly to public

Command-line interface.

Usage:
    publicizer publicize [INPUT ...] [-i a.dll,b.dll] [-o DIR]
                                     Write publicized copies of assemblies
    publicizer inspect <file>        Show the type tree and pending changes
"""

from __future__ import annotations

import argparse
import logging
import sys
import textwrap
from pathlib import Path
from typing import Optional

from publicizer import __version__
from publicizer.assembly import read
from publicizer.config import (
    DEFAULT_OUTPUT_DIR,
    DEFAULT_SUFFIX,
    BatchConfig,
    load_settings,
    merge_settings,
)
from publicizer.driver import Failure, Outcome, Stage, run_batch
from publicizer.errors import ConfigError, ReadError
from publicizer.rewriter import pending_changes
from publicizer.walker import flatten

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_ARGUMENTS = 10


# ============================================================================
# Formatting helpers
# ============================================================================

class C:
    """ANSI colors."""
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    RESET = "\033[0m"

    @staticmethod
    def off():
        C.BOLD = C.DIM = C.RED = C.GREEN = C.YELLOW = C.CYAN = C.RESET = ""


def header(text: str) -> str:
    return f"\n{C.BOLD}{C.CYAN}{'─' * 60}{C.RESET}\n{C.BOLD}  {text}{C.RESET}\n{C.BOLD}{C.CYAN}{'─' * 60}{C.RESET}"


def ok(text: str) -> str:
    return f"  {C.GREEN}✓{C.RESET} {text}"


def warn(text: str) -> str:
    return f"  {C.YELLOW}⚠{C.RESET} {text}"


def fail(text: str) -> str:
    return f"  {C.RED}✗{C.RESET} {text}"


def dim(text: str) -> str:
    return f"{C.DIM}{text}{C.RESET}"


class ArgumentError(Exception):
    """Malformed command line; fatal to the whole run."""


class PublicizerArgumentParser(argparse.ArgumentParser):
    """argparse that reports usage errors with the tool's exit code."""

    def error(self, message: str):
        print(fail(f"ERROR! {message}"), file=sys.stderr)
        print("Try `--help` for more information.", file=sys.stderr)
        sys.exit(EXIT_ARGUMENTS)


# ============================================================================
# Input discovery
# ============================================================================

def collect_inputs(args, output_dir: Optional[Path] = None) -> list[Path]:
    """Positionals plus comma-separated -i values; default to *.dll in -d."""
    inputs: list[Path] = [Path(p) for p in args.inputs]
    for group in args.input or []:
        inputs.extend(Path(p.strip()) for p in group.split(",") if p.strip())

    if inputs:
        return inputs

    directory = Path(args.directory)
    if not directory.is_dir():
        raise ArgumentError(f"Not a directory: {directory}")
    pattern = "**/*.dll" if args.recursive else "*.dll"
    output_dir = Path(output_dir).resolve() if output_dir is not None else None
    found = []
    for path in sorted(directory.glob(pattern)):
        # Skip earlier results when the output directory sits inside the search root
        if output_dir is not None and output_dir in path.resolve().parents:
            continue
        if path.is_file():
            found.append(path)
    if not found:
        raise ArgumentError(f"No input assemblies given and no *.dll files in {directory}")
    return found


def build_config(args) -> BatchConfig:
    persistent = load_settings(args.config) if args.config else {}
    settings = merge_settings(
        defaults={"output_dir": DEFAULT_OUTPUT_DIR, "suffix": DEFAULT_SUFFIX},
        persistent=persistent,
        overrides={
            "output_dir": args.output,
            "suffix": args.suffix,
            "dry_run": args.dry_run or None,
            "pause_on_exit": args.pause or None,
            "strict": args.strict or None,
        },
    )
    return BatchConfig.from_settings(settings)


def pause(config: Optional[BatchConfig]) -> None:
    if config is not None and config.pause_on_exit:
        try:
            input("Press Enter to exit...")
        except EOFError:
            pass


# ============================================================================
# Commands
# ============================================================================

def print_outcome(outcome: Outcome) -> None:
    print(f"\n  {C.BOLD}Processing:{C.RESET} {outcome.input_path}")
    if isinstance(outcome, Failure):
        print(fail(f"ERROR! [{outcome.reason.value}] {outcome.message}"))
        return
    counts = outcome.counts
    print(f"    Changed {counts.types} types to public.")
    print(f"    Changed {counts.methods} methods to public.")
    print(f"    Changed {counts.fields} fields to public.")
    if outcome.stage is Stage.WRITTEN:
        print(ok(f"Saved: {outcome.output_path}"))
    else:
        print(warn(f"Dry run, would save: {outcome.output_path}"))


def cmd_publicize(args) -> int:
    """Write publicized copies of the input assemblies."""
    config = None
    try:
        config = build_config(args)
        inputs = collect_inputs(args, config.output_dir)
    except (ArgumentError, ConfigError) as e:
        print(fail(f"ERROR! {e}"))
        print("Try `--help` for more information.")
        pause(config)
        return EXIT_ARGUMENTS

    print(header(f"PUBLICIZE: {len(inputs)} assembl{'y' if len(inputs) == 1 else 'ies'}"))
    print(f"  {C.DIM}Output: {config.output_dir}  |  Suffix: {config.suffix}"
          f"{'  |  dry run' if config.dry_run else ''}{C.RESET}")

    if not config.dry_run:
        try:
            config.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            print(fail(f"ERROR! Cannot create output directory {config.output_dir}: {e.strerror or e}"))
            pause(config)
            return EXIT_FAILURES

    report = run_batch(inputs, config, on_outcome=print_outcome)

    summary = f"{len(report.succeeded)} succeeded, {len(report.failed)} failed"
    print()
    print(ok(summary) if report.ok else warn(summary))

    pause(config)
    return config.exit_status(report)


def cmd_inspect(args) -> int:
    """Show the type tree with current visibilities."""
    if args.limit < 0:
        print(fail(f"ERROR! --limit must be zero or more, not {args.limit}"))
        return EXIT_ARGUMENTS

    print(header(f"INSPECT: {args.file}"))
    try:
        module = read(args.file)
    except ReadError as e:
        print(fail(f"ERROR! {e.message}"))
        return EXIT_FAILURES

    image = module.image
    print(f"  {C.DIM}Module: {module.name}  |  Runtime: {image.metadata_version}  |  "
          f"Tables: {image.table_stream}"
          f"{'  |  strong-name signed' if image.strong_name_signed else ''}{C.RESET}")

    types = flatten(module.types)
    limit = args.limit
    for t in types[:limit]:
        depth = 0
        parent = t.declaring_type
        while parent is not None:
            depth += 1
            parent = parent.declaring_type
        mark = C.GREEN if t.is_public or t.is_nested_public else C.YELLOW
        print(f"    {'  ' * depth}{mark}{t.visibility.name:<20}{C.RESET} {t.full_name}  "
              f"{dim(f'{len(t.methods)}m {len(t.fields)}f')}")
    if len(types) > limit:
        print(f"    {C.DIM}...and {len(types) - limit} more types{C.RESET}")

    pending = pending_changes(module.types)
    print(f"\n  {C.BOLD}A publicize run would change:{C.RESET}")
    print(f"    types:   {pending.types}")
    print(f"    methods: {pending.methods}")
    print(f"    fields:  {pending.fields}")
    return EXIT_OK


# ============================================================================
# CLI setup
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = PublicizerArgumentParser(
        prog="publicizer",
        description="Create copies of .NET assemblies in which every type, method and field is public",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""
        examples:
          publicizer publicize Assembly-CSharp.dll
          publicizer publicize -i UnityEngine.dll,Assembly-CSharp.dll -o refs
          publicizer publicize -d Managed -r --strict
          publicizer inspect Assembly-CSharp.dll
        """),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", help="Command to run")

    # publicize
    p = sub.add_parser("publicize", aliases=["pub"], help="Write publicized copies of assemblies")
    p.add_argument("inputs", nargs="*", help="Paths (relative or absolute) to the input assemblies")
    p.add_argument("-i", "--input", action="append",
                   help="Input assemblies, separated by comma (repeatable)")
    p.add_argument("-o", "--output", help=f"Output directory (default: {DEFAULT_OUTPUT_DIR})")
    p.add_argument("-s", "--suffix", help=f"Suffix inserted before the extension (default: {DEFAULT_SUFFIX})")
    p.add_argument("-d", "--directory", default=".",
                   help="Where to look for *.dll files when no inputs are given")
    p.add_argument("-r", "--recursive", action="store_true", help="Search --directory recursively")
    p.add_argument("-n", "--dry-run", action="store_true", help="Report changes without writing")
    p.add_argument("--strict", action="store_true", help="Exit with status 1 if any input failed")
    p.add_argument("--pause", action="store_true", help="Wait for Enter before exiting")
    p.add_argument("--config", help="JSON settings file")

    # inspect
    p = sub.add_parser("inspect", aliases=["ls"], help="Show the type tree and pending changes")
    p.add_argument("file", help="Assembly to inspect")
    p.add_argument("-n", "--limit", type=int, default=50, help="Max types to display")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.no_color:
        C.off()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.ERROR,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return EXIT_OK

    # Dispatch
    commands = {
        "publicize": cmd_publicize, "pub": cmd_publicize,
        "inspect": cmd_inspect, "ls": cmd_inspect,
    }
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
