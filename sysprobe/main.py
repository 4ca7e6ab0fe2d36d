#!/usr/bin/env python3
"""
Main entry point for sysprobe.
"""

import argparse
import curses
import logging
import os
import signal
import sys
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

from . import __version__
from .config import Settings, load_settings, write_default_config
from .modules import (BenchmarkRunner, LogCollector, get_all_collectors,
                      get_benchmark_collectors)
from .modules.base import Collector
from .modules.capabilities import KNOWN_CAPABILITIES, CapabilityDetector
from .modules.errors import ValidationError
from .modules.runner import CancellationToken, CommandRunner
from .modules.sources import SystemSources
from .ui.report import FORMATS, Aggregator, ReportRenderer
from .ui.tui import EXPORT_CANCELLED, ExportMenu, SelectionMenu

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
SINGLE_COLLECTORS = ("storage", "raid", "graphics", "network", "system")

logger = logging.getLogger("sysprobe")


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(prog="sysprobe", description="Linux diagnostic collectors and benchmarks")
    parser.add_argument("-o", "--output", help="Output filename (report goes to stdout otherwise)")
    parser.add_argument("-f", "--format", choices=FORMATS, help="Output format")
    parser.add_argument("-a", "--ascii", action="store_true", help="Use ASCII instead of Unicode characters")
    parser.add_argument("-c", "--check-all", action="store_true",
                        help="Also run sub-checks that are off by default (slow scans)")
    parser.add_argument("-j", "--jobs", type=int, help="Number of collectors to run in parallel")
    parser.add_argument("--timeout", type=float, help="Default command timeout in seconds")
    parser.add_argument("--config", help="Additional configuration file")
    parser.add_argument("--no-evidence", action="store_true", help="Leave raw command output out of the report")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="store_true", help="Show version information")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    for name in SINGLE_COLLECTORS:
        sub = subparsers.add_parser(name, help=f"Run the {name} collector")
        if name == "graphics":
            sub.add_argument("--compositor", help="Compositor to inspect (kwin, mutter, sway, ...)")

    logs = subparsers.add_parser("logs", help="Analyse auth, kernel or system logs")
    logs.add_argument("type", help="Log type: auth, kernel or system")
    logs.add_argument("--hours", type=float, help="Look-back window in hours")

    subparsers.add_parser("all", help="Run every collector")

    benchmark = subparsers.add_parser("benchmark", help="Run a storage, graphics or system benchmark")
    benchmark.add_argument("kind", help="Benchmark type: storage, graphics or system")
    benchmark.add_argument("--duration", type=float, help="Benchmark duration in seconds")
    benchmark.add_argument("--interval", type=float, help="Sampling interval in seconds")

    subparsers.add_parser("menu", help="Interactive selection menu (default)")
    subparsers.add_parser("capabilities", help="List known capabilities and whether they are present")

    init_config = subparsers.add_parser("init-config", help="Write a default configuration file")
    init_config.add_argument("path", help="Where to write the file")
    init_config.add_argument("--force", action="store_true", help="Overwrite an existing file")
    return parser


def check_root_privileges() -> bool:
    """Check if running with root privileges."""
    if os.geteuid() != 0:
        logger.warning("Some diagnostic features require root privileges.")
        logger.warning("Consider running with sudo for complete diagnostics.")
        return False
    return True


def show_version():
    print(f"sysprobe version {__version__}")
    print("Linux diagnostic collectors and benchmarks")


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Command line flags take precedence over configuration files."""
    if args.timeout is not None:
        settings.timeout = args.timeout
    if args.jobs is not None:
        settings.jobs = args.jobs
    if args.format is not None:
        settings.output_format = args.format
    if getattr(args, "compositor", None):
        settings.compositor = args.compositor
    return settings.validate()


def select_collectors(args: argparse.Namespace, settings: Settings, sources: SystemSources,
                      runner: CommandRunner, detector: CapabilityDetector) -> List[Collector]:
    if args.command == "benchmark":
        benchmarks = BenchmarkRunner(runner, detector, sources, payload_mb=settings.payload_mb,
                                     grace=settings.benchmark_grace, directory=settings.benchmark_directory)
        duration = settings.benchmark_duration if args.duration is None else args.duration
        interval = settings.benchmark_interval if args.interval is None else args.interval
        collectors = [benchmarks.collector(args.kind, duration, interval)]
    elif args.command == "logs":
        hours = settings.log_hours if args.hours is None else args.hours
        collectors = [LogCollector(args.type, hours=hours, sources=sources)]
    else:
        collectors = get_all_collectors(settings, sources)
        if args.command != "all":
            collectors = [c for c in collectors if c.name == args.command]

    for collector in collectors:
        collector.enabled = True
        if args.check_all:
            collector.set_all_subsections(True)
    return collectors


def print_capabilities(detector: CapabilityDetector):
    for name in sorted(KNOWN_CAPABILITIES):
        cap = KNOWN_CAPABILITIES[name]
        state = "present" if detector.has(cap) else "missing"
        print(f"{name:<16} {cap.kind.value:<14} {cap.target:<24} {state}")


@contextmanager
def cancel_on_interrupt(token: CancellationToken) -> Iterator[None]:
    """While collectors run, Ctrl-C cancels the token instead of raising KeyboardInterrupt."""
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: token.cancel())
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous_handler)


def run_interactive_mode(settings: Settings, args: argparse.Namespace, renderer: ReportRenderer,
                         aggregator: Aggregator, sources: SystemSources) -> int:
    """Run the tool in interactive mode."""
    try:
        collectors = get_all_collectors(settings, sources) + get_benchmark_collectors(settings, sources)
        selected = SelectionMenu(collectors, ascii_only=args.ascii).run()
        if not selected:
            logger.info("No collectors selected. Exiting.")
            return 0

        logger.info("Generating diagnostic report...")
        with cancel_on_interrupt(aggregator.token):
            report = aggregator.aggregate(selected)

        export = ExportMenu(renderer, settings.output_directory)
        result = curses.wrapper(lambda stdscr: export.show(stdscr, report))
        if result and result != EXPORT_CANCELLED:
            logger.info(result)
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
    return 0


def main(argv: Optional[Sequence[str]] = None, runner: Optional[CommandRunner] = None,
         sources: Optional[SystemSources] = None) -> int:
    """Main function; returns the process exit code."""
    args = build_parser().parse_args(argv)

    if args.version:
        show_version()
        return 0

    setup_logging(args.verbose)
    try:
        settings = apply_overrides(load_settings(args.config), args)

        if args.command == "init-config":
            path = write_default_config(args.path, overwrite=args.force)
            print(f"Configuration written to {path}")
            return 0

        token = runner.token if runner is not None else CancellationToken()
        runner = runner or CommandRunner(default_timeout=settings.timeout, token=token)
        sources = sources or SystemSources()
        detector = CapabilityDetector(sources)

        if args.command == "capabilities":
            print_capabilities(detector)
            return 0

        check_root_privileges()
        renderer = ReportRenderer(ascii_only=args.ascii, include_evidence=not args.no_evidence)
        aggregator = Aggregator(runner, detector, jobs=settings.jobs, token=token)

        if args.command in (None, "menu"):
            return run_interactive_mode(settings, args, renderer, aggregator, sources)

        collectors = select_collectors(args, settings, sources, runner, detector)
        logger.info("Generating diagnostic report...")
        with cancel_on_interrupt(token):
            report = aggregator.aggregate(collectors)
        if args.output:
            renderer.save(report, settings.output_format, filename=args.output)
        else:
            sys.stdout.write(renderer.render(report, settings.output_format) + "\n")
        if token.cancelled:
            logger.info("Operation cancelled by user.")
        return 0

    except ValidationError as e:
        logger.error("%s", e)
        print(f"sysprobe: error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
