"""Command-line interface for PortaCount tools."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Optional

from tqdm import tqdm

from . import DEFAULT_PORTACOUNT_PORT, SERIAL_BAUD_RATE, __version__
from .builtin_configs import builtin_configs, load_builtin
from .config_csv import config_to_csv, parse_config_csv
from .engine import FitTestEngine
from .exceptions import (
    ConfigParseError,
    ConfigValidationError,
    PortacountToolsError,
    TransportError,
)
from .results import DataPointCaptured, FinalFitFactor, InterimFitFactor, RunFinished, StageStarted
from .serial_comm import SerialConnectionManager, SerialLineReader
from .stage_config import FitTestConfig
from .transport import Acknowledgement, Transport


def load_config(source: str) -> FitTestConfig:
    """Load a built-in protocol by short name, or a configuration file by path."""
    if source in builtin_configs():
        return load_builtin(source)
    with open(source, "r", encoding="utf-8") as handle:
        return parse_config_csv(handle.read())


def _format_ff(value: object) -> str:
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def command_list_ports(args) -> int:
    """List available serial ports."""
    ports = SerialConnectionManager.list_available_ports()
    if not ports:
        print("No serial ports found.")
    else:
        print("Available serial ports:")
        for p in ports:
            print(f"  {p}")
    return 0


def command_configs(args) -> int:
    """List built-in fit test protocols."""
    for short_name, config in builtin_configs().items():
        print(f"{short_name:20s} {config.describe()}")
        if args.exercises:
            for name in config.exercise_names:
                print(f"{'':20s}   - {name}")
    return 0


def command_validate(args) -> int:
    """Validate a configuration file or built-in protocol."""
    try:
        config = load_config(args.config)
    except ConfigValidationError as e:
        print(f"Invalid configuration: {args.config}", file=sys.stderr)
        for issue in e.errors:
            where = f"stage {issue.stage_index}" if issue.stage_index is not None else "config"
            print(f"  [{issue.rule}] {where}: {issue.message}", file=sys.stderr)
        return 1
    except ConfigParseError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1

    print(f"OK: {config.describe()}")
    for warning in config.warnings:
        print(f"  warning [{warning.code}]: {warning.message}")
    if args.dump:
        print(config_to_csv(config), end="")
    return 0


def command_spy(args) -> int:
    """Print every line the device sends, classified."""
    ctx = f"CLI spy on {args.serial_port}"
    deadline = time.monotonic() + args.duration if args.duration else None

    try:
        with SerialConnectionManager(port=args.serial_port, baud_rate=args.baud_rate) as mgr:
            transport = Transport(mgr)
            reader = SerialLineReader(mgr)
            while deadline is None or time.monotonic() < deadline:
                line = reader.read_line(1.0, context=ctx)
                if line is None:
                    continue
                try:
                    event = transport.normalize_line(line)
                except TransportError as e:
                    print(f"{line.decode('ascii', errors='replace')}\t# {e}")
                    continue
                kind = "ack" if isinstance(event, Acknowledgement) else "sample"
                print(f"{event.raw}\t# {kind}", flush=True)
        return 0

    except KeyboardInterrupt:
        return 0
    except Exception as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_reset(args) -> int:
    """Release the device from external control."""
    ctx = f"CLI reset on {args.serial_port}"

    try:
        with SerialConnectionManager(port=args.serial_port, baud_rate=args.baud_rate) as mgr:
            Transport(mgr).release(context=ctx)
        print(f"Released {args.serial_port} from external control.")
        return 0

    except Exception as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_run(args) -> int:
    """Run a fit test and print its results."""
    try:
        config = load_config(args.config)
    except (PortacountToolsError, OSError) as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1

    ctx = f"CLI run {config.short_name or args.config} on {args.serial_port}"

    try:
        with SerialConnectionManager(port=args.serial_port, baud_rate=args.baud_rate) as mgr:
            transport = Transport(mgr)
            settings = transport.identify(context=ctx)
            print(f"Connected to PortaCount {settings.serial_number or '(unknown serial)'} "
                  f"(model {transport.model})")
            engine = FitTestEngine(transport)

            progress_bar = tqdm(
                total=config.total_datapoints,
                unit="s",
                desc=config.name or config.short_name,
                disable=args.quiet,
            )
            finished: Optional[RunFinished] = None
            try:
                for event in engine.run(config):
                    if isinstance(event, DataPointCaptured):
                        progress_bar.update(1)
                    elif isinstance(event, StageStarted):
                        progress_bar.set_description(event.name)
                    elif isinstance(event, InterimFitFactor):
                        progress_bar.set_postfix({"FF": _format_ff(event.value)})
                    elif isinstance(event, FinalFitFactor):
                        tqdm.write(
                            f"Exercise {event.exercise_index + 1} "
                            f"({config.exercise_names[event.exercise_index]}): "
                            f"FF {_format_ff(event.value)} ± {_format_ff(event.error)}"
                        )
                    elif isinstance(event, RunFinished):
                        finished = event
            except KeyboardInterrupt:
                engine.request_abort()
                raise
            finally:
                progress_bar.close()

        run = finished.run
        if not run.completed:
            reason = run.error or "aborted"
            print(f"Test aborted: {reason}", file=sys.stderr)
            print(f"{len(run.datapoints)} datapoints were captured.", file=sys.stderr)
            return 1
        print(f"Overall fit factor: {_format_ff(finished.overall_fit_factor)}")
        return 0

    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def _add_serial_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--serial-port", type=str, default=DEFAULT_PORTACOUNT_PORT,
        help=f"Serial port path (e.g. /dev/ttyUSB0 or COM3). "
             f"Default: $PORTACOUNT_PORT or {DEFAULT_PORTACOUNT_PORT}",
    )
    parser.add_argument(
        "--baud-rate", type=int, default=SERIAL_BAUD_RATE,
        help=f"Baud rate (default: {SERIAL_BAUD_RATE})",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portacount",
        description="PortaCount Tools - run respirator fit tests on a TSI PortaCount 8020",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="Log to stderr (-v: info, -vv: debug)",
    )

    # Subcommands
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Serial list
    list_parser = subparsers.add_parser("list-ports", help="List available serial ports")
    list_parser.set_defaults(func=command_list_ports)

    # Built-in protocols
    configs_parser = subparsers.add_parser("configs", help="List built-in fit test protocols")
    configs_parser.add_argument(
        "-e", "--exercises", action="store_true", default=False,
        help="Also list the exercises of each protocol",
    )
    configs_parser.set_defaults(func=command_configs)

    # Validate
    validate_parser = subparsers.add_parser(
        "validate", help="Validate a configuration file or built-in protocol",
    )
    validate_parser.add_argument("config", help="Built-in short name or path to a CSV file")
    validate_parser.add_argument(
        "--dump", action="store_true", default=False,
        help="Print the configuration in normalised CSV form",
    )
    validate_parser.set_defaults(func=command_validate)

    # Spy
    spy_parser = subparsers.add_parser("spy", help="Dump and classify raw device output")
    _add_serial_arguments(spy_parser)
    spy_parser.add_argument(
        "--duration", type=float, default=0.0,
        help="Stop after this many seconds (default: run until Ctrl-C)",
    )
    spy_parser.set_defaults(func=command_spy)

    # Reset
    reset_parser = subparsers.add_parser("reset", help="Release the device from external control")
    _add_serial_arguments(reset_parser)
    reset_parser.set_defaults(func=command_reset)

    # Run
    run_parser = subparsers.add_parser("run", help="Run a fit test")
    run_parser.add_argument("config", help="Built-in short name or path to a CSV file")
    _add_serial_arguments(run_parser)
    run_parser.add_argument(
        "--quiet", action="store_true", default=False,
        help="Hide the progress bar",
    )
    run_parser.set_defaults(func=command_run)

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose > 1 else logging.INFO,
            format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
