"""
spausedd command line.

Usage:
    spausedd [-dDfhp] [-m steal_th] [-P mode] [-t timeout] [--prom-file path]

Runs in the foreground and logs to stderr by default. Send SIGUSR1 to print
statistics, SIGINT or SIGTERM to stop.
"""

import argparse
import sys

from .common import (
    DEFAULT_TIMEOUT, EXIT_USAGE, MAX_STEAL_THRESHOLD, MAX_TIMEOUT,
    PROGRAM_NAME, setup_logging, shutdown_logging,
)
from .detector import ControlSignals, DetectionConfig, Detector
from .metrics import MetricsFile
from .steal import VMGuestLib, select_steal_source
from .system import (
    CgroupMode, mlockall, register_signal_handlers, restore_signal_handlers,
    setup_scheduling, tty_detach,
)

USAGE = f"""\
usage: {PROGRAM_NAME} [-dDfhp] [-m steal_th] [-P mode] [-t timeout]

  -d            Display debug messages
  -D            Run on background - daemonize
  -f            Run foreground - do not daemonize (default)
  -h            Show help
  -p            Do not set RR scheduler
  -m steal_th   Steal percent threshold
  -P mode       Move process to root cgroup only when needed (auto), always (on) or never (off)
  -t timeout    Set timeout value (default: {DEFAULT_TIMEOUT})
  --prom-file path
                Write Prometheus textfile metrics to path
"""


class ArgumentParser(argparse.ArgumentParser):
    """argparse with the daemon's exit status (1) for usage errors."""

    def error(self, message):
        self.exit(EXIT_USAGE, f"{self.prog}: {message}\n")

    def print_help(self, file=None):
        (file or sys.stdout).write(USAGE)


class _UsageAction(argparse.Action):
    def __init__(self, option_strings, dest, **kwargs):
        super().__init__(option_strings, dest, nargs=0,
                         default=argparse.SUPPRESS)

    def __call__(self, parser, namespace, values, option_string=None):
        parser.print_help()
        parser.exit(EXIT_USAGE)


def _bounded_int(lo: int, hi: int, what: str):
    def convert(value: str) -> int:
        try:
            res = int(value, 10)
        except ValueError:
            res = None
        if res is None or not lo <= res <= hi:
            raise argparse.ArgumentTypeError(f"{what} {value} is invalid")
        return res
    return convert


def _cgroup_mode(value: str) -> CgroupMode:
    try:
        return CgroupMode.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog=PROGRAM_NAME, add_help=False)
    parser.add_argument("-h", action=_UsageAction)
    parser.add_argument("-d", dest="debug", action="count", default=0)
    parser.add_argument("-D", dest="foreground", action="store_false")
    parser.add_argument("-f", dest="foreground", action="store_true")
    parser.add_argument("-p", dest="set_prio", action="store_false")
    parser.add_argument("-m", dest="steal_threshold", metavar="steal_th",
                        type=_bounded_int(1, MAX_STEAL_THRESHOLD,
                                          "Steal percent threshold"),
                        default=None)
    parser.add_argument("-P", dest="cgroup_mode", metavar="mode",
                        type=_cgroup_mode, default=CgroupMode.AUTO)
    parser.add_argument("-t", dest="timeout", metavar="timeout",
                        type=_bounded_int(1, MAX_TIMEOUT, "Timeout"),
                        default=DEFAULT_TIMEOUT)
    parser.add_argument("--prom-file", dest="prom_file", metavar="path",
                        default=None)
    parser.set_defaults(foreground=True, set_prio=True)
    return parser


def run(args, guestlib_loader=VMGuestLib.load, detach=tty_detach,
        lock_memory=mlockall, scheduling=setup_scheduling) -> int:
    """Set the process up, run the detection loop and tear down again."""
    if args.foreground:
        setup_logging(args.debug)
    else:
        detach()
        setup_logging(args.debug, to_syslog=True)

    lock_memory()
    scheduling(args.set_prio, args.cgroup_mode)

    signals = ControlSignals()
    previous = register_signal_handlers(signals)

    source, threshold = select_steal_source(
        None if args.steal_threshold is None else float(args.steal_threshold),
        guestlib_loader=guestlib_loader)
    config = DetectionConfig(timeout_ms=args.timeout, steal_threshold=threshold)

    metrics = None
    if args.prom_file:
        metrics = MetricsFile(args.prom_file, config, source.name)

    try:
        Detector(config, source, signals, metrics=metrics).run()
    finally:
        source.close()
        restore_signal_handlers(previous)
        signals.close()
        shutdown_logging()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return run(args)


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user.")
        sys.exit(130)
