"""
Shared constants and logging setup for spausedd.

Used by the detector, the steal time sources, the lifecycle helpers and the
command line entry point.
"""

import logging
import logging.handlers
import os
import sys


# CONFIGURATION

PROGRAM_NAME = "spausedd"

DEFAULT_TIMEOUT = 200
# One hour
MAX_TIMEOUT = 1000 * 60 * 60

DEFAULT_MAX_STEAL_THRESHOLD = 10
DEFAULT_MAX_STEAL_THRESHOLD_GL = 100
MAX_STEAL_THRESHOLD = 2 ** 32 - 1

NO_NS_IN_SEC = 1_000_000_000
NO_NS_IN_MSEC = 1_000_000
NO_MSEC_IN_SEC = 1_000

EXIT_USAGE = 1
EXIT_POLL_ERROR = 2

SYSLOG_ADDRESS = "/dev/log"


# =============================================================================
# LOGGING
# =============================================================================

TRACE = logging.DEBUG - 1
logging.addLevelName(TRACE, "TRACE")

log: logging.Logger = logging.getLogger(PROGRAM_NAME)


def debug_level_to_logging(debug: int) -> int:
    """Map the -d count to a logging level (0 = INFO, 1 = DEBUG, 2+ = TRACE)."""
    if debug <= 0:
        return logging.INFO
    if debug == 1:
        return logging.DEBUG
    return TRACE


class StderrFormatter(logging.Formatter):
    """Foreground format: "Oct 19 10:17:03 spausedd: message"."""

    def __init__(self):
        super().__init__(f"%(asctime)s {PROGRAM_NAME}: %(message)s",
                         datefmt="%b %d %H:%M:%S")


class DaemonSysLogHandler(logging.handlers.SysLogHandler):
    """Syslog handler that never sends anything below INFO priority."""

    def mapPriority(self, levelName: str) -> str:
        prio = super().mapPriority(levelName)
        if prio == "warning" and levelName not in ("WARNING", "WARN"):
            # Unknown level names (TRACE) map to "warning" by default.
            prio = "info"
        if prio == "debug":
            prio = "info"
        return prio


def _drop_handlers() -> None:
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()


def setup_logging(debug: int = 0, to_syslog: bool = False,
                  stream=None) -> logging.Handler:
    """Configure the program logger for stderr (foreground) or syslog (daemon).

    Any handler installed by a previous call is closed first, so the
    foreground handler can be swapped for syslog after detaching.
    """
    _drop_handlers()
    log.setLevel(debug_level_to_logging(debug))
    log.propagate = False

    if to_syslog:
        try:
            handler = DaemonSysLogHandler(
                address=SYSLOG_ADDRESS,
                facility=logging.handlers.SysLogHandler.LOG_DAEMON)
        except OSError:
            # No syslog socket and stdio is already /dev/null
            handler = logging.NullHandler()
        else:
            handler.ident = f"{PROGRAM_NAME}[{os.getpid()}]: "
            handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
        handler.setFormatter(StderrFormatter())

    log.addHandler(handler)
    return handler


def shutdown_logging() -> None:
    _drop_handlers()


def log_perror(logger: logging.Logger, level: int, msg: str,
               exc: OSError) -> None:
    """Log an OS error the way perror-style messages read: "msg (errno): text"."""
    errno_ = exc.errno if exc.errno is not None else 0
    text = exc.strerror if exc.strerror else str(exc)
    logger.log(level, "%s (%d): %s", msg, errno_, text)
