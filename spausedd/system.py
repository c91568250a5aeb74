"""
One-shot process setup: memory locking, TTY detach, SCHED_RR, root cgroup
and signal handlers.

None of these take part in the detection loop. Failures are logged and the
daemon carries on without the feature, except for TTY detach which exits.
"""

import ctypes
import ctypes.util
import enum
import logging
import os
import resource
import signal
import sys
from pathlib import Path

from .common import log_perror

log = logging.getLogger(__name__)

MCL_CURRENT = 1
MCL_FUTURE = 2

CGROUP_ROOT = Path("/sys/fs/cgroup")


class CgroupMode(enum.Enum):
    OFF = "off"
    ON = "on"
    AUTO = "auto"

    @classmethod
    def parse(cls, value: str) -> "CgroupMode":
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Move to root cgroup mode {value} is invalid") from None


# MEMORY

def _libc() -> ctypes.CDLL:
    return ctypes.CDLL(ctypes.util.find_library("c") or "libc.so.6",
                       use_errno=True)


def mlockall(libc=None) -> bool:
    """Lock current and future pages in memory. Returns True on success."""
    try:
        resource.setrlimit(resource.RLIMIT_MEMLOCK,
                           (resource.RLIM_INFINITY, resource.RLIM_INFINITY))
    except (OSError, ValueError):
        log.warning("Could not increase RLIMIT_MEMLOCK, not locking memory")
        return False

    try:
        if libc is None:
            libc = _libc()
        res = libc.mlockall(MCL_CURRENT | MCL_FUTURE)
    except (OSError, AttributeError):
        res = -1
    if res != 0:
        log.warning("Could not mlockall")
        return False
    return True


# DAEMON

def tty_detach() -> None:
    """Fork into the background, start a new session, point stdio at /dev/null."""
    try:
        pid = os.fork()
    except OSError as e:
        sys.exit(f"Can't create child process: {e}")
    if pid > 0:
        os._exit(0)

    os.setsid()

    try:
        devnull = os.open(os.devnull, os.O_RDWR)
    except OSError as e:
        sys.exit(f"Can't open /dev/null: {e}")
    try:
        for fd in (0, 1, 2):
            os.dup2(devnull, fd)
    except OSError as e:
        sys.exit(f"Can't dup2 stdin/out/err to /dev/null: {e}")
    finally:
        os.close(devnull)


# SCHEDULING

def set_rr_scheduler(silent: bool = False) -> bool:
    """Switch to SCHED_RR at the maximum priority. Returns True on success."""
    if not hasattr(os, "sched_setscheduler"):
        log.warning("Platform without sched_get_priority_min")
        return False

    try:
        max_prio = os.sched_get_priority_max(os.SCHED_RR)
    except OSError as e:
        if not silent:
            log_perror(log, logging.WARNING,
                       "Can't get maximum SCHED_RR priority", e)
        return False

    try:
        os.sched_setscheduler(0, os.SCHED_RR, os.sched_param(max_prio))
    except OSError as e:
        if not silent:
            log_perror(log, logging.WARNING, "Can't set SCHED_RR", e)
        return False
    return True


def move_to_root_cgroup(root: Path = CGROUP_ROOT) -> bool:
    """Move this process into the root cpu cgroup so SCHED_RR can be granted.

    Needed when CONFIG_RT_GROUP_SCHED gives the current group no RT runtime.
    """
    root = Path(root)
    if (root / "cpu" / "cpu.rt_runtime_us").exists():
        log.debug("Moving main pid to cgroup v1 root cgroup")
        tasks = root / "cpu" / "tasks"
    elif (root / "cgroup.procs").exists():
        log.debug("Moving main pid to cgroup v2 root cgroup")
        tasks = root / "cgroup.procs"
    else:
        log.debug("cpu.rt_runtime_us or cgroup.procs doesn't exist -> "
                  "system without cgroup or with disabled CONFIG_RT_GROUP_SCHED")
        return False

    try:
        with open(tasks, "w") as f:
            f.write(f"{os.getpid()}\n")
    except OSError:
        log.warning("Can't write spausedd pid into cgroups tasks file")
        return False
    return True


def setup_scheduling(set_prio: bool, cgroup_mode: CgroupMode,
                     root: Path = CGROUP_ROOT) -> bool:
    """Apply the cgroup/RR policy. Returns True if SCHED_RR is in effect."""
    if cgroup_mode is CgroupMode.ON:
        move_to_root_cgroup(root)

    if not set_prio:
        return False

    silent = cgroup_mode is CgroupMode.AUTO
    if set_rr_scheduler(silent):
        return True
    if cgroup_mode is CgroupMode.AUTO:
        # Retry from the root cgroup
        move_to_root_cgroup(root)
        return set_rr_scheduler(False)
    return False


# SIGNALS

def register_signal_handlers(signals) -> dict:
    """Route SIGINT/SIGTERM to stop and SIGUSR1 to a statistics dump.

    Returns the previous handlers so they can be restored.
    """
    def _stop(signum, frame):
        signals.request_stop()

    def _dump(signum, frame):
        signals.request_dump()

    previous = {}
    for sig, handler in ((signal.SIGINT, _stop), (signal.SIGTERM, _stop),
                         (signal.SIGUSR1, _dump)):
        previous[sig] = signal.signal(sig, handler)
    return previous


def restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)
