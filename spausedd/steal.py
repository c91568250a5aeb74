"""
Steal time sources.

A steal time source returns cumulative CPU steal time in nanoseconds since an
unspecified epoch (boot for the kernel accounting, power-on for a VMware
guest). Exactly one source is selected at startup by select_steal_source()
and used for the whole run.
"""

import ctypes
import ctypes.util
import logging
import os
from pathlib import Path

from .common import (
    DEFAULT_MAX_STEAL_THRESHOLD, DEFAULT_MAX_STEAL_THRESHOLD_GL,
    NO_NS_IN_MSEC, NO_NS_IN_SEC, TRACE,
)

log = logging.getLogger(__name__)

PROC_STAT = Path("/proc/stat")
DEFAULT_CLOCK_TICK = 100

PROC_STAT_FIELDS = ("user", "nice", "system", "idle", "iowait", "irq",
                    "softirq", "steal")


class StealTimeSource:
    """Cumulative steal time provider."""

    name = "none"

    def sample(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


# =============================================================================
# KERNEL ACCOUNTING
# =============================================================================

def clock_tick() -> int:
    """Return the USER_HZ tick frequency, or DEFAULT_CLOCK_TICK if unknown."""
    try:
        tick = os.sysconf("SC_CLK_TCK")
    except (ValueError, OSError):
        tick = -1
    if tick is None or tick <= 0:
        log.log(TRACE, "Can't get _SC_CLK_TCK, using %d", DEFAULT_CLOCK_TICK)
        return DEFAULT_CLOCK_TICK
    return tick


def parse_cpu_line(line: str) -> dict | None:
    """Parse the aggregate "cpu" line of /proc/stat.

    Per-core lines (cpu0, cpu1, ...) and lines with fewer than five counters
    return None. Missing trailing counters read as 0.
    """
    parts = line.split()
    if len(parts) < 6 or parts[0] != "cpu":
        return None

    values = []
    for part in parts[1:len(PROC_STAT_FIELDS) + 1]:
        try:
            values.append(int(part))
        except ValueError:
            break
    if len(values) < 5:
        return None

    values += [0] * (len(PROC_STAT_FIELDS) - len(values))
    return dict(zip(PROC_STAT_FIELDS, values))


def ticks_to_ns(ticks: int, tick_hz: int) -> int:
    return ticks * (NO_NS_IN_SEC // tick_hz)


class KernelStealSource(StealTimeSource):
    """Steal time from the aggregate cpu line of /proc/stat."""

    name = "kernel"

    def __init__(self, path: Path = PROC_STAT, tick_hz: int | None = None):
        self.path = Path(path)
        self.tick_hz = tick_hz

    def sample(self) -> int:
        try:
            with open(self.path, "rt") as f:
                for line in f:
                    stats = parse_cpu_line(line)
                    if stats is not None:
                        break
                else:
                    return 0
        except (OSError, ValueError):
            return 0

        tick_hz = self.tick_hz if self.tick_hz else clock_tick()
        factor = NO_NS_IN_SEC // tick_hz
        steal = ticks_to_ns(stats["steal"], tick_hz)

        if log.isEnabledFor(TRACE):
            log.log(TRACE, "kernel steal stats: %s, factor = %d, "
                    "result steal = %d",
                    ", ".join(f"{k} = {v}" for k, v in stats.items()),
                    factor, steal)
        return steal


# =============================================================================
# VMWARE GUEST LIBRARY
# =============================================================================

VMGUESTLIB_ERROR_SUCCESS = 0
VMGUESTLIB_SONAME = "libvmGuestLib.so"


class GuestLibError(Exception):
    """A vmGuestLib call returned something other than success."""

    def __init__(self, call: str, code: int, text: str):
        super().__init__(f"{call}: {text}")
        self.call = call
        self.code = code
        self.text = text


class VMGuestLib:
    """ctypes binding for the vSphere Guest API (libvmGuestLib).

    Only the calls needed for steal time are bound. A handle is not safe to
    share between threads.
    """

    def __init__(self, lib: ctypes.CDLL):
        self.lib = lib
        self.handle = ctypes.c_void_p()
        self._bind()

    @classmethod
    def load(cls, name: str | None = None) -> "VMGuestLib":
        """Load the shared library. Raises OSError if it is not installed."""
        if name is None:
            name = ctypes.util.find_library("vmGuestLib") or VMGUESTLIB_SONAME
        return cls(ctypes.CDLL(name))

    def _bind(self) -> None:
        handle_p = ctypes.POINTER(ctypes.c_void_p)
        u64_p = ctypes.POINTER(ctypes.c_uint64)

        self.lib.VMGuestLib_OpenHandle.argtypes = [handle_p]
        self.lib.VMGuestLib_CloseHandle.argtypes = [ctypes.c_void_p]
        self.lib.VMGuestLib_UpdateInfo.argtypes = [ctypes.c_void_p]
        for fn in ("VMGuestLib_GetCpuStolenMs", "VMGuestLib_GetCpuUsedMs",
                   "VMGuestLib_GetElapsedMs"):
            getattr(self.lib, fn).argtypes = [ctypes.c_void_p, u64_p]
        for fn in ("VMGuestLib_OpenHandle", "VMGuestLib_CloseHandle",
                   "VMGuestLib_UpdateInfo", "VMGuestLib_GetCpuStolenMs",
                   "VMGuestLib_GetCpuUsedMs", "VMGuestLib_GetElapsedMs"):
            getattr(self.lib, fn).restype = ctypes.c_int
        self.lib.VMGuestLib_GetErrorText.argtypes = [ctypes.c_int]
        self.lib.VMGuestLib_GetErrorText.restype = ctypes.c_char_p

    def error_text(self, code: int) -> str:
        text = self.lib.VMGuestLib_GetErrorText(code)
        return text.decode(errors="replace") if text else f"error {code}"

    def _check(self, call: str, code: int) -> None:
        if code != VMGUESTLIB_ERROR_SUCCESS:
            raise GuestLibError(call, code, self.error_text(code))

    def _get_u64(self, call: str) -> int:
        value = ctypes.c_uint64(0)
        self._check(call, getattr(self.lib, call)(self.handle, ctypes.byref(value)))
        return value.value

    def open(self) -> None:
        self._check("VMGuestLib_OpenHandle",
                    self.lib.VMGuestLib_OpenHandle(ctypes.byref(self.handle)))

    def close(self) -> None:
        self._check("VMGuestLib_CloseHandle",
                    self.lib.VMGuestLib_CloseHandle(self.handle))

    def update_info(self) -> None:
        self._check("VMGuestLib_UpdateInfo",
                    self.lib.VMGuestLib_UpdateInfo(self.handle))

    def cpu_stolen_ms(self) -> int:
        return self._get_u64("VMGuestLib_GetCpuStolenMs")

    def cpu_used_ms(self) -> int:
        return self._get_u64("VMGuestLib_GetCpuUsedMs")

    def elapsed_ms(self) -> int:
        return self._get_u64("VMGuestLib_GetElapsedMs")


class GuestLibStealSource(StealTimeSource):
    """Steal time reported by the hypervisor through an opened VMGuestLib."""

    name = "vmguestlib"

    def __init__(self, guestlib):
        self.guestlib = guestlib
        self.prev_stolen_ms = 0
        self.prev_used_ms = 0
        self.prev_elapsed_ms = 0

    def sample(self) -> int:
        try:
            self.guestlib.update_info()
        except GuestLibError as e:
            log.debug("Can't update stolen time from guestlib: %s", e.text)
            return 0

        try:
            stolen_ms = self.guestlib.cpu_stolen_ms()
        except GuestLibError as e:
            log.debug("Can't get stolen time from guestlib: %s", e.text)
            return 0

        # Only used for the trace line below
        try:
            used_ms = self.guestlib.cpu_used_ms()
        except GuestLibError:
            used_ms = 0
        try:
            elapsed_ms = self.guestlib.elapsed_ms()
        except GuestLibError:
            elapsed_ms = 0

        log.log(TRACE, "guestlib steal stats: "
                "stolen = %d (%d), used = %d (%d), elapsed = %d (%d)",
                stolen_ms, stolen_ms - self.prev_stolen_ms,
                used_ms, used_ms - self.prev_used_ms,
                elapsed_ms, elapsed_ms - self.prev_elapsed_ms)

        self.prev_stolen_ms = stolen_ms
        self.prev_used_ms = used_ms
        self.prev_elapsed_ms = elapsed_ms

        return stolen_ms * NO_NS_IN_MSEC

    def close(self) -> None:
        try:
            self.guestlib.close()
        except GuestLibError as e:
            log.debug("Can't close guestlib handle: %s", e.text)


# =============================================================================
# SELECTION
# =============================================================================

def open_guestlib(loader=VMGuestLib.load):
    """Load and open the guest library. Returns None if unavailable."""
    try:
        guestlib = loader()
    except (OSError, AttributeError) as e:
        log.debug("Can't load guestlib: %s", e)
        return None

    try:
        guestlib.open()
    except GuestLibError as e:
        log.debug("Can't open guestlib handle: %s", e.text)
        return None
    return guestlib


def select_steal_source(steal_threshold: float | None = None,
                        guestlib_loader=VMGuestLib.load,
                        proc_stat: Path = PROC_STAT
                        ) -> tuple[StealTimeSource, float]:
    """Pick the steal time source for this run.

    Returns the source and the steal threshold to use: the caller's value if
    given, otherwise the default for the chosen source.
    """
    guestlib = open_guestlib(guestlib_loader) if guestlib_loader else None
    if guestlib is not None:
        log.info("Using VMGuestLib")
        source = GuestLibStealSource(guestlib)
        default = DEFAULT_MAX_STEAL_THRESHOLD_GL
    else:
        source = KernelStealSource(proc_stat)
        default = DEFAULT_MAX_STEAL_THRESHOLD

    if steal_threshold is None:
        steal_threshold = float(default)
    return source, steal_threshold
