"""
Scheduling latency detection loop.

Each cycle takes a sample (steal time, monotonic time), sleeps for a third of
the timeout and takes another sample. If more wall time than the timeout
passed, the process was not scheduled on time; the steal time delta over the
same window tells whether the host (or hypervisor) was the likely cause.

Sample ordering matters. Fetching steal time can block (file I/O, a call into
the guest library), so the cycle start fetches steal time *before* the clock
and the cycle end reads the clock *before* steal time. Both keep the
recorded wall time as close to the sleep as possible.
"""

import logging
import os
import select
import time
from dataclasses import dataclass

from .common import (
    DEFAULT_MAX_STEAL_THRESHOLD, DEFAULT_TIMEOUT, EXIT_POLL_ERROR,
    MAX_STEAL_THRESHOLD, MAX_TIMEOUT, NO_MSEC_IN_SEC, NO_NS_IN_MSEC,
    NO_NS_IN_SEC, PROGRAM_NAME, log_perror,
)
from .steal import StealTimeSource

log = logging.getLogger(__name__)


def monotonic_ns() -> int:
    return time.monotonic_ns()


@dataclass(frozen=True)
class Sample:
    wall_ns: int
    steal_ns: int


@dataclass(frozen=True)
class CycleResult:
    wall_delta_ns: int
    steal_delta_ns: int
    steal_percent: float
    breached: bool

    @classmethod
    def compute(cls, start: Sample, end: Sample,
                max_allowed_diff_ns: int) -> "CycleResult":
        wall_delta = end.wall_ns - start.wall_ns
        steal_delta = end.steal_ns - start.steal_ns
        if wall_delta > 0:
            steal_percent = 100 * steal_delta / wall_delta
        else:
            steal_percent = 0.0
        return cls(wall_delta, steal_delta, steal_percent,
                   wall_delta > max_allowed_diff_ns)


@dataclass(frozen=True)
class DetectionConfig:
    """Validated loop parameters. Immutable once the loop starts."""

    timeout_ms: int = DEFAULT_TIMEOUT
    steal_threshold: float = float(DEFAULT_MAX_STEAL_THRESHOLD)

    def __post_init__(self):
        if not 1 <= self.timeout_ms <= MAX_TIMEOUT:
            raise ValueError(f"Timeout {self.timeout_ms} is invalid")
        if not 0 < self.steal_threshold <= MAX_STEAL_THRESHOLD:
            raise ValueError(
                f"Steal percent threshold {self.steal_threshold} is invalid")

    @property
    def max_allowed_diff_ns(self) -> int:
        return self.timeout_ms * NO_NS_IN_MSEC

    @property
    def poll_interval_ms(self) -> int:
        # At least two samples per timeout window
        return max(self.timeout_ms // 3, 0)


@dataclass
class RunStatistics:
    start_wall_ns: int
    not_scheduled: int = 0

    def increment(self) -> None:
        self.not_scheduled += 1

    def report(self, now_ns: int) -> tuple[float, int]:
        """Return (seconds since start, times not scheduled). Does not reset."""
        return (now_ns - self.start_wall_ns) / NO_NS_IN_SEC, self.not_scheduled


# =============================================================================
# CONTROL SIGNALS
# =============================================================================

class ControlSignals:
    """Stop and dump-statistics flags set from signal handlers.

    Setting a flag is a single attribute store plus a non-blocking write to a
    wakeup pipe, so it is safe from a signal handler and never blocks. The
    pipe lets InterruptibleWait return early instead of sleeping out the
    rest of the interval.
    """

    def __init__(self):
        self._stop = False
        self._dump = False
        self._rfd, self._wfd = os.pipe()
        os.set_blocking(self._rfd, False)
        os.set_blocking(self._wfd, False)

    def fileno(self) -> int:
        return self._rfd

    def _wake(self) -> None:
        try:
            os.write(self._wfd, b"\0")
        except BlockingIOError:
            # Pipe full, a wakeup is already pending
            pass

    def request_stop(self) -> None:
        self._stop = True
        self._wake()

    def request_dump(self) -> None:
        self._dump = True
        self._wake()

    @property
    def stop_requested(self) -> bool:
        return self._stop

    @property
    def dump_requested(self) -> bool:
        return self._dump

    def take_stop(self) -> bool:
        if self._stop:
            self._stop = False
            return True
        return False

    def take_dump(self) -> bool:
        if self._dump:
            self._dump = False
            return True
        return False

    def drain(self) -> None:
        try:
            while os.read(self._rfd, 512):
                pass
        except BlockingIOError:
            pass

    def close(self) -> None:
        os.close(self._rfd)
        os.close(self._wfd)


class InterruptibleWait:
    """Bounded sleep that ends early when a control signal is raised."""

    def __init__(self, signals: ControlSignals):
        self.signals = signals
        self.poller = select.poll()
        self.poller.register(signals.fileno(), select.POLLIN)

    def wait(self, timeout_ms: int) -> bool:
        """Sleep up to timeout_ms. Returns True if woken early.

        OSError other than EINTR propagates to the caller.
        """
        try:
            events = self.poller.poll(max(timeout_ms, 0))
        except InterruptedError:
            return True
        if events:
            self.signals.drain()
            return True
        return False


# =============================================================================
# DETECTOR
# =============================================================================

class Detector:
    """Runs detection cycles until a stop is requested."""

    def __init__(self, config: DetectionConfig, steal_source: StealTimeSource,
                 signals: ControlSignals, clock=monotonic_ns, waiter=None,
                 metrics=None):
        self.config = config
        self.steal_source = steal_source
        self.signals = signals
        self.clock = clock
        self.waiter = waiter if waiter is not None else InterruptibleWait(signals)
        self.metrics = metrics
        self.stats: RunStatistics | None = None
        self.cycles = 0

    def sample_start(self) -> Sample:
        # Steal time can block, fetch it before the clock
        steal = self.steal_source.sample()
        return Sample(self.clock(), steal)

    def sample_end(self) -> Sample:
        # Clock first, the steal fetch latency goes to the next cycle
        now = self.clock()
        return Sample(now, self.steal_source.sample())

    def suspend(self) -> None:
        try:
            self.waiter.wait(self.config.poll_interval_ms)
        except InterruptedError:
            pass
        except OSError as e:
            log_perror(log, logging.ERROR, "Poll error", e)
            raise SystemExit(EXIT_POLL_ERROR)

    def evaluate(self, start: Sample, end: Sample) -> CycleResult:
        result = CycleResult.compute(start, end, self.config.max_allowed_diff_ns)

        if result.breached:
            log.error("Not scheduled for %0.4fs (threshold is %0.4fs), "
                      "steal time is %0.4fs (%0.2f%%)",
                      result.wall_delta_ns / NO_NS_IN_SEC,
                      self.config.max_allowed_diff_ns / NO_NS_IN_SEC,
                      result.steal_delta_ns / NO_NS_IN_SEC,
                      result.steal_percent)

            if result.steal_percent > self.config.steal_threshold:
                log.warning("Steal time is > %0.1f%%, this is usually because "
                            "of overloaded host machine",
                            self.config.steal_threshold)

            self.stats.increment()
            if self.metrics is not None:
                self.metrics.publish(self.stats, end.wall_ns, result)

        return result

    def report(self) -> tuple[float, int]:
        now = self.clock()
        elapsed, count = self.stats.report(now)
        log.info("During %0.4fs runtime %s was %dx not scheduled on time",
                 elapsed, PROGRAM_NAME, count)
        if self.metrics is not None:
            self.metrics.publish(self.stats, now)
        return elapsed, count

    def run(self) -> RunStatistics:
        """Loop until stop is requested, then emit the final report."""
        self.stats = RunStatistics(self.clock())

        log.info("Running main poll loop with maximum timeout %d "
                 "and steal threshold %0.0f%%",
                 self.config.timeout_ms, self.config.steal_threshold)

        # Cycles are chained: each end sample starts the next cycle.
        start = None
        while not self.signals.take_stop():
            if start is None:
                start = self.sample_start()

            if self.signals.take_dump():
                self.report()

            log.debug("now = %0.4fs, max_diff = %0.4fs, poll_timeout = %0.4fs, "
                      "steal_time = %0.4fs",
                      start.wall_ns / NO_NS_IN_SEC,
                      self.config.max_allowed_diff_ns / NO_NS_IN_SEC,
                      self.config.poll_interval_ms / NO_MSEC_IN_SEC,
                      start.steal_ns / NO_NS_IN_SEC)

            self.suspend()

            end = self.sample_end()
            self.evaluate(start, end)
            self.cycles += 1
            start = end

        log.info("Main poll loop stopped")
        self.report()
        return self.stats
