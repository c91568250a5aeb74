import logging
import os

import pytest

from spausedd import steal
from spausedd.common import TRACE
from spausedd.steal import (
    GuestLibError, GuestLibStealSource, KernelStealSource, clock_tick,
    parse_cpu_line, select_steal_source, ticks_to_ns,
)

PROC_STAT = """\
cpu  10132153 290696 3084719 46828483 16683 0 25195 250 0 0
cpu0 1393280 32966 572056 13343292 6130 0 17875 100 0 0
cpu1 1335555 28590 506281 11189218 3506 0 3364 150 0 0
intr 114930548 113199788 3 0 5 263 0 4 [... lots more numbers ...]
ctxt 1990473
btime 1062191376
processes 2915
procs_running 1
procs_blocked 0
"""


@pytest.fixture
def proc_stat(tmp_path):
    path = tmp_path / "stat"
    path.write_text(PROC_STAT)
    return path


# /proc/stat PARSING

def test_parse_aggregate_line():
    stats = parse_cpu_line("cpu  1 2 3 4 5 6 7 8 9 10\n")
    assert stats == {"user": 1, "nice": 2, "system": 3, "idle": 4,
                     "iowait": 5, "irq": 6, "softirq": 7, "steal": 8}


def test_parse_ignores_per_core_lines():
    assert parse_cpu_line("cpu0 1 2 3 4 5 6 7 8 0 0") is None


def test_parse_old_kernel_without_steal():
    stats = parse_cpu_line("cpu 1 2 3 4 5")
    assert stats["idle"] == 4
    assert stats["steal"] == 0


@pytest.mark.parametrize("line", [
    "cpu 1 2 3 4", "cpu", "", "intr 1 2 3 4 5 6", "cpu a b c d e f",
])
def test_parse_rejects_malformed(line):
    assert parse_cpu_line(line) is None


def test_ticks_to_ns():
    assert ticks_to_ns(250, 100) == 2_500_000_000
    assert ticks_to_ns(250, 1000) == 250_000_000
    assert ticks_to_ns(0, 100) == 0


# KERNEL SOURCE

def test_kernel_source_uses_aggregate_steal(proc_stat):
    assert KernelStealSource(proc_stat, tick_hz=100).sample() == 2_500_000_000


def test_kernel_source_uses_platform_tick(proc_stat, monkeypatch):
    monkeypatch.setattr(os, "sysconf", lambda name: 250)
    assert KernelStealSource(proc_stat).sample() == 250 * 4_000_000


def test_kernel_source_tick_fallback(proc_stat, monkeypatch, caplog):
    def no_sysconf(name):
        raise ValueError("unrecognized configuration name")

    caplog.set_level(TRACE, logger="spausedd")
    monkeypatch.setattr(os, "sysconf", no_sysconf)
    assert clock_tick() == 100
    assert KernelStealSource(proc_stat).sample() == 2_500_000_000
    assert "Can't get _SC_CLK_TCK, using 100" in caplog.messages


def test_kernel_source_trace(proc_stat, caplog):
    caplog.set_level(TRACE, logger="spausedd")
    KernelStealSource(proc_stat, tick_hz=100).sample()
    assert any("steal = 250" in m and "factor = 10000000" in m
               for m in caplog.messages)


def test_kernel_source_missing_file(tmp_path):
    assert KernelStealSource(tmp_path / "missing", tick_hz=100).sample() == 0


def test_kernel_source_malformed_file(tmp_path):
    path = tmp_path / "stat"
    path.write_text("garbage\nintr 1 2 3\n")
    assert KernelStealSource(path, tick_hz=100).sample() == 0


def test_kernel_source_binary_garbage(tmp_path):
    path = tmp_path / "stat"
    path.write_bytes(b"\xff\xfe\x00cpu 1 2")
    assert KernelStealSource(path, tick_hz=100).sample() == 0


def test_kernel_source_follows_counter(tmp_path):
    path = tmp_path / "stat"
    source = KernelStealSource(path, tick_hz=100)
    path.write_text("cpu 1 2 3 4 5 6 7 10\n")
    first = source.sample()
    path.write_text("cpu 1 2 3 4 5 6 7 16\n")
    assert source.sample() - first == 60_000_000


# GUEST LIBRARY SOURCE

class FakeGuestLib:
    def __init__(self, stolen=(), used=0, elapsed=0, fail=None):
        self.stolen = list(stolen)
        self.used = used
        self.elapsed = elapsed
        self.fail = fail or set()
        self.opened = False
        self.closed = False
        self.updates = 0

    def _maybe_fail(self, call):
        if call in self.fail:
            raise GuestLibError(call, 3, "Not enabled")

    def open(self):
        self._maybe_fail("open")
        self.opened = True

    def close(self):
        self._maybe_fail("close")
        self.closed = True

    def update_info(self):
        self._maybe_fail("update_info")
        self.updates += 1

    def cpu_stolen_ms(self):
        self._maybe_fail("cpu_stolen_ms")
        return self.stolen.pop(0)

    def cpu_used_ms(self):
        self._maybe_fail("cpu_used_ms")
        return self.used

    def elapsed_ms(self):
        self._maybe_fail("elapsed_ms")
        return self.elapsed


def test_guestlib_source_converts_ms():
    lib = FakeGuestLib(stolen=[42, 50])
    source = GuestLibStealSource(lib)
    assert source.sample() == 42_000_000
    assert source.sample() == 50_000_000
    assert lib.updates == 2


def test_guestlib_source_trace_deltas(caplog):
    caplog.set_level(TRACE, logger="spausedd")
    source = GuestLibStealSource(FakeGuestLib(stolen=[10, 25], used=7, elapsed=9))
    source.sample()
    source.sample()
    assert caplog.messages[-1] == (
        "guestlib steal stats: "
        "stolen = 25 (15), used = 7 (0), elapsed = 9 (0)")


@pytest.mark.parametrize("call, message", [
    ("update_info", "Can't update stolen time from guestlib: Not enabled"),
    ("cpu_stolen_ms", "Can't get stolen time from guestlib: Not enabled"),
])
def test_guestlib_failure_reads_zero(call, message, caplog):
    caplog.set_level(logging.DEBUG, logger="spausedd")
    source = GuestLibStealSource(FakeGuestLib(stolen=[42], fail={call}))
    assert source.sample() == 0
    assert [r.levelno for r in caplog.records] == [logging.DEBUG]
    assert caplog.messages == [message]


def test_guestlib_used_and_elapsed_failures_ignored():
    lib = FakeGuestLib(stolen=[3], fail={"cpu_used_ms", "elapsed_ms"})
    assert GuestLibStealSource(lib).sample() == 3_000_000


def test_guestlib_close_failure_is_logged(caplog):
    caplog.set_level(logging.DEBUG, logger="spausedd")
    GuestLibStealSource(FakeGuestLib(fail={"close"})).close()
    assert caplog.messages == ["Can't close guestlib handle: Not enabled"]


# SELECTION

def _missing_library():
    raise OSError("libvmGuestLib.so: cannot open shared object file")


def test_select_kernel_without_guestlib(proc_stat):
    source, threshold = select_steal_source(guestlib_loader=_missing_library,
                                            proc_stat=proc_stat)
    assert isinstance(source, KernelStealSource)
    assert source.name == "kernel"
    assert threshold == 10.0


def test_select_kernel_when_handle_fails(caplog):
    caplog.set_level(logging.DEBUG, logger="spausedd")
    lib = FakeGuestLib(fail={"open"})
    source, threshold = select_steal_source(guestlib_loader=lambda: lib)
    assert isinstance(source, KernelStealSource)
    assert threshold == 10.0
    assert "Can't open guestlib handle: Not enabled" in caplog.messages


def test_select_guestlib_raises_default_threshold(caplog):
    caplog.set_level(logging.INFO, logger="spausedd")
    lib = FakeGuestLib(stolen=[1])
    source, threshold = select_steal_source(guestlib_loader=lambda: lib)
    assert isinstance(source, GuestLibStealSource)
    assert source.name == "vmguestlib"
    assert lib.opened
    assert threshold == 100.0
    assert "Using VMGuestLib" in caplog.messages


def test_select_keeps_user_threshold():
    lib = FakeGuestLib()
    _, threshold = select_steal_source(5.0, guestlib_loader=lambda: lib)
    assert threshold == 5.0
    _, threshold = select_steal_source(5.0, guestlib_loader=_missing_library)
    assert threshold == 5.0


def test_select_without_guestlib_support():
    source, threshold = select_steal_source(guestlib_loader=None)
    assert isinstance(source, KernelStealSource)
    assert threshold == 10.0


def test_vmguestlib_load_missing_library():
    with pytest.raises(OSError):
        steal.VMGuestLib.load("libdoes-not-exist-spausedd.so")
