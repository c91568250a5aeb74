import logging

import pytest

from spausedd.common import NO_NS_IN_MSEC, PROGRAM_NAME, shutdown_logging
from spausedd.detector import ControlSignals
from spausedd.steal import StealTimeSource


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    shutdown_logging()
    logger = logging.getLogger(PROGRAM_NAME)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def signals():
    s = ControlSignals()
    yield s
    s.close()


class FakeHost:
    """Clock, steal source and waiter sharing one simulated timeline.

    Each wait() consumes one (wall_ns, steal_ns) step from the script and
    advances time and steal by that much. Once the script is empty the
    host requests a stop, so run() performs exactly len(script) cycles.
    `during` maps a wait index to a callback run inside that wait.
    """

    START_NS = 5_000 * NO_NS_IN_MSEC

    def __init__(self, signals, script, during=None):
        self.signals = signals
        self.script = list(script)
        self.during = during or {}
        self.now = self.START_NS
        self.steal = 0
        self.waits = []
        self.calls = []
        self.source = _HostStealSource(self)

    def clock(self):
        self.calls.append("clock")
        return self.now

    def wait(self, timeout_ms):
        index = len(self.waits)
        self.waits.append(timeout_ms)
        wall, steal = self.script.pop(0)
        self.now += wall
        self.steal += steal
        if index in self.during:
            self.during[index]()
        if not self.script:
            self.signals.request_stop()
        return False


class _HostStealSource(StealTimeSource):
    name = "fake"

    def __init__(self, host):
        self.host = host

    def sample(self):
        self.host.calls.append("steal")
        return self.host.steal


@pytest.fixture
def make_host(signals):
    def make(script, during=None):
        return FakeHost(signals, script, during)
    return make
