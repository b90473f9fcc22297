import pytest

from cephnode.runner import RunError, set_runner
from cephnode.snap import (
    is_interface_connected,
    snap_check_active,
    snap_restart,
    snap_start,
    snap_stop,
)


class FakeRunner:
    def __init__(self):
        self.expected = []
        self.calls = []

    def expect(self, *command, output="", error=None):
        self.expected.append((command, output, error))

    def run_command(self, name, *args, stdin=None, timeout=None):
        command = (name, *args)
        self.calls.append(command)
        for position, (wanted, output, error) in enumerate(self.expected):
            if wanted == command:
                del self.expected[position]
                if error is not None:
                    raise error
                return output
        raise AssertionError(f"unexpected command {command}")


@pytest.fixture
def runner():
    fake = FakeRunner()
    previous = set_runner(fake)
    yield fake
    set_runner(previous)


def failure(*command):
    return RunError(command, exit_code=1, stderr="some errors")


def test_start_with_enable(runner):
    runner.expect("snapctl", "start", "microceph.osd", "--enable", output="ok")
    snap_start("osd", True)
    assert runner.calls == [("snapctl", "start", "microceph.osd", "--enable")]


def test_start_failure_raises(runner):
    runner.expect(
        "snapctl", "start", "microceph.osd", "--enable",
        error=failure("snapctl", "start", "microceph.osd", "--enable"),
    )
    with pytest.raises(RunError):
        snap_start("osd", True)


def test_stop_with_disable(runner):
    runner.expect("snapctl", "stop", "microceph.osd", "--disable", output="ok")
    snap_stop("osd", True)
    assert runner.calls == [("snapctl", "stop", "microceph.osd", "--disable")]


def test_stop_without_disable(runner):
    runner.expect("snapctl", "stop", "microceph.mon", output="ok")
    snap_stop("mon")
    assert runner.calls == [("snapctl", "stop", "microceph.mon")]


def test_stop_failure_raises(runner):
    runner.expect(
        "snapctl", "stop", "microceph.osd", "--disable",
        error=failure("snapctl", "stop", "microceph.osd", "--disable"),
    )
    with pytest.raises(RunError):
        snap_stop("osd", True)


def test_restart_plain(runner):
    runner.expect("snapctl", "restart", "microceph.mon", output="ok")
    snap_restart("mon", False)
    assert runner.calls == [("snapctl", "restart", "microceph.mon")]


def test_restart_reload_flag_precedes_unit(runner):
    runner.expect("snapctl", "restart", "--reload", "microceph.osd", output="ok")
    snap_restart("osd", True)
    assert runner.calls == [("snapctl", "restart", "--reload", "microceph.osd")]


def test_check_active_passes_for_active(runner):
    runner.expect("snapctl", "services", "microceph.rgw", output="active")
    snap_check_active("rgw")
    assert runner.calls == [("snapctl", "services", "microceph.rgw")]


def test_check_active_raises_for_inactive(runner):
    runner.expect("snapctl", "services", "microceph.rgw", output="microceph.rgw disabled inactive")
    with pytest.raises(RuntimeError, match="rgw service is not active"):
        snap_check_active("rgw")


def test_check_active_propagates_run_error(runner):
    runner.expect(
        "snapctl", "services", "microceph.mgr",
        error=failure("snapctl", "services", "microceph.mgr"),
    )
    with pytest.raises(RunError):
        snap_check_active("mgr")


def test_interface_connected(runner):
    runner.expect("snapctl", "is-connected", "dm-crypt", output="")
    assert is_interface_connected("dm-crypt") is True


def test_interface_not_connected(runner):
    runner.expect(
        "snapctl", "is-connected", "dm-crypt",
        error=failure("snapctl", "is-connected", "dm-crypt"),
    )
    assert is_interface_connected("dm-crypt") is False