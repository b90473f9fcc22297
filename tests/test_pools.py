import json

import pytest

from cephnode.pools import (
    CephPool,
    get_osd_pools,
    is_osd_noout_set,
    list_pools,
    set_osd_noout_flag,
    set_osd_state,
    set_replication_factor,
)
from cephnode.runner import RunError, set_runner


class FakeRunner:
    def __init__(self):
        self.responses = {}
        self.calls = []

    def on(self, *command, result="ok"):
        self.responses.setdefault(tuple(command), []).append(result)

    def run_command(self, name, *args, stdin=None, timeout=None):
        command = (name, *args)
        self.calls.append(command)
        queue = self.responses.get(command)
        if not queue:
            raise AssertionError(f"unexpected command {command}")
        result = queue.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def runner():
    fake = FakeRunner()
    previous = set_runner(fake)
    yield fake
    set_runner(previous)


def _fail(*command):
    return RunError(command, exit_code=1, stderr="some errors")


def test_set_osd_state_okay(runner):
    runner.on("snapctl", "start", "microceph.osd", "--enable")
    runner.on("snapctl", "stop", "microceph.osd", "--disable")
    set_osd_state(True)
    set_osd_state(False)
    assert runner.calls == [
        ("snapctl", "start", "microceph.osd", "--enable"),
        ("snapctl", "stop", "microceph.osd", "--disable"),
    ]


def test_set_osd_state_fail(runner):
    runner.on("snapctl", "start", "microceph.osd", "--enable", result=_fail("snapctl"))
    runner.on("snapctl", "stop", "microceph.osd", "--disable", result=_fail("snapctl"))
    with pytest.raises(RuntimeError, match="failed to change the state of osd service"):
        set_osd_state(True)
    with pytest.raises(RuntimeError, match="failed to change the state of osd service"):
        set_osd_state(False)


def test_set_osd_noout_flag_okay(runner):
    runner.on("ceph", "osd", "set", "noout")
    runner.on("ceph", "osd", "unset", "noout")
    set_osd_noout_flag(True)
    set_osd_noout_flag(False)
    assert runner.calls == [("ceph", "osd", "set", "noout"), ("ceph", "osd", "unset", "noout")]


def test_set_osd_noout_flag_fail(runner):
    runner.on("ceph", "osd", "set", "noout", result=_fail("ceph"))
    with pytest.raises(RuntimeError, match="failed to set noout flag"):
        set_osd_noout_flag(True)


def test_is_osd_noout_set_okay(runner):
    runner.on("ceph", "osd", "dump", result="flags sortbitwise,noout")
    runner.on("ceph", "osd", "dump", result="flags sortbitwise")
    assert is_osd_noout_set() is True
    assert is_osd_noout_set() is False


def test_is_osd_noout_set_fail(runner):
    runner.on("ceph", "osd", "dump", result=_fail("ceph"))
    with pytest.raises(RuntimeError, match="failed to dump osd info"):
        is_osd_noout_set()


POOL_DETAIL = json.dumps(
    [
        {"pool_id": 1, "pool_name": ".mgr", "application_metadata": {"mgr": {}}},
        {"pool_id": 2, "pool_name": "rbdpool", "application_metadata": {"rbd": {}}},
        {"pool_id": 3, "pool_name": "other", "application_metadata": {}},
    ]
)


def test_list_pools_unfiltered(runner):
    runner.on("ceph", "osd", "pool", "ls", "detail", "--format", "json", result=POOL_DETAIL)
    pools = list_pools("")
    assert [p.name for p in pools] == [".mgr", "rbdpool", "other"]
    assert pools[1] == CephPool(id=2, name="rbdpool", application={"rbd": {}})


def test_list_pools_filtered(runner):
    runner.on("ceph", "osd", "pool", "ls", "detail", "--format", "json", result=POOL_DETAIL)
    pools = list_pools("rbd")
    assert [(p.id, p.name) for p in pools] == [(2, "rbdpool")]


def test_list_pools_command_failure_gives_empty(runner):
    runner.on("ceph", "osd", "pool", "ls", "detail", "--format", "json", result=_fail("ceph"))
    assert list_pools("rbd") == []


def test_list_pools_bad_json_gives_empty(runner):
    runner.on("ceph", "osd", "pool", "ls", "detail", "--format", "json", result="{nope")
    assert list_pools("") == []


def test_set_replication_factor_named_pools(runner):
    runner.on("ceph", "config", "set", "global", "osd_pool_default_size", "2")
    runner.on("ceph", "config", "set", "global", "mon_allow_pool_size_one", "false")
    runner.on("ceph", "osd", "pool", "set", "foo", "size", "2", "--yes-i-really-mean-it")
    set_replication_factor([" foo ", ""], 2)
    assert runner.calls[-1] == (
        "ceph", "osd", "pool", "set", "foo", "size", "2", "--yes-i-really-mean-it",
    )
    assert len(runner.calls) == 3


def test_set_replication_factor_all_pools_size_one(runner):
    runner.on("ceph", "config", "set", "global", "osd_pool_default_size", "1")
    runner.on("ceph", "config", "set", "global", "mon_allow_pool_size_one", "true")
    runner.on("ceph", "osd", "pool", "ls", "--format", "json", result='["a", "b"]')
    runner.on("ceph", "osd", "pool", "set", "a", "size", "1", "--yes-i-really-mean-it")
    runner.on("ceph", "osd", "pool", "set", "b", "size", "1", "--yes-i-really-mean-it")
    set_replication_factor(["*"], 1)
    assert [c[4] for c in runner.calls[-2:]] == ["a", "b"]


def test_set_replication_factor_pool_failure(runner):
    runner.on("ceph", "config", "set", "global", "osd_pool_default_size", "3")
    runner.on("ceph", "config", "set", "global", "mon_allow_pool_size_one", "false")
    runner.on(
        "ceph", "osd", "pool", "set", "foo", "size", "3", "--yes-i-really-mean-it",
        result=_fail("ceph"),
    )
    with pytest.raises(RuntimeError, match="failed to set pool size for foo"):
        set_replication_factor(["foo"], 3)


def test_set_replication_factor_default_failure(runner):
    runner.on(
        "ceph", "config", "set", "global", "osd_pool_default_size", "3", result=_fail("ceph")
    )
    with pytest.raises(RuntimeError, match="failed to set pool size default"):
        set_replication_factor(["foo"], 3)


def test_get_osd_pools(runner):
    runner.on("ceph", "osd", "pool", "ls", "--format", "json", result='["foo"]')
    runner.on(
        "ceph", "osd", "pool", "get", "foo", "all", "--format", "json",
        result='{"pool": "foo", "size": 3}',
    )
    assert get_osd_pools() == [{"pool": "foo", "size": 3}]


def test_get_osd_pools_bad_names(runner):
    runner.on("ceph", "osd", "pool", "ls", "--format", "json", result="garbage")
    with pytest.raises(RuntimeError, match="Failed to parse OSD pool names"):
        get_osd_pools()