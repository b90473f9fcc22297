"""Pool settings and OSD service state on the cluster."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from cephnode.runner import RunError, get_runner
from cephnode.snap import snap_start, snap_stop

log = logging.getLogger(__name__)


@dataclass
class CephPool:
    """A pool as reported by "ceph osd pool ls detail"."""

    id: int = 0
    name: str = ""
    application: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Any) -> "CephPool":
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object for a pool")
        pool_id = data.get("pool_id", 0)
        name = data.get("pool_name", "")
        application = data.get("application_metadata") or {}
        if isinstance(pool_id, bool) or not isinstance(pool_id, int):
            raise ValueError("pool_id is not an integer")
        if not isinstance(name, str):
            raise ValueError("pool_name is not a string")
        if not isinstance(application, dict):
            raise ValueError("application_metadata is not an object")
        return cls(id=pool_id, name=name, application=application)


def _ceph(*args: str) -> str:
    return get_runner().run_command("ceph", *args)


def _pool_names() -> List[str]:
    try:
        output = _ceph("osd", "pool", "ls", "--format", "json")
    except RunError as exc:
        raise RuntimeError(f"failed to list pools: {exc}") from exc
    try:
        names = json.loads(output)
    except ValueError as exc:
        raise RuntimeError(f"Failed to parse OSD pool names: {exc}") from exc
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise RuntimeError("Failed to parse OSD pool names: expected a list of strings")
    return names


def set_replication_factor(pools: Iterable[str], size: int) -> None:
    """Set the default pool size and apply it to the given pools, or to all with "*"."""
    ssize = str(size)
    try:
        _ceph("config", "set", "global", "osd_pool_default_size", ssize)
    except RunError as exc:
        raise RuntimeError(f"failed to set pool size default: {exc}") from exc

    allow_size_one = "true" if size == 1 else "false"
    try:
        _ceph("config", "set", "global", "mon_allow_pool_size_one", allow_size_one)
    except RunError as exc:
        raise RuntimeError(f"failed to set size one pool config option: {exc}") from exc

    targets = list(pools)
    if targets == ["*"]:
        targets = _pool_names()

    for pool in targets:
        pool = pool.strip()
        if not pool:
            continue
        try:
            _ceph("osd", "pool", "set", pool, "size", ssize, "--yes-i-really-mean-it")
        except RunError as exc:
            raise RuntimeError(f"failed to set pool size for {pool}: {exc}") from exc


def get_osd_pools() -> List[Dict[str, Any]]:
    """Return the full configuration of every pool."""
    pools = []
    for name in _pool_names():
        try:
            output = _ceph("osd", "pool", "get", name, "all", "--format", "json")
        except RunError as exc:
            raise RuntimeError(
                f"Failed to fetch configuration for OSD pool {name!r}: {exc}"
            ) from exc
        try:
            config = json.loads(output)
        except ValueError as exc:
            raise RuntimeError(f"Failed to parse {name!r} OSD pool configuration: {exc}") from exc
        if not isinstance(config, dict):
            raise RuntimeError(f"Failed to parse {name!r} OSD pool configuration: not an object")
        pools.append(config)
    return pools


def list_pools(application: str = "") -> List[CephPool]:
    """Return the cluster's pools, only those tagged with the application if one is given.

    Failures to query or parse yield an empty list.
    """
    try:
        output = _ceph("osd", "pool", "ls", "detail", "--format", "json")
    except RunError:
        return []
    log.info("OSD: Pool list %s", output)
    try:
        raw = json.loads(output)
        if not isinstance(raw, list):
            raise ValueError("expected a JSON array of pools")
        pools = [CephPool.from_json(item) for item in raw]
    except ValueError as exc:
        log.warning("Failed to Unmarshal pool details: %s", exc)
        return []

    if not application:
        return pools

    matches = [pool for pool in pools if application in pool.application]
    for pool in matches:
        log.info("OSD: Found match(%s) for application(%s)", pool.name, application)
    log.info("OSD: Filtered Pool list %s", matches)
    return matches


def set_osd_state(up: bool) -> None:
    """Start and enable, or stop and disable, the OSD service."""
    try:
        if up:
            snap_start("osd", True)
        else:
            snap_stop("osd", True)
    except RunError as exc:
        raise RuntimeError(f"failed to change the state of osd service: {exc}") from exc


def set_osd_noout_flag(enabled: bool) -> None:
    """Set or unset the cluster's noout flag."""
    command = "set" if enabled else "unset"
    try:
        _ceph("osd", command, "noout")
    except RunError as exc:
        log.error("failed to %s noout flag: %s", command, exc)
        raise RuntimeError(f"failed to {command} noout flag: {exc}") from exc


def is_osd_noout_set() -> bool:
    """Return whether the noout flag appears in the OSD map."""
    try:
        output = _ceph("osd", "dump")
    except RunError as exc:
        log.error("failed to dump osd info: %s", exc)
        raise RuntimeError(f"failed to dump osd info: {exc}") from exc
    log.info("osd dump: %s", output)
    return "noout" in output