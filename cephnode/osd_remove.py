"""Removing OSDs from the cluster and from this node."""

from __future__ import annotations

import errno
import json
import logging
import os
import shutil
import stat
import time
from contextvars import ContextVar
from pathlib import Path
from typing import Optional, Sequence, Union

from cephnode.disks import OsdStore
from cephnode.runner import RunError, get_runner

log = logging.getLogger(__name__)

HOST_RULE = "microceph_auto_host"
PURGE_RETRIES = 10
WIPE_RETRIES = 8
SAFETY_RETRIES = 16
BACKOFF_STEP = 0.1

_deadline: ContextVar[Optional[float]] = ContextVar("osd_removal_deadline", default=None)


class OSDRemovalError(RuntimeError):
    """An OSD could not be removed."""


def _ceph(*args: str) -> str:
    return get_runner().run_command("ceph", *args)


def _backoff(attempt: int) -> float:
    return (2**attempt) * BACKOFF_STEP


def _check_deadline() -> None:
    deadline = _deadline.get()
    if deadline is not None and time.monotonic() > deadline:
        raise TimeoutError("removal deadline exceeded")


def _pause(delay: float) -> None:
    deadline = _deadline.get()
    if deadline is not None and time.monotonic() + delay > deadline:
        raise TimeoutError("removal deadline exceeded")
    time.sleep(delay)


def sanity_check(store: OsdStore, osd: int) -> None:
    """Raise unless the OSD number is valid and recorded in the database."""
    if osd < 0:
        raise OSDRemovalError("OSD must be a positive integer")
    if not store.have_osd(osd):
        raise OSDRemovalError(f"osd.{osd} not found")


def check_min_osds(store: OsdStore, osd: int) -> None:
    """Raise unless more than three OSDs are recorded, so three remain afterwards."""
    count = len(store.list_disks())
    if count <= 3:
        raise OSDRemovalError(
            f"cannot remove osd.{osd} we need at least 3 OSDs, have {count}"
        )


def _default_crush_rule() -> str:
    return _ceph("config", "get", "mon", "osd_pool_default_crush_rule").strip()


def _crush_rule_id(name: str) -> str:
    output = _ceph("osd", "crush", "rule", "dump", name)
    try:
        data = json.loads(output)
    except ValueError as exc:
        raise OSDRemovalError(f"failed to parse crush rule {name}: {exc}") from exc
    if not isinstance(data, dict) or "rule_id" not in data:
        raise OSDRemovalError(f"crush rule {name} has no rule_id")
    return str(data["rule_id"])


def _is_downgrade_needed(store: OsdStore, osd: int) -> bool:
    current = _default_crush_rule()
    host_rule = _crush_rule_id(HOST_RULE)
    if current != host_rule:
        log.info("No need to downgrade auto failure domain, current rule is %s", current)
        return False
    nodes = store.member_count_excluding(osd)
    log.info("Number of nodes excluding osd.%d: %d", osd, nodes)
    return nodes < 3


def _scale_down_failure_domain(store: OsdStore, osd: int) -> None:
    needed = _is_downgrade_needed(store, osd)
    log.debug("Downgrade needed: %s", needed)
    if not needed:
        return
    try:
        store.switch_failure_domain("host", "osd")
    except Exception as exc:
        raise OSDRemovalError(f"failed to switch failure domain: {exc}") from exc


def reweight_osd(osd: int, weight: float) -> None:
    """Set the OSD's crush weight; a failure is only logged."""
    log.debug("Reweighting osd.%d to %f", osd, weight)
    try:
        _ceph("osd", "crush", "reweight", f"osd.{osd}", f"{weight:f}")
    except RunError as exc:
        log.warning("Failed to reweight osd.%d: %s", osd, exc)


def purge_osd(osd: int) -> None:
    """Purge the OSD from the cluster, retrying while the cluster reports it busy."""
    error: Optional[RunError] = None
    delay = 0.0
    for attempt in range(PURGE_RETRIES):
        try:
            _ceph("osd", "purge", f"osd.{osd}", "--yes-i-really-mean-it")
        except RunError as exc:
            error = exc
        else:
            error = None
            break
        if error.exit_code is None:
            log.warning("Purge failed with non-exit error: %s", error)
            break
        if error.exit_code != errno.EBUSY:
            log.warning("Purge failed with unexpected exit error: %s", error)
            break
        log.info("Purge failed %s, retrying in %ss", error, delay)
        delay = _backoff(attempt)
        _pause(delay)

    if error is not None:
        log.error("Failed to purge osd.%d: %s", osd, error)
        raise OSDRemovalError(f"failed to purge osd.{osd}: {error}") from error
    log.info("osd.%d purged", osd)


def wipe_device(path: str) -> None:
    """Zero the start of a device, retrying; a lasting failure is only logged."""
    from cephnode.disks import timeout_wipe

    error: Optional[Exception] = None
    delay = 0.0
    for attempt in range(WIPE_RETRIES):
        try:
            timeout_wipe(path)
        except RunError as exc:
            error = exc
        else:
            error = None
            break
        log.info("Wipe failed %s, retrying in %ss", error, delay)
        delay = _backoff(attempt)
        _pause(delay)
    if error is not None:
        log.warning("Fault during device wipe: %s", error)


def clear_storage(store: OsdStore, osd: int) -> None:
    """Wipe the OSD's device if its recorded path leads to one."""
    path = store.osd_path(osd)
    info = os.lstat(path)
    if stat.S_ISLNK(info.st_mode):
        info = os.stat(path)
    if stat.S_ISBLK(info.st_mode) or stat.S_ISCHR(info.st_mode):
        wipe_device(path)


def out_down_osd(osd: int) -> None:
    """Mark the OSD out and down."""
    for state in ("out", "down"):
        try:
            _ceph("osd", state, f"osd.{osd}")
        except RunError as exc:
            log.error("Failed to take osd.%d %s: %s", osd, state, exc)
            raise OSDRemovalError(f"failed to take osd.{osd} {state}: {exc}") from exc


def is_safe_to_stop(osds: Sequence[int]) -> bool:
    """Return whether the cluster reports the OSDs ok to stop."""
    try:
        _ceph("osd", "ok-to-stop", *(f"osd.{osd}" for osd in osds))
    except RunError:
        return False
    return True


def is_safe_to_destroy(osd: int) -> bool:
    """Return whether the cluster reports the OSD safe to destroy."""
    try:
        _ceph("osd", "safe-to-destroy", f"osd.{osd}")
    except RunError:
        return False
    return True


def safety_check_stop(osds: Sequence[int]) -> None:
    """Wait, with growing pauses, until the OSDs are ok to stop."""
    for attempt in range(SAFETY_RETRIES):
        if is_safe_to_stop(osds):
            log.info("osd.%s ok to stop", list(osds))
            return
        delay = _backoff(attempt)
        log.info("osd.%s not ok to stop, retrying in %ss", list(osds), delay)
        _pause(delay)
    log.error("osd.%s failed to reach ok-to-stop", list(osds))
    raise OSDRemovalError(f"osd.{list(osds)} failed to reach ok-to-stop")


def safety_check_destroy(osd: int) -> None:
    """Wait, with growing pauses, until the OSD is safe to destroy."""
    for attempt in range(SAFETY_RETRIES):
        if is_safe_to_destroy(osd):
            log.info("osd.%d safe to destroy", osd)
            return
        delay = _backoff(attempt)
        log.info("osd.%d not safe to destroy, retrying in %ss", osd, delay)
        _pause(delay)
    log.error("osd.%d failed to reach safe-to-destroy", osd)
    raise OSDRemovalError(f"osd.{osd} failed to reach safe-to-destroy")


def remove_osd_config(osd: int, data_path: Union[str, Path, None] = None) -> None:
    """Remove the OSD's data directory on this node."""
    base = Path(data_path) if data_path is not None else Path(
        os.environ.get("SNAP_COMMON", "")
    ) / "data"
    target = base / "osd" / f"ceph-{osd}"
    try:
        if target.is_symlink() or target.is_file():
            target.unlink()
        elif target.exists():
            shutil.rmtree(target)
    except OSError as exc:
        log.error("Failed to remove osd.%d config: %s", osd, exc)
        raise OSDRemovalError(f"failed to remove osd.{osd} config: {exc}") from exc


def have_osd_in_ceph(osd: int) -> bool:
    """Return whether the OSD appears in the cluster's OSD tree."""
    try:
        output = _ceph("osd", "tree", "-f", "json")
    except RunError as exc:
        log.error("Failed to get ceph osd tree: %s", exc)
        raise OSDRemovalError(f"failed to get ceph osd tree: {exc}") from exc
    try:
        tree = json.loads(output)
        if not isinstance(tree, dict):
            raise ValueError("expected a JSON object")
        nodes = tree.get("nodes") or []
        if not isinstance(nodes, list):
            raise ValueError("nodes is not a list")
    except ValueError as exc:
        log.error("Failed to parse ceph osd tree: %s", exc)
        raise OSDRemovalError(f"failed to parse ceph osd tree: {exc}") from exc
    return any(
        isinstance(node, dict) and node.get("type") == "osd" and node.get("id") == osd
        for node in nodes
    )


def kill_osd(osd: int) -> None:
    """Terminate the OSD's daemon process."""
    try:
        get_runner().run_command("pkill", "-f", f"ceph-osd .* --id {osd}$")
    except RunError as exc:
        log.error("Failed to kill osd.%d: %s", osd, exc)
        raise OSDRemovalError(f"failed to kill osd.{osd}: {exc}") from exc


def _do_remove(store: OsdStore, osd: int, bypass_safety: bool) -> None:
    sanity_check(store, osd)
    if not bypass_safety:
        check_min_osds(store, osd)
    _scale_down_failure_domain(store, osd)
    _check_deadline()

    try:
        present = have_osd_in_ceph(osd)
    except OSDRemovalError as exc:
        raise OSDRemovalError(f"failed to check if osd.{osd} is present in Ceph: {exc}") from exc

    if present:
        reweight_osd(osd, 0)
        if not bypass_safety:
            safety_check_stop([osd])
        _check_deadline()
        out_down_osd(osd)
        try:
            kill_osd(osd)
        except OSDRemovalError:
            pass
        if not bypass_safety:
            safety_check_destroy(osd)
        _check_deadline()
        purge_osd(osd)

    try:
        clear_storage(store, osd)
    except Exception as exc:
        log.error("Failed to clear storage for osd.%d: %s", osd, exc)

    remove_osd_config(osd, store.data_path)
    try:
        store.delete_osd(osd)
    except Exception as exc:
        log.error("Failed to remove osd.%d from database: %s", osd, exc)
        raise OSDRemovalError(f"failed to remove osd.{osd} from database: {exc}") from exc


def remove_osd(store: OsdStore, osd: int, bypass_safety: bool = False, timeout: int = 0) -> None:
    """Drain, purge and forget an OSD; a positive timeout in seconds bounds the waiting."""
    deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
    token = _deadline.set(deadline)
    try:
        _do_remove(store, osd, bypass_safety)
    except TimeoutError as exc:
        raise OSDRemovalError(
            f"timeout ({timeout}s) reached while removing osd.{osd}, abort"
        ) from exc
    finally:
        _deadline.reset(token)