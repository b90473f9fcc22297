"""Queries of RBD mirroring state for pools and images."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Type, TypeVar, Union

from cephnode.runner import RunError, get_runner

log = logging.getLogger(__name__)

PRIMARY_MARKER = "local image is primary"


class ReplicationState(str, Enum):
    DISABLED = "replication_disabled"
    ENABLED = "replication_enabled"

    def __str__(self) -> str:
        return self.value


class RbdReplicationHealth(str, Enum):
    OK = "OK"
    WARN = "WARNING"
    ERROR = "Error"

    def __str__(self) -> str:
        return self.value


class RbdResourceType(str, Enum):
    DISABLED = "disabled"
    POOL = "pool"
    IMAGE = "image"

    def __str__(self) -> str:
        return self.value


@dataclass
class RbdReplicationPeer:
    id: str = ""
    mirror_id: str = ""
    remote_name: str = ""
    direction: str = ""


@dataclass
class RbdReplicationPoolInfo:
    mode: Union[RbdResourceType, str] = RbdResourceType.DISABLED
    local_site_name: str = ""
    peers: List[RbdReplicationPeer] = field(default_factory=list)


@dataclass
class RbdReplicationPoolStatus:
    state: ReplicationState = ReplicationState.DISABLED
    image_count: int = 0
    health: Union[RbdReplicationHealth, str] = ""
    daemon_health: Union[RbdReplicationHealth, str] = ""
    image_health: Union[RbdReplicationHealth, str] = ""
    description: Dict[str, int] = field(default_factory=dict)


@dataclass
class RbdReplicationImagePeer:
    mirror_id: str = ""
    remote_name: str = ""
    state: str = ""
    status: str = ""
    last_update: str = ""


@dataclass
class RbdReplicationImageStatus:
    name: str = ""
    state: ReplicationState = ReplicationState.DISABLED
    is_primary: bool = False
    id: str = ""
    status: str = ""
    last_update: str = ""
    peers: List[RbdReplicationImagePeer] = field(default_factory=list)
    description: str = ""


@dataclass
class RbdReplicationVerbosePoolStatus:
    name: str = ""
    summary: RbdReplicationPoolStatus = field(default_factory=RbdReplicationPoolStatus)
    images: List[RbdReplicationImageStatus] = field(default_factory=list)


@dataclass
class ImageSnapshotSchedule:
    schedule: str = ""
    start_time: str = ""


_E = TypeVar("_E", bound=Enum)


def _coerce(kind: Type[_E], value: str) -> Union[_E, str]:
    try:
        return kind(value)
    except ValueError:
        return value


def _object(value: Any, what: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object for {what}")
    return value


def _list(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"expected a JSON array for {what}")
    return value


def _string(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} is not a string")
    return value


def _integer(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"count for {key!r} is not an integer")
    return value


def _decode(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"cannot unmarshal rbd response: {exc}") from exc


def _peer(value: Any) -> RbdReplicationPeer:
    data = _object(value, "peer")
    return RbdReplicationPeer(
        id=_string(data, "uuid"),
        mirror_id=_string(data, "mirror_uuid"),
        remote_name=_string(data, "site_name"),
        direction=_string(data, "direction"),
    )


def _pool_info(value: Any) -> RbdReplicationPoolInfo:
    data = _object(value, "pool info")
    return RbdReplicationPoolInfo(
        mode=_coerce(RbdResourceType, _string(data, "mode")),
        local_site_name=_string(data, "site_name"),
        peers=[_peer(item) for item in _list(data.get("peers"), "peers")],
    )


def _pool_status(value: Any) -> RbdReplicationPoolStatus:
    data = _object(value, "summary")
    states = data.get("states") or {}
    states = _object(states, "states")
    return RbdReplicationPoolStatus(
        health=_coerce(RbdReplicationHealth, _string(data, "health")),
        daemon_health=_coerce(RbdReplicationHealth, _string(data, "daemon_health")),
        image_health=_coerce(RbdReplicationHealth, _string(data, "image_health")),
        description={str(key): _integer(count, key) for key, count in states.items()},
    )


def _image_peer(value: Any) -> RbdReplicationImagePeer:
    data = _object(value, "peer site")
    return RbdReplicationImagePeer(
        mirror_id=_string(data, "mirror_uuids"),
        remote_name=_string(data, "site_name"),
        state=_string(data, "state"),
        status=_string(data, "description"),
        last_update=_string(data, "last_update"),
    )


def _image_status(value: Any) -> RbdReplicationImageStatus:
    data = _object(value, "image status")
    return RbdReplicationImageStatus(
        name=_string(data, "name"),
        id=_string(data, "global_id"),
        status=_string(data, "state"),
        last_update=_string(data, "last_update"),
        peers=[_image_peer(item) for item in _list(data.get("peer_sites"), "peer_sites")],
        description=_string(data, "description"),
    )


def append_remote_cluster_args(args: List[str], cluster: str, client: str) -> List[str]:
    """Return args extended with --cluster and --id where those are given."""
    result = list(args)
    if cluster:
        result += ["--cluster", cluster]
    if client:
        result += ["--id", client]
    log.debug("RBD Replication: args %s -> %s", args, result)
    return result


def get_rbd_mirror_pool_info(pool: str, cluster: str = "", client: str = "") -> RbdReplicationPoolInfo:
    """Fetch the mirroring info of a pool; a failed query reports it disabled."""
    args = append_remote_cluster_args(
        ["mirror", "pool", "info", pool, "--format", "json"], cluster, client
    )
    try:
        output = get_runner().run_command("rbd", *args)
    except RunError as exc:
        log.warning("REPRBD: failed pool info operation on res(%s): %s", pool, exc)
        return RbdReplicationPoolInfo(mode=RbdResourceType.DISABLED)
    try:
        info = _pool_info(_decode(output))
    except ValueError as exc:
        log.error("REPRBD: cannot unmarshal rbd response: %s", exc)
        raise ValueError(f"cannot unmarshal rbd response: {exc}") from exc
    log.debug("REPRBD: Pool Info: %s", info)
    return info


def populate_pool_status(status: str) -> RbdReplicationPoolStatus:
    """Parse the summary out of a pool status JSON document."""
    data = _object(_decode(status), "pool status")
    return _pool_status(data.get("summary") or {})


def get_rbd_mirror_pool_status(pool: str, cluster: str = "", client: str = "") -> RbdReplicationPoolStatus:
    """Fetch the mirroring status of a pool; a failed query reports it disabled."""
    try:
        output = get_runner().run_command(
            "rbd", "mirror", "pool", "status", pool, "--format", "json"
        )
    except RunError as exc:
        log.warning("failed pool status operation on res(%s): %s", pool, exc)
        return RbdReplicationPoolStatus(state=ReplicationState.DISABLED)
    log.info("REPRBD: Raw Pool Status Output: %s", output)
    try:
        status = populate_pool_status(output)
    except ValueError as exc:
        log.error("cannot unmarshal rbd response: %s", exc)
        raise ValueError(f"cannot unmarshal rbd response: {exc}") from exc
    status.state = ReplicationState.ENABLED
    status.image_count = sum(status.description.values())
    return status


def get_rbd_mirror_verbose_pool_status(
    pool: str, cluster: str = "", client: str = ""
) -> RbdReplicationVerbosePoolStatus:
    """Fetch the verbose mirroring status of a pool, including its images."""
    try:
        output = get_runner().run_command(
            "rbd", "mirror", "pool", "status", pool, "--verbose", "--format", "json"
        )
    except RunError as exc:
        log.warning("REPRBD: failed verbose pool status operation on res(%s): %s", pool, exc)
        return RbdReplicationVerbosePoolStatus(
            summary=RbdReplicationPoolStatus(state=ReplicationState.DISABLED)
        )
    try:
        data = _object(_decode(output), "verbose pool status")
        if "summary" not in data:
            raise ValueError("missing summary")
        summary = _pool_status(data["summary"])
        raw_images = _list(data.get("images"), "images")
    except ValueError as exc:
        log.error("cannot unmarshal rbd response: %s", exc)
        raise ValueError(f"cannot unmarshal rbd response: {exc}") from exc

    images = []
    for raw in raw_images:
        try:
            image = _image_status(raw)
        except ValueError:
            name = raw.get("name", "") if isinstance(raw, dict) else ""
            log.warning("failed to parse the image data for (%s/%s)", pool, name)
            image = RbdReplicationImageStatus(name=name if isinstance(name, str) else "")
        image.state = ReplicationState.ENABLED
        image.is_primary = PRIMARY_MARKER in image.description
        images.append(image)

    summary.state = ReplicationState.ENABLED
    summary.image_count = len(images)
    return RbdReplicationVerbosePoolStatus(name=pool, summary=summary, images=images)


def get_rbd_mirror_image_status(
    pool: str, image: str, cluster: str = "", client: str = ""
) -> RbdReplicationImageStatus:
    """Fetch the mirroring status of one image; a failed query reports it disabled."""
    resource = f"{pool}/{image}"
    try:
        output = get_runner().run_command(
            "rbd", "mirror", "image", "status", resource, "--format", "json"
        )
    except RunError as exc:
        log.warning("failed image status operation on res(%s): %s", resource, exc)
        return RbdReplicationImageStatus(state=ReplicationState.DISABLED)
    try:
        status = _image_status(_decode(output))
    except ValueError as exc:
        log.error("cannot unmarshal rbd response: %s", exc)
        raise ValueError(f"cannot unmarshal rbd response: {exc}") from exc
    status.state = ReplicationState.ENABLED
    status.is_primary = PRIMARY_MARKER in status.description
    return status


def list_snapshot_schedule(pool: str, image: str) -> str:
    """Return the raw snapshot schedule listing for a pool or image."""
    args = ["mirror", "snapshot", "schedule", "list"]
    if pool:
        args += ["--pool", pool]
    if image:
        args += ["--image", image]
    try:
        return get_runner().run_command("rbd", *args)
    except RunError as exc:
        log.error("REPRBD: %s", exc)
        raise


def get_snapshot_schedule(pool: str, image: str) -> ImageSnapshotSchedule:
    """Return the first snapshot schedule of an image, or an empty one."""
    if not pool or not image:
        raise ValueError(f"ImageName({pool}/{image}) not complete")
    output = list_snapshot_schedule(pool, image)
    try:
        entries = _list(_decode(output), "schedules")
        if not entries:
            return ImageSnapshotSchedule()
        first = _object(entries[0], "schedule")
        return ImageSnapshotSchedule(
            schedule=_string(first, "interval"),
            start_time=_string(first, "start_time"),
        )
    except ValueError as exc:
        log.error("REPRBD: %s", exc)
        return ImageSnapshotSchedule()


def list_all_images_in_pool(pool: str, local_name: str = "", remote_name: str = "") -> List[str]:
    """Return the names of all images in a pool, or an empty list on failure."""
    args = append_remote_cluster_args(["ls", pool, "--format", "json"], remote_name, local_name)
    try:
        output = get_runner().run_command("rbd", *args)
    except RunError:
        return []
    try:
        names = _list(_decode(output), "images")
    except ValueError:
        log.error("REPRBD: unexpected error encountered while parsing json output %s", output)
        return []
    if not all(isinstance(name, str) for name in names):
        log.error("REPRBD: unexpected error encountered while parsing json output %s", output)
        return []
    return names