"""Adding disks to the cluster as OSDs."""

from __future__ import annotations

import base64
import logging
import os
import re
import secrets
import stat
import uuid
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple

from cephnode.runner import RunError, get_runner
from cephnode.snap import is_interface_connected, snap_restart

log = logging.getLogger(__name__)

LOOP_SPEC_ID = "loop,"
WIPE_TIMEOUT = 30.0
_BACKING_SPEC = re.compile(r"loop,([1-9][0-9]*[MGT]),([1-9][0-9]*)")
_STABLE_DIRS = (Path("/dev/disk/by-id"), Path("/dev/disk/by-path"))
_OSD_CAPS = (
    ("mgr", "allow profile osd"),
    ("mon", "allow profile osd"),
    ("osd", "allow *"),
)


class DiskError(RuntimeError):
    """A disk could not be prepared or added as an OSD."""


@dataclass
class DiskParameter:
    """A device requested for an OSD, or a loopback file size in MB."""

    path: str = ""
    wipe: bool = False
    encrypt: bool = False
    loop_size: int = 0


@dataclass
class DiskAddReport:
    """The outcome of adding one disk."""

    path: str
    report: str
    error: str = ""


@dataclass
class DiskAddResponse:
    """The outcome of a request to add disks."""

    validation_error: str = ""
    reports: List[DiskAddReport] = field(default_factory=list)


class OsdStore(Protocol):
    """The cluster database and cluster operations that OSD management needs."""

    name: str
    data_path: Path

    def create_disk(self, member: str, path: str) -> int: ...

    def delete_disk(self, member: str, path: str) -> None: ...

    def update_path(self, osd: int, path: str) -> None: ...

    def have_osd(self, osd: int) -> bool: ...

    def list_disks(self) -> Sequence[object]: ...

    def osd_path(self, osd: int) -> str: ...

    def delete_osd(self, osd: int) -> None: ...

    def member_count(self) -> int: ...

    def member_count_excluding(self, osd: int) -> int: ...

    def gen_auth(self, path: Path, entity: str, caps: Sequence[Tuple[str, str]]) -> None: ...

    def switch_failure_domain(self, old: str, new: str) -> None: ...


def _write_private(path: Path, text: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(text)


def create_key() -> bytes:
    """Return a fresh 128-byte LUKS key: base64 of 96 random bytes."""
    return base64.b64encode(secrets.token_bytes(96))


def encrypt_device(path: str, key: bytes) -> None:
    """Format the device as a LUKS volume with the given key."""
    try:
        get_runner().run_command(
            "cryptsetup", "--batch-mode", "--key-file", "-", "luksFormat", path, stdin=key
        )
    except RunError as exc:
        raise DiskError(f"failed to luksFormat device: {path}, {exc}, {exc.stdout}{exc.stderr}") from exc


def store_key(key: bytes, osd_id: int, suffix: str) -> None:
    """Keep the key in the Ceph key-value store under a name derived from the OSD."""
    try:
        get_runner().run_command(
            "ceph", "config-key", "set", f"microceph:osd{suffix}.{osd_id}/key", key.decode()
        )
    except RunError as exc:
        raise DiskError(f"failed to store key: {exc}") from exc


def open_encrypted_device(path: str, osd_id: int, key: bytes, suffix: str) -> str:
    """Open the LUKS volume and return the path of the mapped device."""
    mapped = f"luksosd{suffix}-{osd_id}"
    try:
        get_runner().run_command(
            "cryptsetup", "--keyfile-size", "128", "--key-file", "-", "luksOpen", path, mapped,
            stdin=key,
        )
    except RunError as exc:
        raise DiskError(
            f"failed to luksOpen: {path}, {exc}, {exc.stdout}{exc.stderr}\n\n"
            "NOTE: OSD Encryption requires a snapd >= 2.59.1\n"
            'Verify your version of snapd by running "snap version"\n'
        ) from exc
    return f"/dev/mapper/{mapped}"


def check_encrypt_support() -> None:
    """Raise unless this machine can set up encrypted devices."""
    if not os.path.exists("/dev/mapper/control"):
        raise DiskError("missing /dev/mapper/control")
    if not is_interface_connected("dm-crypt"):
        helper = (
            'use "sudo snap connect microceph:dm-crypt ; sudo snap restart microceph.daemon"'
            " to enable encryption."
        )
        raise DiskError(f"dm-crypt interface connection missing: \n{helper}")
    if not os.path.isdir("/sys/module/dm_crypt"):
        raise DiskError("missing dm_crypt module")
    try:
        os.listdir("/run")
    except OSError as exc:
        raise DiskError(f"can't access /run, might need to update snapd to >=2.59.1: {exc}") from exc


def setup_encrypted_osd(device_path: str, osd_data_path: Path, osd_id: int, suffix: str) -> str:
    """Encrypt a device for an OSD and return the path of the opened volume."""
    try:
        os.symlink(device_path, Path(osd_data_path) / f"unencrypted{suffix}")
    except OSError as exc:
        raise DiskError(f"failed to add unencrypted block symlink: {exc}") from exc
    key = create_key()
    try:
        store_key(key, osd_id, suffix)
    except DiskError as exc:
        raise DiskError(f"key store error: {exc}") from exc
    try:
        encrypt_device(device_path, key)
    except DiskError as exc:
        raise DiskError(f"failed to encrypt: {exc}") from exc
    try:
        return open_encrypted_device(device_path, osd_id, key, suffix)
    except DiskError as exc:
        raise DiskError(f"failed to open: {exc}") from exc


def timeout_wipe(path: str) -> None:
    """Zero the start of a device, giving up after a timeout."""
    get_runner().run_command(
        "dd", "if=/dev/zero", f"of={path}", "bs=4M", "count=10", "status=none",
        timeout=WIPE_TIMEOUT,
    )


def prepare_disk(disk: DiskParameter, suffix: str, osd_path: Path, osd_id: int) -> str:
    """Wipe and encrypt a device as requested and return the path the OSD should use.

    The data device (empty suffix) is also linked as the OSD's block device.
    """
    path = disk.path
    if disk.wipe:
        try:
            timeout_wipe(path)
        except RunError as exc:
            raise DiskError(f"failed to wipe device {path}: {exc}") from exc
    if disk.encrypt:
        try:
            check_encrypt_support()
        except DiskError as exc:
            raise DiskError(f"encryption unsupported on this machine: {exc}") from exc
        try:
            path = setup_encrypted_osd(path, osd_path, osd_id, suffix)
        except DiskError as exc:
            raise DiskError(f"failed to encrypt device {disk.path}: {exc}") from exc
    if suffix:
        return path
    try:
        os.symlink(path, Path(osd_path) / "block")
    except OSError as exc:
        raise DiskError(f"failed to link block device {path}: {exc}") from exc
    return path


def _stable_path(path: str) -> str:
    try:
        mode = os.stat(path).st_mode
    except OSError:
        mode = 0
    if not stat.S_ISBLK(mode):
        raise DiskError(f"invalid disk path: {path}")
    real = os.path.realpath(path)
    for directory in _STABLE_DIRS:
        if not directory.is_dir():
            continue
        for entry in sorted(directory.iterdir()):
            if entry.is_symlink() and not entry.is_dir() and os.path.realpath(entry) == real:
                return str(entry)
    return path


def parse_backing_spec(spec: str) -> Tuple[int, int]:
    """Parse "loop,<size><M|G|T>,<count>" into a size in MB and a file count."""
    match = _BACKING_SPEC.search(spec)
    if match is None:
        raise DiskError(f"illegal spec: {spec}")
    sized = match.group(1)
    size = int(sized[:-1])
    unit = sized[-1].upper()
    if unit == "G":
        size *= 1024
    elif unit == "T":
        size *= 1024 * 1024
    return size, int(match.group(2))


def get_free_space(path: str) -> int:
    """Return the megabytes available to unprivileged users at a path."""
    try:
        info = os.statvfs(path)
    except OSError as exc:
        raise DiskError(f"cannot read free space at {path!r}: {exc}") from exc
    return info.f_bavail * info.f_bsize // 1024 // 1024


def create_backing_file(directory: Path, size: int) -> str:
    """Create a sparse backing file of the given size in MB and return its path."""
    backing = str(Path(directory) / "osd-backing.img")
    try:
        get_runner().run_command("truncate", "-s", f"{size}M", backing)
    except RunError as exc:
        raise DiskError(f"failed to create backing file {backing}: {exc}") from exc
    return backing


def bootstrap_osd(
    osd_data_path: Path,
    nr: int,
    wal: Optional[DiskParameter] = None,
    db: Optional[DiskParameter] = None,
) -> None:
    """Create the OSD's object store, with optional WAL and DB devices."""
    args = ["--mkfs", "--no-mon-config", "-i", str(nr)]
    for label, suffix, option, device in (
        ("WAL", ".wal", "--bluestore-block-wal-path", wal),
        ("DB", ".db", "--bluestore-block-db-path", db),
    ):
        if device is None:
            continue
        try:
            stable = DiskParameter(
                path=_stable_path(device.path), wipe=device.wipe, encrypt=device.encrypt
            )
        except DiskError as exc:
            raise DiskError(f"failed to set stable path for {label}: {exc}") from exc
        try:
            path = prepare_disk(stable, suffix, osd_data_path, nr)
        except DiskError as exc:
            raise DiskError(f"failed to set up {label} device: {exc}") from exc
        args += [option, path]

    try:
        get_runner().run_command("ceph-osd", *args)
    except RunError as exc:
        raise DiskError(f"failed to bootstrap OSD: {exc}") from exc
    try:
        _write_private(Path(osd_data_path) / "ready", "")
    except OSError as exc:
        raise DiskError(f"failed to write stamp file: {exc}") from exc


def _update_failure_domain(store: OsdStore) -> None:
    try:
        members = store.member_count()
    except Exception as exc:
        raise DiskError(f"failed to count members: {exc}") from exc
    if members >= 3:
        try:
            store.switch_failure_domain("osd", "host")
        except Exception as exc:
            raise DiskError(f"failed to set host failure domain: {exc}") from exc


def add_osd(
    store: OsdStore,
    data: DiskParameter,
    wal: Optional[DiskParameter] = None,
    db: Optional[DiskParameter] = None,
) -> None:
    """Add an OSD backed by a device or, with a loop size, by a loopback file."""
    log.debug("Adding OSD %s", data.path)
    if data.loop_size and (wal is not None or db is not None):
        raise DiskError("loopback and WAL/DB are mutually exclusive")

    path = data.path
    if not data.loop_size:
        try:
            path = _stable_path(path)
        except DiskError as exc:
            raise DiskError(f"failed to set stable disk path: {exc}") from exc

    try:
        nr = store.create_disk(store.name, path)
    except Exception as exc:
        raise DiskError(f"failed to record disk: {exc}") from exc
    log.debug("Created disk record for osd.%d", nr)

    osd_data_path = Path(store.data_path) / "osd" / f"ceph-{nr}"
    recorded = path

    def undo() -> None:
        import shutil

        shutil.rmtree(osd_data_path, ignore_errors=True)
        try:
            store.delete_disk(store.name, recorded)
        except Exception as exc:
            log.warning("Failed to forget disk %s: %s", recorded, exc)

    with ExitStack() as cleanup:
        cleanup.callback(undo)
        try:
            osd_data_path.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            raise DiskError(f"failed to create OSD directory: {exc}") from exc

        if data.loop_size:
            path = create_backing_file(osd_data_path, data.loop_size)
            try:
                store.update_path(nr, path)
            except Exception as exc:
                raise DiskError(f"failed to update disk record: {exc}") from exc
            recorded = path

        device = DiskParameter(path=path, wipe=data.wipe, encrypt=data.encrypt)
        try:
            prepare_disk(device, "", osd_data_path, nr)
        except DiskError as exc:
            raise DiskError(f"failed to prepare data device: {exc}") from exc

        try:
            store.gen_auth(osd_data_path / "keyring", f"osd.{nr}", list(_OSD_CAPS))
        except Exception as exc:
            raise DiskError(f"failed to generate OSD keyring: {exc}") from exc

        try:
            _write_private(osd_data_path / "fsid", str(uuid.uuid4()))
        except OSError as exc:
            raise DiskError(f"failed to write fsid: {exc}") from exc

        bootstrap_osd(osd_data_path, nr, wal, db)

        log.debug("Spawning OSD %d", nr)
        try:
            snap_restart("osd", True)
        except RunError as exc:
            raise DiskError(f"failed to start osd.{nr}: {exc}") from exc

        _update_failure_domain(store)
        cleanup.pop_all()
    log.debug("Added osd.%d", nr)


def add_loopback_osds(store: OsdStore, spec: str) -> None:
    """Add OSDs backed by loopback files as described by a loop spec."""
    size, count = parse_backing_spec(spec)
    free = get_free_space(os.environ.get("SNAP_COMMON", ""))
    if free < size * count:
        raise DiskError(f"insufficient free space for {count} loopback files of size {size}MB")
    for _ in range(count):
        try:
            add_osd(store, DiskParameter(loop_size=size))
        except DiskError as exc:
            raise DiskError(f"failed to add loop OSD: {exc}") from exc


def validate_bulk_disk_addition_args(
    disks: Sequence[DiskParameter],
    wal: Optional[DiskParameter] = None,
    db: Optional[DiskParameter] = None,
) -> None:
    """Raise if a request for several disks asks for what only single disks allow."""
    if len(disks) == 1:
        return
    if wal is not None or db is not None:
        message = "wal/db devices are not supported in batch disk addition"
        log.error(message)
        raise DiskError(message)
    for disk in disks:
        if disk.path.startswith(LOOP_SPEC_ID):
            message = (
                f"cannot add loop spec '{disk.path}', add a single loop spec"
                " or one or more block device paths"
            )
            log.error(message)
            raise DiskError(message)


def prepare_validation_failure_resp(
    disks: Sequence[DiskParameter], error: BaseException
) -> DiskAddResponse:
    """Build the response for a request that failed validation."""
    return DiskAddResponse(
        validation_error=str(error),
        reports=[DiskAddReport(path=disk.path, report="Failure") for disk in disks],
    )


def add_single_disk(
    store: OsdStore,
    disk: DiskParameter,
    wal: Optional[DiskParameter] = None,
    db: Optional[DiskParameter] = None,
) -> DiskAddReport:
    """Add one disk or loop spec and report the outcome instead of raising."""
    try:
        if LOOP_SPEC_ID in disk.path:
            add_loopback_osds(store, disk.path)
        else:
            add_osd(store, disk, wal, db)
    except Exception as exc:
        log.error("failed to add disk: %s %s, err %s", "spec" if LOOP_SPEC_ID in disk.path else "path", disk.path, exc)
        return DiskAddReport(path=disk.path, report="Failure", error=str(exc))
    return DiskAddReport(path=disk.path, report="Success")


def add_bulk_disks(
    store: OsdStore,
    disks: Sequence[DiskParameter],
    wal: Optional[DiskParameter] = None,
    db: Optional[DiskParameter] = None,
) -> DiskAddResponse:
    """Add each requested disk and report every outcome."""
    if len(disks) == 1:
        return DiskAddResponse(reports=[add_single_disk(store, disks[0], wal, db)])
    try:
        validate_bulk_disk_addition_args(disks, wal, db)
    except DiskError as exc:
        return prepare_validation_failure_resp(disks, exc)
    return DiskAddResponse(reports=[add_single_disk(store, disk) for disk in disks])