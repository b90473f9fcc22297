"""Control of the node's snap services through snapctl."""

from __future__ import annotations

import logging

from cephnode.runner import RunError, get_runner

log = logging.getLogger(__name__)


def _unit(service: str) -> str:
    return f"microceph.{service}"


def is_interface_connected(name: str) -> bool:
    """Return whether the named snap interface is connected."""
    try:
        get_runner().run_command("snapctl", "is-connected", name)
    except RunError as exc:
        log.error("Failure: check is-connected %s: %s", name, exc)
        return False
    return True


def snap_start(service: str, enable: bool = False) -> None:
    """Start a service, optionally enabling it."""
    args = ["start", _unit(service)]
    if enable:
        args.append("--enable")
    get_runner().run_command("snapctl", *args)


def snap_stop(service: str, disable: bool = False) -> None:
    """Stop a service, optionally disabling it."""
    args = ["stop", _unit(service)]
    if disable:
        args.append("--disable")
    get_runner().run_command("snapctl", *args)


def snap_restart(service: str, reload: bool = False) -> None:
    """Restart a service, optionally reloading it instead."""
    args = ["restart"]
    if reload:
        args.append("--reload")
    args.append(_unit(service))
    get_runner().run_command("snapctl", *args)


def snap_check_active(service: str) -> None:
    """Raise unless the service is active."""
    out = get_runner().run_command("snapctl", "services", _unit(service))
    if "inactive" in out:
        raise RuntimeError(f"{service} service is not active")