"""QEMU command line builder for the serial-console guest.

The guest serial port is exposed as a host PTY (``-serial pty``); QEMU
announces the allocated path on its stdout, which console discovery parses.
A QMP socket is attached for key injection.
"""

import shlex
from pathlib import Path

from console_bridge._logging import get_logger
from console_bridge.exceptions import VmDependencyError
from console_bridge.settings import Settings

logger = get_logger(__name__)


def build_qemu_cmd(settings: Settings, monitor_socket: Path | None = None) -> list[str]:
    """Build the QEMU argv for a console-bridge session.

    Args:
        settings: Runtime configuration (binary, firmware, disk, resources)
        monitor_socket: QMP socket path (defaults to settings.monitor_socket_path)

    Returns:
        Argument vector, binary first
    """
    qmp_path = monitor_socket or settings.monitor_socket_path

    cmd: list[str] = [
        str(settings.qemu_bin),
        "-machine",
        settings.machine,
        "-m",
        f"{settings.memory_mb}M",
        "-smp",
        str(settings.cpus),
    ]
    if settings.firmware_path is not None:
        cmd.extend(["-bios", str(settings.firmware_path)])
    if settings.kernel_path is not None:
        cmd.extend(["-kernel", str(settings.kernel_path)])

    cmd.extend(
        [
            "-nographic",
            "-drive",
            f"file={settings.image_path},format=qcow2,if=virtio",
            "-netdev",
            "user,id=eth0,ipv6=off",
            "-device",
            "virtio-net-device,netdev=eth0",
        ]
    )
    if settings.seed_path is not None:
        cmd.extend(["-drive", f"file={settings.seed_path},if=virtio,format=raw,readonly=on"])
    if settings.kernel_append:
        cmd.extend(["-append", settings.kernel_append])

    cmd.extend(
        [
            "-qmp",
            f"unix:{qmp_path},server,nowait",
            "-serial",
            "pty",
        ]
    )

    if settings.extra_opts:
        cmd.extend(shlex.split(settings.extra_opts))

    logger.debug("Built QEMU command", extra={"argv": cmd})
    return cmd


def check_dependencies(settings: Settings) -> None:
    """Verify the QEMU binary and disk images exist before launching.

    Raises:
        VmDependencyError: A required file is missing
    """
    required: dict[str, Path | None] = {
        "qemu binary": settings.qemu_bin,
        "disk image": settings.image_path,
        "firmware": settings.firmware_path,
        "kernel": settings.kernel_path,
        "seed image": settings.seed_path,
    }
    for what, path in required.items():
        if path is not None and not path.exists():
            raise VmDependencyError(f"{what} not found: {path}", {"path": str(path)})
