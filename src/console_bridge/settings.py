"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from console_bridge import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with CONSOLE_BRIDGE_ prefix.
    Example: CONSOLE_BRIDGE_MEMORY_MB=4096
    """

    model_config = SettingsConfigDict(
        env_prefix="CONSOLE_BRIDGE_",
        extra="ignore",
    )

    # QEMU
    qemu_bin: Path = Path("/usr/bin/qemu-system-riscv64")
    machine: str = "virt"
    memory_mb: int = Field(default=4096, ge=128, le=65536)
    cpus: int = Field(default=2, ge=1, le=64)
    firmware_path: Path | None = Path("/usr/lib/riscv64-linux-gnu/opensbi/generic/fw_jump.bin")
    kernel_path: Path | None = Path("/usr/lib/u-boot/qemu-riscv64_smode/uboot.elf")
    image_path: Path = Path("/images/ubuntu-riscv64.qcow2")
    seed_path: Path | None = Path("/images/seed.iso")
    kernel_append: str = "root=/dev/vda1 rw console=ttyS0,115200n8"
    extra_opts: str = ""  # Shell-split and appended verbatim

    # Files -- all session artifacts live under log_dir
    log_dir: Path = Path("/var/log/console-bridge")
    headless: bool = False  # Serve the FIFO channel instead of an interactive loop

    # Discovery
    discovery_attempts: int = Field(default=constants.DISCOVERY_ATTEMPTS, ge=1)
    discovery_interval: float = Field(default=constants.DISCOVERY_INTERVAL_SECONDS, gt=0)
    pty_pattern: str = constants.PTY_ANNOUNCE_PATTERN

    # Readiness
    os_ready_pattern: str = constants.OS_READY_PATTERN
    prompt_pattern: str = constants.PROMPT_PATTERN
    os_ready_timeout: float = Field(default=constants.OS_READY_TIMEOUT_SECONDS, gt=0)
    prompt_timeout: float = Field(default=constants.PROMPT_TIMEOUT_SECONDS, gt=0)
    self_test_timeout: float = Field(default=constants.SELF_TEST_TIMEOUT_SECONDS, gt=0)
    probe_commands: list[str] = Field(default_factory=lambda: list(constants.DEFAULT_PROBE_COMMANDS))

    # Console I/O
    write_retries: int = Field(default=constants.WRITE_RETRY_ATTEMPTS, ge=1, le=20)
    write_backoff: float = Field(default=constants.WRITE_RETRY_BACKOFF_SECONDS, ge=0)
    poll_interval: float = Field(default=constants.TRANSCRIPT_POLL_INTERVAL_SECONDS, gt=0)

    # Teardown
    teardown_grace: float = Field(default=constants.TEARDOWN_GRACE_SECONDS, ge=0)

    @property
    def transcript_path(self) -> Path:
        return self.log_dir / "console.log"

    @property
    def boot_log_path(self) -> Path:
        return self.log_dir / "qemu.boot.log"

    @property
    def monitor_socket_path(self) -> Path:
        return self.log_dir / "qemu-monitor.sock"

    @property
    def fifo_path(self) -> Path:
        return self.log_dir / "guest.in"

    @property
    def state_path(self) -> Path:
        return self.log_dir / "session.json"
