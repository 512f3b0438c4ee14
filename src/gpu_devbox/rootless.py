"""Rootless Docker setup for the invoking user.

Installs the host packages rootless docker needs, maps subordinate ids,
writes a systemd user unit for ``dockerd-rootless.sh`` and points new
shells at the per-user socket.
"""

import getpass
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Callable, Optional

import click

from .console import SECURITY, STEP, ClickConfirmer, Confirmer
from .errors import PrerequisiteMissing, RuntimeCommandError, StartFailed
from .mode import is_socket, user_socket_path
from .process import CommandRunner

logger = logging.getLogger(__name__)

ARCH_IDS = {"manjaro", "arch", "endeavouros", "garuda"}
UBUNTU_IDS = {"ubuntu", "debian", "linuxmint", "pop"}

ARCH_PACKAGES = ["docker", "fuse-overlayfs", "slirp4netns"]
UBUNTU_PACKAGES = ["docker.io", "fuse-overlayfs", "slirp4netns", "uidmap", "dbus-user-session"]

DOCKERD_ROOTLESS_PATHS = [
    "/usr/bin/dockerd-rootless.sh",
    "/usr/local/bin/dockerd-rootless.sh",
    "/usr/libexec/docker/dockerd-rootless.sh",
]

SUBID_RANGE = "100000:65536"
SHELL_MARKER = "# Rootless Docker"
# Single-quoted on purpose: ${XDG_RUNTIME_DIR} is expanded by each new
# shell, not when this block is written.
SHELL_BLOCK = (
    "\n"
    "# Rootless Docker - container isolation from other users\n"
    "export DOCKER_HOST=unix://${XDG_RUNTIME_DIR}/docker.sock\n"
)

SERVICE_TEMPLATE = """\
[Unit]
Description=Docker Application Container Engine (Rootless)
Documentation=https://docs.docker.com/engine/security/rootless/

[Service]
Environment=PATH=/usr/bin:/usr/local/bin
ExecStart={exec_start}
ExecReload=/bin/kill -s HUP $MAINPID
TimeoutSec=0
RestartSec=2
Restart=always
StartLimitBurst=3
StartLimitInterval=60s
LimitNOFILE=infinity
LimitNPROC=infinity
LimitCORE=infinity
TasksMax=infinity
Delegate=yes
Type=notify
NotifyAccess=all
KillMode=mixed

[Install]
WantedBy=default.target
"""


def parse_os_release(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def render_service_unit(dockerd_rootless_path: str) -> str:
    return SERVICE_TEMPLATE.format(exec_start=dockerd_rootless_path)


class RootlessSetup:
    """Configures and controls the per-user docker daemon."""

    def __init__(
        self,
        *,
        runner: Optional[CommandRunner] = None,
        confirmer: Optional[Confirmer] = None,
        home: Optional[Path] = None,
        uid: Optional[int] = None,
        user: Optional[str] = None,
        os_release: Path = Path("/etc/os-release"),
        etc_dir: Path = Path("/etc"),
        socket_exists: Optional[Callable[[str], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner or CommandRunner()
        self.confirmer = confirmer or ClickConfirmer()
        self.home = Path(home) if home is not None else Path.home()
        self.uid = os.getuid() if uid is None else uid
        self.user = user or getpass.getuser()
        self.os_release = os_release
        self.etc_dir = etc_dir
        self._socket_exists = socket_exists or is_socket
        self._sleep = sleep
        self.os_type: Optional[str] = None

    @property
    def socket_path(self) -> str:
        return user_socket_path(self.uid)

    @property
    def docker_host(self) -> str:
        return f"unix://{self.socket_path}"

    @property
    def service_file(self) -> Path:
        return self.home / ".config" / "systemd" / "user" / "docker.service"

    def _docker_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["DOCKER_HOST"] = self.docker_host
        return env

    def _systemctl_user(self, *args: str, check: bool = True):
        return self.runner.run(["systemctl", "--user", *args], check=check)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect_os(self) -> str:
        """Return "arch" or "ubuntu" for the host distribution family."""
        distro_id = ""
        if self.os_release.is_file():
            distro_id = parse_os_release(self.os_release.read_text()).get("ID", "").lower()
        if distro_id in ARCH_IDS:
            self.os_type = "arch"
        elif distro_id in UBUNTU_IDS:
            self.os_type = "ubuntu"
        elif self.runner.which("pacman"):
            self.os_type = "arch"
        elif self.runner.which("apt"):
            self.os_type = "ubuntu"
        else:
            raise PrerequisiteMissing(
                f"Unsupported distribution: {distro_id or 'unknown'}",
                hint="Supported: Manjaro, Arch, Ubuntu, Debian, Linux Mint, Pop!_OS",
            )
        logger.info(f"Detected OS type: {self.os_type}")
        return self.os_type

    def is_service_active(self) -> bool:
        return self.runner.succeeds(["systemctl", "--user", "is-active", "docker.service"])

    def is_rootless_active(self) -> bool:
        return self._socket_exists(self.socket_path) and self.is_service_active()

    # ------------------------------------------------------------------
    # Install steps
    # ------------------------------------------------------------------

    def missing_packages(self) -> list[str]:
        if self.os_type == "arch":
            return [p for p in ARCH_PACKAGES if not self.runner.succeeds(["pacman", "-Qi", p])]
        return [p for p in UBUNTU_PACKAGES if not self.runner.succeeds(["dpkg", "-s", p])]

    def install_dependencies(self) -> None:
        logger.info("1/6 Installing dependencies...", extra=STEP)
        if self.os_type is None:
            self.detect_os()

        pkgs = self.missing_packages()
        if not pkgs:
            logger.info("All dependencies installed.")
        elif self.os_type == "arch":
            logger.info(f"Installing: {' '.join(pkgs)}")
            self.runner.run(["sudo", "pacman", "-S", "--needed", "--noconfirm", *pkgs], capture=False)
        else:
            logger.info("Updating package list...")
            self.runner.run(["sudo", "apt", "update"], capture=False)
            logger.info(f"Installing: {' '.join(pkgs)}")
            self.runner.run(["sudo", "apt", "install", "-y", *pkgs], capture=False)

        if self.os_type == "ubuntu" and self.runner.succeeds(["systemctl", "is-active", "docker.service"]):
            logger.warning("System Docker daemon is running.")
            logger.warning("For rootless Docker, it's recommended to disable it.")
            if self.confirmer.confirm("Disable system Docker daemon?", default=False):
                self.runner.run(["sudo", "systemctl", "disable", "--now", "docker.service", "docker.socket"])
                logger.info("System Docker daemon disabled.")

    def _ensure_subid(self, path: Path) -> None:
        if not path.exists():
            self.runner.run(["sudo", "touch", str(path)])
        try:
            lines = path.read_text().splitlines()
        except OSError:
            lines = []
        if any(line.startswith(f"{self.user}:") for line in lines):
            logger.info(f"{path} already configured.")
            return
        self.runner.run(["sudo", "tee", "-a", str(path)], input=f"{self.user}:{SUBID_RANGE}\n")
        logger.info(f"Added {self.user} to {path}")

    def configure_subuid(self) -> None:
        logger.info("2/6 Configuring subuid/subgid...", extra=STEP)
        self._ensure_subid(self.etc_dir / "subuid")
        self._ensure_subid(self.etc_dir / "subgid")

    def enable_linger(self) -> None:
        logger.info("3/6 Enabling user linger...", extra=STEP)
        try:
            self.runner.run(["sudo", "loginctl", "enable-linger", self.user])
        except RuntimeCommandError as e:
            logger.debug(f"enable-linger failed: {e}")
        logger.info("User linger enabled.")

    def find_dockerd_rootless(self) -> str:
        for candidate in DOCKERD_ROOTLESS_PATHS:
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                return candidate
        found = self.runner.which("dockerd-rootless.sh")
        if found:
            return found
        raise PrerequisiteMissing(
            "dockerd-rootless.sh not found!",
            hint="Install the docker rootless extras package for your distribution.",
        )

    def write_service_unit(self) -> Path:
        logger.info("4/6 Creating systemd user service...", extra=STEP)
        dockerd = self.find_dockerd_rootless()
        logger.info(f"Using: {dockerd}")

        self.service_file.parent.mkdir(parents=True, exist_ok=True)
        self.service_file.write_text(render_service_unit(dockerd))
        logger.info(f"Created {self.service_file}")
        self._systemctl_user("daemon-reload")
        return self.service_file

    def start_daemon(self) -> None:
        logger.info("5/6 Starting rootless Docker daemon...", extra=STEP)
        self._systemctl_user("enable", "docker.service")
        self._systemctl_user("start", "docker.service")
        self._sleep(3)
        if not self.is_service_active():
            raise StartFailed(
                "Failed to start daemon.",
                hint="Check: journalctl --user -u docker.service",
            )
        logger.info("Rootless Docker daemon is running.")

    def shell_rc(self) -> Path:
        zshrc = self.home / ".zshrc"
        return zshrc if zshrc.exists() else self.home / ".bashrc"

    def configure_shell(self) -> Path:
        """Append the DOCKER_HOST export to the shell rc file once."""
        logger.info("6/6 Configuring shell environment...", extra=STEP)
        rc = self.shell_rc()
        existing = rc.read_text() if rc.exists() else ""
        if SHELL_MARKER in existing:
            logger.info("Shell already configured.")
        else:
            with rc.open("a") as f:
                f.write(SHELL_BLOCK)
            logger.info(f"Added DOCKER_HOST to {rc}")
        return rc

    def verify(self) -> None:
        logger.info("Verifying setup...", extra=STEP)
        if not self.runner.succeeds(["docker", "info"], env=self._docker_env()):
            raise StartFailed(
                "Verification failed!",
                hint=(
                    "Debug commands:\n"
                    "  systemctl --user status docker.service\n"
                    "  journalctl --user -u docker.service -n 30"
                ),
            )
        click.echo()
        click.secho("============================================", fg="green")
        click.secho("   Rootless Docker Setup Complete!", fg="green")
        click.secho("============================================", fg="green")
        click.echo()
        logger.info("Your containers are now INVISIBLE to other users.", extra=SECURITY)
        click.echo(f"Socket: {self.socket_path}")
        click.echo()
        logger.warning("Next steps:")
        click.echo(f"  1. Run: source {self.shell_rc()}  (or open new terminal)")
        click.echo("  2. Use devbox as normal (no sudo needed)")
        click.echo()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def install(self) -> None:
        click.secho("========================================", fg="cyan")
        click.secho("  Rootless Docker Setup", fg="cyan")
        click.secho("========================================", fg="cyan")

        self.detect_os()
        if self.is_rootless_active():
            logger.info("Rootless Docker is already configured and running!")
            self.status()
            return

        self.install_dependencies()
        self.configure_subuid()
        self.enable_linger()
        self.write_service_unit()
        self.start_daemon()
        self.configure_shell()
        self.verify()

    def status(self) -> None:
        click.echo("=== Rootless Docker Status ===")
        click.echo()
        try:
            os_type = self.os_type or self.detect_os()
        except PrerequisiteMissing:
            os_type = "unknown"
        click.echo(f"OS Type: {os_type}")

        if self._socket_exists(self.socket_path):
            click.echo("Socket: " + click.style("EXISTS", fg="green"))
        else:
            click.echo("Socket: " + click.style("NOT FOUND", fg="red"))

        active = self.is_service_active()
        if active:
            click.echo("Service: " + click.style("RUNNING", fg="green"))
        else:
            click.echo("Service: " + click.style("STOPPED", fg="red"))

        click.echo(f"DOCKER_HOST: {os.environ.get('DOCKER_HOST') or 'not set'}")
        click.echo()

        if active and self._socket_exists(self.socket_path):
            env = self._docker_env()
            try:
                version = self.runner.output(
                    ["docker", "version", "--format", "{{.Server.Version}}"], env=env
                ).strip()
            except RuntimeCommandError:
                version = "N/A"
            click.echo(f"Docker version: {version or 'N/A'}")
            click.echo()
            click.echo("Containers:")
            try:
                click.echo(self.runner.output(
                    ["docker", "ps", "-a", "--format", "table {{.Names}}\t{{.Status}}\t{{.Image}}"], env=env
                ).rstrip())
            except RuntimeCommandError:
                click.echo("  (none)")

    def start(self) -> None:
        self._systemctl_user("start", "docker.service")
        logger.info("Started.")

    def stop(self) -> None:
        self._systemctl_user("stop", "docker.service")
        logger.info("Stopped.")

    def restart(self) -> None:
        self._systemctl_user("restart", "docker.service")
        logger.info("Restarted.")

    def uninstall(self) -> None:
        logger.warning("Uninstalling Rootless Docker setup...")
        self._systemctl_user("stop", "docker.service", check=False)
        self._systemctl_user("disable", "docker.service", check=False)
        if self.service_file.exists():
            self.service_file.unlink()
        self._systemctl_user("daemon-reload")

        data_dir = self.home / ".local" / "share" / "docker"
        if self.confirmer.confirm(f"Remove rootless Docker data ({data_dir})?", default=False):
            shutil.rmtree(data_dir, ignore_errors=True)
            logger.info("Data removed.")

        logger.info("Rootless Docker uninstalled.")
        logger.warning(f"You may want to remove DOCKER_HOST from your {self.shell_rc()}")
