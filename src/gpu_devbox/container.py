"""GPU development container lifecycle management for gpu-devbox."""

import json
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

import click

from .config import ProjectConfig
from .console import STEP, ClickConfirmer, Confirmer
from .errors import (
    ArchiveMissing,
    BuildFailed,
    ContainerMissing,
    DefinitionMissing,
    ImageNotBuilt,
    LoadFailed,
    NoImageAvailable,
    PrerequisiteMissing,
    RuntimeCommandError,
    SaveFailed,
    StartFailed,
    StopFailed,
)
from .mode import ResolvedMode, render_security_warning
from .process import CommandRunner
from .runtime import ContainerState, DockerRuntime, RunSpec, format_size, runtime_for

logger = logging.getLogger(__name__)

GPU_QUERY = "index,name,driver_version,memory.total,memory.used"


class ContainerManager:
    """Drives the managed image and container toward a requested state.

    Every query goes back to the runtime; nothing about image or container
    state is cached between calls.
    """

    def __init__(
        self,
        config: ProjectConfig,
        resolved: ResolvedMode,
        *,
        runtime: Optional[DockerRuntime] = None,
        confirmer: Optional[Confirmer] = None,
        runner: Optional[CommandRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
        environ: Optional[dict[str, str]] = None,
    ):
        """Initialize the container manager.

        Args:
            config: Project settings (names, paths, user mapping)
            resolved: Execution mode computed at startup
            runtime: Container runtime backend; chosen from the mode if omitted
            confirmer: Source of yes/no answers for destructive steps
            runner: Host command runner (xhost, nvidia-smi)
            sleep: Used for the settle delay after starting
            environ: Environment used for DISPLAY passthrough
        """
        self.config = config
        self.resolved = resolved
        self.runner = runner or CommandRunner()
        self.runtime = runtime or runtime_for(resolved, runner=self.runner)
        self.confirmer = confirmer or ClickConfirmer()
        self._sleep = sleep
        self._environ = os.environ if environ is None else environ

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def image_exists(self) -> bool:
        return self.runtime.image_exists(self.config.image_name)

    def container_state(self) -> ContainerState:
        return self.runtime.container_state(self.config.container_name)

    def is_container_running(self) -> bool:
        return self.container_state() is ContainerState.RUNNING

    def container_exists(self) -> bool:
        return self.container_state() is not ContainerState.ABSENT

    # ------------------------------------------------------------------
    # Prerequisites
    # ------------------------------------------------------------------

    def check_prerequisites(self) -> None:
        """Verify the docker CLI and the NVIDIA driver are present."""
        logger.info("Checking prerequisites...")

        if not self.runner.which("docker"):
            raise PrerequisiteMissing("Docker is not installed.")

        if self.resolved.rootless:
            logger.info("Using Rootless Docker")

        try:
            info = self.runtime.info()
        except RuntimeCommandError as e:
            logger.debug(f"docker info failed: {e}")
            info = {}
        if "nvidia" not in json.dumps(info).lower():
            logger.warning("NVIDIA Docker runtime may not be installed.")

        if not self.runner.which("nvidia-smi"):
            raise PrerequisiteMissing("NVIDIA driver not found.")

        logger.info("Prerequisites check passed.")

    # ------------------------------------------------------------------
    # Image operations
    # ------------------------------------------------------------------

    def build_image(self) -> None:
        """Build the image with the fixed user mapping as build arguments."""
        cfg = self.config
        logger.info(f"Building Docker image: {cfg.image_name}...", extra=STEP)

        dockerfile = cfg.dockerfile
        if not dockerfile.is_file():
            raise DefinitionMissing(f"Dockerfile not found: {dockerfile}")

        try:
            self.runtime.build(dockerfile, cfg.context_dir, cfg.image_name, cfg.build_args)
        except RuntimeCommandError as e:
            raise BuildFailed(f"Build failed.\n{e}") from e

        logger.info("Build completed successfully.")

    def save_image(self) -> None:
        """Write the image to the archive and open it up for other users."""
        cfg = self.config
        logger.info("Saving Docker image to file...", extra=STEP)

        if not self.image_exists():
            raise ImageNotBuilt(f"Image {cfg.image_name} not found. Please build it first.")

        archive = cfg.archive_path
        archive.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Saving image to: {archive}")
        logger.warning("This may take several minutes depending on image size...")

        try:
            self.runtime.save(cfg.image_name, archive)
        except RuntimeCommandError as e:
            raise SaveFailed(f"Failed to save image.\n{e}") from e

        # Shared on purpose so other accounts on the host can load it.
        try:
            self._share_archive(archive)
            size = archive.stat().st_size
        except (OSError, RuntimeCommandError) as e:
            raise SaveFailed(f"Failed to set permissions on {archive}.\n{e}") from e

        logger.info(f"Image saved successfully. Size: {format_size(size)}")
        logger.info(f"Location: {archive}")

    def _share_archive(self, archive: Path) -> None:
        # A privileged save leaves a root-owned 0600 file behind.
        if self.resolved.rootless:
            os.chmod(archive, 0o777)
        else:
            self.runner.run([*self.resolved.runtime_prefix[:-1], "chmod", "777", str(archive)])

    def load_image(self) -> None:
        cfg = self.config
        logger.info("Loading Docker image from file...", extra=STEP)

        archive = cfg.archive_path
        if not archive.is_file():
            raise ArchiveMissing(
                f"Image file not found: {archive}",
                hint="Please build the image first with: devbox build",
            )

        logger.info(f"Loading image from: {archive}")
        logger.warning("This may take several minutes...")

        try:
            self.runtime.load(archive)
        except RuntimeCommandError as e:
            raise LoadFailed(f"Failed to load image.\n{e}") from e

        logger.info("Image loaded successfully.")

    # ------------------------------------------------------------------
    # Container operations
    # ------------------------------------------------------------------

    def run_spec(self, workspace: str) -> RunSpec:
        """Container definition: fixed user, all GPUs, host network, durable caches."""
        cfg = self.config
        return RunSpec(
            image=cfg.image_name,
            name=cfg.container_name,
            user=cfg.user_spec,
            gpus="all",
            network="host",
            restart_policy=cfg.restart_policy,
            shm_size=cfg.shm_size,
            security_opt=["seccomp=unconfined"],
            environment={
                "NVIDIA_VISIBLE_DEVICES": "all",
                "NVIDIA_DRIVER_CAPABILITIES": "compute,utility",
                "DISPLAY": self._environ.get("DISPLAY") or cfg.default_display,
                "HOME": cfg.home_dir,
            },
            binds={workspace: f"{cfg.home_dir}/{os.path.basename(workspace)}"},
            volumes=cfg.volumes,
        )

    def _ensure_image(self) -> None:
        if self.image_exists():
            return
        logger.warning(f"Image {self.config.image_name} not found.")
        if self.config.archive_path.is_file():
            logger.info("Found saved image file. Loading...")
            self.load_image()
            return
        raise NoImageAvailable("No image found. Please run 'devbox build' first.")

    def _allow_x11(self) -> None:
        if not self.runner.which("xhost"):
            return
        try:
            self.runner.run(["xhost", "+local:docker"])
        except RuntimeCommandError as e:
            logger.debug(f"xhost failed: {e}")

    def start_container(self) -> None:
        """Create and start the container, recreating it from scratch.

        A running container is left alone. A stopped one is removed first;
        the named cache volumes are never touched here.
        """
        cfg = self.config
        logger.info(f"Starting container: {cfg.container_name}...", extra=STEP)
        render_security_warning(self.resolved)

        if self.is_container_running():
            logger.warning(f"Container {cfg.container_name} is already running.")
            return

        self._ensure_image()

        workspace = cfg.workspace.absolute()
        workspace.mkdir(parents=True, exist_ok=True)
        logger.info(f"Workspace: {workspace}")

        self._allow_x11()

        self.runtime.remove(cfg.container_name, missing_ok=True)

        logger.info("Launching container...")
        try:
            container_id = self.runtime.run(self.run_spec(str(workspace)))
        except RuntimeCommandError as e:
            raise StartFailed(f"Failed to start container.\n{e}") from e

        if container_id:
            logger.debug(f"Container id: {container_id[:12]}")
        logger.info("Container started successfully.")
        logger.info("Use 'devbox run' to enter the container.")
        logger.info("Use 'devbox logs' to view container logs.")

    def enter_shell(self) -> int:
        """Attach a login shell as the mapped user, starting the container if needed."""
        render_security_warning(self.resolved)

        if not self.is_container_running():
            logger.warning("Container not running. Starting...")
            self.start_container()
            self._sleep(self.config.settle_delay)

        logger.info("Entering container shell...")
        return self.runtime.exec_interactive(
            self.config.container_name, self.config.user_spec, ["/bin/bash", "-l"]
        )

    def stop_container(self) -> None:
        cfg = self.config
        logger.info(f"Stopping container: {cfg.container_name}...", extra=STEP)
        render_security_warning(self.resolved)

        if self.is_container_running():
            try:
                self.runtime.stop(cfg.container_name)
            except RuntimeCommandError as e:
                raise StopFailed(f"Failed to stop container.\n{e}") from e
            logger.info("Container stopped.")
        else:
            logger.warning(f"Container {cfg.container_name} is not running.")

        if self.confirmer.confirm("Remove stopped container?", default=False):
            self.runtime.remove(cfg.container_name, missing_ok=True)
            logger.info("Container removed.")

    def clean_all(self, *, remove_archive: bool = False, remove_volumes: bool = False) -> None:
        """Tear down the container and, on confirmation, the image.

        The archive and the cache volumes survive unless their switch is
        turned on and the removal is confirmed as well.
        """
        cfg = self.config
        logger.info("Cleaning up...", extra=STEP)

        if self.container_exists():
            logger.info("Stopping and removing container...")
            try:
                self.runtime.stop(cfg.container_name)
            except RuntimeCommandError as e:
                logger.debug(f"Ignoring stop failure: {e}")
            self.runtime.remove(cfg.container_name, missing_ok=True)

        if self.image_exists():
            if self.confirmer.confirm(f"Remove Docker image {cfg.image_name}?", default=False):
                try:
                    self.runtime.remove_image(cfg.image_name)
                    logger.info("Image removed.")
                except RuntimeCommandError as e:
                    logger.warning(f"Failed to remove image: {e}")

        archive = cfg.archive_path
        if remove_archive and archive.is_file():
            if self.confirmer.confirm("Remove saved image file?", default=False):
                archive.unlink()
                logger.info("Image file removed.")

        if remove_volumes:
            if self.confirmer.confirm("Remove Docker volumes (conda packages & pip cache)?", default=False):
                for vol in cfg.volumes:
                    try:
                        self.runtime.remove_volume(vol.name)
                    except RuntimeCommandError as e:
                        logger.debug(f"Ignoring volume removal failure for {vol.name}: {e}")
                logger.info("Volumes removed.")

        logger.info("Cleanup completed.")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def show_status(self) -> None:
        cfg = self.config
        echo = click.echo
        logger.info("System Status:")
        echo()

        echo("=== Security ===")
        if self.resolved.rootless:
            click.secho("✓ Rootless Docker: ACTIVE", fg="green")
            echo(f"  Socket: {self.resolved.docker_host}")
        else:
            click.secho("✗ System-Level Docker", fg="red")
            click.secho("  Please run: devbox-rootless install", fg="yellow")
        echo()

        echo("=== Configuration ===")
        echo(f"Image name:      {cfg.image_name}")
        echo(f"Container name:  {cfg.container_name}")
        echo(f"Workspace path:  {cfg.workspace}")
        echo(f"Image save path: {cfg.archive_path}")
        echo(f"User:            {cfg.username} ({cfg.user_spec})")
        echo()

        echo("=== Container ===")
        row = self.runtime.describe_container(cfg.container_name)
        if row:
            _echo_table(["Names", "Status", "Image", "CreatedAt"], [row])
        else:
            echo("No container found.")
        echo()

        echo("=== Image ===")
        row = self.runtime.describe_image(cfg.image_name) if self.image_exists() else None
        if row:
            _echo_table(["Repository", "Tag", "Size", "CreatedAt"], [row])
        else:
            echo("No image found in Docker.")
        echo()

        echo("=== Saved Image File ===")
        archive = cfg.archive_path
        if archive.is_file():
            echo(f"Found: {archive} ({format_size(archive.stat().st_size)})")
        else:
            echo("No saved image file found.")
        echo()

        echo("=== Volumes ===")
        try:
            names = self.runtime.list_volumes(cfg.container_name)
        except RuntimeCommandError as e:
            logger.debug(f"volume listing failed: {e}")
            names = []
        if names:
            for name in names:
                echo(name)
        else:
            echo("No volumes found.")
        echo()

        echo("=== GPU ===")
        self._show_gpus()

    def _show_gpus(self) -> None:
        if not self.runner.which("nvidia-smi"):
            click.echo("NVIDIA driver not found.")
            return
        try:
            out = self.runner.output(
                ["nvidia-smi", f"--query-gpu={GPU_QUERY}", "--format=csv,noheader,nounits"]
            )
        except RuntimeCommandError as e:
            logger.warning(f"nvidia-smi failed: {e}")
            return
        click.echo("GPU\tName\t\t\tDriver\tMemory")
        for line in out.splitlines():
            fields = [f.strip() for f in line.split(",")]
            if len(fields) < 5:
                continue
            index, name, driver, total, used = fields[:5]
            click.echo(f"{index}\t{name:<20}\t{driver}\t{used}/{total} MB")

    def show_logs(self) -> None:
        """Stream container logs until interrupted."""
        cfg = self.config
        if not self.container_exists():
            raise ContainerMissing(f"Container {cfg.container_name} not found.")
        logger.info(f"Showing logs for {cfg.container_name} (Ctrl+C to exit)...")
        self.runtime.follow_logs(cfg.container_name)


def _echo_table(columns: list[str], rows: list[dict]) -> None:
    widths = {c: max(len(c), *(len(str(r.get(c, ""))) for r in rows)) for c in columns}
    click.echo("   ".join(c.upper().ljust(widths[c]) for c in columns))
    for r in rows:
        click.echo("   ".join(str(r.get(c, "")).ljust(widths[c]) for c in columns))
