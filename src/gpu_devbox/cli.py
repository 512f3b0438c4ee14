"""Command line entry points: ``devbox`` and ``devbox-rootless``."""

import functools
import logging
from typing import Optional

import click

from .config import ProjectConfig
from .console import setup_logging
from .container import ContainerManager
from .errors import DevboxError
from .mode import ResolvedMode, resolve_mode
from .rootless import RootlessSetup

logger = logging.getLogger(__name__)

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


class DevboxGroup(click.Group):
    """Group that treats an unknown sub-command as a labeled error (exit 1)."""

    def resolve_command(self, ctx: click.Context, args: list[str]):
        name = args[0] if args else None
        if name and not name.startswith("-") and self.get_command(ctx, name) is None:
            logger.error(f"Unknown command: {name}")
            click.echo()
            click.echo(ctx.get_help())
            ctx.exit(1)
        return super().resolve_command(ctx, args)


def handle_errors(func):
    """Turn DevboxError into a labeled error line and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DevboxError as e:
            logger.error(str(e))
            if e.hint:
                logger.info(e.hint)
            raise click.exceptions.Exit(1)

    return wrapper


class DevboxContext:
    """Per-invocation state: config and mode are fixed, the manager is lazy."""

    def __init__(self, config: ProjectConfig, resolved: ResolvedMode):
        self.config = config
        self.resolved = resolved
        self._manager: Optional[ContainerManager] = None

    @property
    def manager(self) -> ContainerManager:
        if self._manager is None:
            self._manager = make_manager(self.config, self.resolved)
        return self._manager


def make_manager(config: ProjectConfig, resolved: ResolvedMode) -> ContainerManager:
    return ContainerManager(config, resolved)


pass_devbox = click.make_pass_decorator(DevboxContext)


@click.group(cls=DevboxGroup, invoke_without_command=True, context_settings=CONTEXT_SETTINGS)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Build, run and manage the GPU development container."""
    if verbose:
        setup_logging(verbose=True)
    ctx.obj = DevboxContext(ProjectConfig.from_env(), resolve_mode())
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@pass_devbox
@handle_errors
def build(state: DevboxContext) -> None:
    """Build Docker image from Dockerfile."""
    manager = state.manager
    manager.check_prerequisites()
    manager.build_image()
    if manager.confirmer.confirm("Save image to file for future use?", default=True):
        manager.save_image()
    logger.info("Build process completed.")


@cli.command()
@pass_devbox
@handle_errors
def save(state: DevboxContext) -> None:
    """Save Docker image to tar file."""
    state.manager.save_image()


@cli.command()
@pass_devbox
@handle_errors
def load(state: DevboxContext) -> None:
    """Load Docker image from tar file."""
    state.manager.load_image()


@cli.command()
@pass_devbox
@handle_errors
def run(state: DevboxContext) -> None:
    """Enter container shell (will start if not running)."""
    manager = state.manager
    manager.check_prerequisites()
    if manager.enter_shell() != 0:
        raise click.exceptions.Exit(1)


@cli.command()
@pass_devbox
@handle_errors
def stop(state: DevboxContext) -> None:
    """Stop the running container."""
    state.manager.stop_container()


@cli.command()
@click.option("--remove-archive", is_flag=True, help="Also offer to delete the saved image file")
@click.option("--remove-volumes", is_flag=True, help="Also offer to delete the cache volumes")
@pass_devbox
@handle_errors
def clean(state: DevboxContext, remove_archive: bool, remove_volumes: bool) -> None:
    """Remove container, image, and volumes (interactive)."""
    state.manager.clean_all(remove_archive=remove_archive, remove_volumes=remove_volumes)


@cli.command()
@pass_devbox
@handle_errors
def status(state: DevboxContext) -> None:
    """Show detailed status of container, image, and GPU."""
    state.manager.show_status()


@cli.command()
@pass_devbox
@handle_errors
def logs(state: DevboxContext) -> None:
    """Show container logs (real-time)."""
    try:
        state.manager.show_logs()
    except KeyboardInterrupt:
        click.echo()


@cli.command("help")
@click.pass_context
def show_help(ctx: click.Context) -> None:
    """Show this help message."""
    click.echo(ctx.parent.get_help())


@click.group(cls=DevboxGroup, invoke_without_command=True, context_settings=CONTEXT_SETTINGS)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def rootless_cli(ctx: click.Context, verbose: bool) -> None:
    """Rootless Docker setup for Manjaro/Arch/Ubuntu/Debian.

    Supported distributions: Manjaro, Arch Linux, EndeavourOS, Garuda,
    Ubuntu, Debian, Linux Mint, Pop!_OS. Runs `install` when no command
    is given.
    """
    if verbose:
        setup_logging(verbose=True)
    ctx.obj = make_rootless_setup()
    if ctx.invoked_subcommand is None:
        ctx.invoke(install)


def make_rootless_setup() -> RootlessSetup:
    return RootlessSetup()


pass_setup = click.make_pass_decorator(RootlessSetup)


@rootless_cli.command()
@pass_setup
@handle_errors
def install(setup: RootlessSetup) -> None:
    """Full installation."""
    setup.install()


@rootless_cli.command("status")
@pass_setup
@handle_errors
def rootless_status(setup: RootlessSetup) -> None:
    """Check rootless Docker status."""
    setup.status()


@rootless_cli.command("start")
@pass_setup
@handle_errors
def rootless_start(setup: RootlessSetup) -> None:
    """Start rootless daemon."""
    setup.start()


@rootless_cli.command("stop")
@pass_setup
@handle_errors
def rootless_stop(setup: RootlessSetup) -> None:
    """Stop rootless daemon."""
    setup.stop()


@rootless_cli.command("restart")
@pass_setup
@handle_errors
def rootless_restart(setup: RootlessSetup) -> None:
    """Restart rootless daemon."""
    setup.restart()


@rootless_cli.command()
@pass_setup
@handle_errors
def uninstall(setup: RootlessSetup) -> None:
    """Remove rootless Docker setup."""
    setup.uninstall()


@rootless_cli.command("help")
@click.pass_context
def rootless_help(ctx: click.Context) -> None:
    """Show this help."""
    click.echo(ctx.parent.get_help())


def main() -> None:
    """Entry point for ``devbox``."""
    setup_logging()
    cli(prog_name="devbox")


def rootless_main() -> None:
    """Entry point for ``devbox-rootless``."""
    setup_logging()
    rootless_cli(prog_name="devbox-rootless")


if __name__ == "__main__":
    main()
