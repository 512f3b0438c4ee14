"""Rootless vs. privileged Docker execution mode resolution."""

import enum
import logging
import os
import stat
from typing import Callable, Mapping, Optional

import click
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

ROOTLESS_PATH_MARKER = "run/user"


class ExecutionMode(str, enum.Enum):
    ROOTLESS = "rootless"
    PRIVILEGED = "privileged"


def user_socket_path(uid: int) -> str:
    return f"/run/user/{uid}/docker.sock"


def is_socket(path: str) -> bool:
    try:
        return stat.S_ISSOCK(os.stat(path).st_mode)
    except OSError:
        return False


class ResolvedMode(BaseModel):
    """The execution mode for this process; computed once and passed around."""

    model_config = ConfigDict(frozen=True)

    mode: ExecutionMode
    uid: int
    docker_host: Optional[str] = None
    security_warning: bool = False

    @property
    def rootless(self) -> bool:
        return self.mode is ExecutionMode.ROOTLESS

    @property
    def runtime_prefix(self) -> list[str]:
        """Argument prefix for every docker CLI invocation."""
        if self.mode is ExecutionMode.PRIVILEGED:
            return ["sudo", "docker"]
        return ["docker"]

    def command_env(self, base: Optional[Mapping[str, str]] = None) -> dict[str, str]:
        """Environment for child processes with the pinned socket applied."""
        env = dict(os.environ if base is None else base)
        if self.docker_host:
            env["DOCKER_HOST"] = self.docker_host
        return env


def resolve_mode(
    uid: Optional[int] = None,
    environ: Optional[Mapping[str, str]] = None,
    socket_exists: Optional[Callable[[str], bool]] = None,
) -> ResolvedMode:
    """Decide how docker commands are executed.

    1. A socket at /run/user/<uid>/docker.sock means rootless, and the
       socket address is pinned for the rest of the process.
    2. Otherwise a DOCKER_HOST that already points under run/user means
       rootless.
    3. Otherwise fall back to system docker through sudo and flag the
       security warning.
    """
    uid = os.getuid() if uid is None else uid
    env = os.environ if environ is None else environ
    exists = socket_exists or is_socket

    socket_path = user_socket_path(uid)
    if exists(socket_path):
        logger.debug(f"Found rootless docker socket at {socket_path}")
        return ResolvedMode(mode=ExecutionMode.ROOTLESS, uid=uid, docker_host=f"unix://{socket_path}")

    docker_host = env.get("DOCKER_HOST") or ""
    if docker_host and ROOTLESS_PATH_MARKER in docker_host:
        logger.debug(f"Using rootless docker from DOCKER_HOST={docker_host}")
        return ResolvedMode(mode=ExecutionMode.ROOTLESS, uid=uid, docker_host=docker_host)

    return ResolvedMode(mode=ExecutionMode.PRIVILEGED, uid=uid, security_warning=True)


_BANNER_WIDTH = 66


def render_security_warning(resolved: ResolvedMode) -> None:
    """Print the system-docker warning box when running privileged.

    Written straight to the terminal, not through logging, so log level
    settings cannot hide it.
    """
    if not resolved.security_warning:
        return
    lines = [
        "SECURITY WARNING: Using system-level Docker",
        "Run `devbox-rootless install` to enable container isolation",
    ]
    border = "═" * _BANNER_WIDTH
    click.echo(err=True)
    click.secho(f"╔{border}╗", fg="red", err=True)
    for line in lines:
        click.secho(f"║  {line.ljust(_BANNER_WIDTH - 2)}║", fg="red", err=True)
    click.secho(f"╚{border}╝", fg="red", err=True)
    click.echo(err=True)
