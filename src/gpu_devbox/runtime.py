"""Container runtime backends.

Two interchangeable backends expose the same small surface to the
lifecycle manager:

- ``SdkRuntime`` talks to the daemon through the docker SDK. It is used
  for rootless docker, where the socket belongs to the invoking user.
- ``CliRuntime`` drives the ``docker`` CLI behind ``sudo`` for system
  docker, where the socket is not accessible without elevation.
"""

import enum
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import docker
import docker.errors
from docker.types import DeviceRequest
from pydantic import BaseModel, ConfigDict, Field

from .config import NamedVolume
from .errors import PrerequisiteMissing, RuntimeCommandError
from .mode import ExecutionMode, ResolvedMode
from .process import CommandRunner

logger = logging.getLogger(__name__)


class ContainerState(str, enum.Enum):
    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING = "running"


class RunSpec(BaseModel):
    """Everything needed to create the managed container."""

    model_config = ConfigDict(frozen=True)

    image: str
    name: str
    user: str
    gpus: str = "all"
    network: str = "host"
    restart_policy: str = "unless-stopped"
    shm_size: str = "32g"
    security_opt: list[str] = Field(default_factory=lambda: ["seccomp=unconfined"])
    environment: dict[str, str] = Field(default_factory=dict)
    binds: dict[str, str] = Field(default_factory=dict)
    volumes: list[NamedVolume] = Field(default_factory=list)
    interactive: bool = True

    def cli_args(self) -> list[str]:
        """Arguments for ``docker run`` (without the ``docker`` prefix)."""
        args = [
            "run", "-d",
            "--name", self.name,
            "--user", self.user,
            "--gpus", self.gpus,
            "--network", self.network,
            "--restart", self.restart_policy,
            f"--shm-size={self.shm_size}",
        ]
        for opt in self.security_opt:
            args += ["--security-opt", opt]
        for key, value in self.environment.items():
            args += ["-e", f"{key}={value}"]
        for host, target in self.binds.items():
            args += ["-v", f"{host}:{target}"]
        for vol in self.volumes:
            args += ["-v", f"{vol.name}:{vol.target}"]
        if self.interactive:
            args.append("-it")
        args.append(self.image)
        return args


class DockerRuntime:
    """Operations the lifecycle manager needs from a container runtime."""

    mode: ExecutionMode

    def image_exists(self, image: str) -> bool:
        raise NotImplementedError

    def container_state(self, name: str) -> ContainerState:
        raise NotImplementedError

    def build(self, dockerfile: Path, context: Path, tag: str, buildargs: dict[str, str]) -> None:
        raise NotImplementedError

    def save(self, image: str, path: Path) -> None:
        raise NotImplementedError

    def load(self, path: Path) -> None:
        raise NotImplementedError

    def run(self, spec: RunSpec) -> str:
        raise NotImplementedError

    def stop(self, name: str) -> None:
        raise NotImplementedError

    def remove(self, name: str, *, missing_ok: bool = False) -> None:
        raise NotImplementedError

    def remove_image(self, image: str) -> None:
        raise NotImplementedError

    def remove_volume(self, name: str) -> None:
        raise NotImplementedError

    def list_volumes(self, name_filter: str) -> list[str]:
        raise NotImplementedError

    def exec_interactive(self, name: str, user: str, argv: list[str]) -> int:
        raise NotImplementedError

    def follow_logs(self, name: str) -> None:
        raise NotImplementedError

    def info(self) -> dict[str, Any]:
        raise NotImplementedError

    def describe_container(self, name: str) -> Optional[dict[str, str]]:
        raise NotImplementedError

    def describe_image(self, image: str) -> Optional[dict[str, str]]:
        raise NotImplementedError


def _image_matches(tags: list[str], image: str) -> bool:
    return image in tags


class SdkRuntime(DockerRuntime):
    """docker SDK backend, pinned to the rootless socket when one was found."""

    mode = ExecutionMode.ROOTLESS

    def __init__(self, resolved: ResolvedMode, client=None, runner: Optional[CommandRunner] = None):
        self.resolved = resolved
        self.runner = runner or CommandRunner()
        if client is None:
            try:
                if resolved.docker_host:
                    client = docker.DockerClient(base_url=resolved.docker_host)
                else:
                    client = docker.from_env()
            except docker.errors.DockerException as e:
                raise PrerequisiteMissing(
                    f"Cannot reach the rootless docker daemon at {resolved.docker_host}: {e}",
                    hint="Check: devbox-rootless status",
                ) from e
        self.client = client

    def _fail(self, argv: list[str], exc: Exception) -> RuntimeCommandError:
        return RuntimeCommandError(["docker", *argv], 1, str(exc))

    def image_exists(self, image: str) -> bool:
        try:
            images = self.client.images.list(name=image)
        except docker.errors.APIError as e:
            raise self._fail(["images", image], e) from e
        return any(_image_matches(list(img.tags or []), image) for img in images)

    def container_state(self, name: str) -> ContainerState:
        try:
            c = self.client.containers.get(name)
        except docker.errors.NotFound:
            return ContainerState.ABSENT
        except docker.errors.APIError as e:
            raise self._fail(["inspect", name], e) from e
        try:
            c.reload()
        except docker.errors.NotFound:
            return ContainerState.ABSENT
        running = bool(((c.attrs or {}).get("State") or {}).get("Running"))
        if running or getattr(c, "status", None) == "running":
            return ContainerState.RUNNING
        return ContainerState.STOPPED

    def build(self, dockerfile: Path, context: Path, tag: str, buildargs: dict[str, str]) -> None:
        logger.info(f"Building image {tag} from {dockerfile}...")
        argv = ["build", "-t", tag, "-f", str(dockerfile), str(context)]
        try:
            stream = self.client.api.build(
                path=str(context),
                dockerfile=str(dockerfile),
                tag=tag,
                buildargs=dict(buildargs),
                rm=True,
                forcerm=True,
                decode=True,
            )
            for chunk in stream:
                if "error" in chunk:
                    raise docker.errors.BuildError(chunk.get("error"), build_log=iter(()))
                if "stream" in chunk:
                    msg = chunk["stream"].rstrip()
                    if msg:
                        logger.info(msg)
                elif "status" in chunk:
                    status = chunk.get("status", "")
                    progress = chunk.get("progress", "")
                    logger.debug(f"{status} {progress}".strip())
        except (docker.errors.BuildError, docker.errors.APIError) as e:
            raise self._fail(argv, e) from e

    def save(self, image: str, path: Path) -> None:
        try:
            img = self.client.images.get(image)
            with open(path, "wb") as f:
                for chunk in img.save(named=True):
                    f.write(chunk)
        except (docker.errors.APIError, OSError) as e:
            raise self._fail(["save", "-o", str(path), image], e) from e

    def load(self, path: Path) -> None:
        try:
            with open(path, "rb") as f:
                loaded = self.client.images.load(f)
        except (docker.errors.APIError, OSError) as e:
            raise self._fail(["load", "-i", str(path)], e) from e
        for img in loaded:
            logger.info(f"Loaded image: {', '.join(img.tags or [img.short_id])}")

    def run(self, spec: RunSpec) -> str:
        volumes: dict[str, dict[str, str]] = {
            host: {"bind": target, "mode": "rw"} for host, target in spec.binds.items()
        }
        for vol in spec.volumes:
            volumes[vol.name] = {"bind": vol.target, "mode": "rw"}
        device_requests = []
        if spec.gpus:
            count = -1 if spec.gpus == "all" else int(spec.gpus)
            device_requests.append(DeviceRequest(count=count, capabilities=[["gpu"]]))
        try:
            container = self.client.containers.run(
                spec.image,
                name=spec.name,
                user=spec.user,
                detach=True,
                tty=spec.interactive,
                stdin_open=spec.interactive,
                network_mode=spec.network,
                restart_policy={"Name": spec.restart_policy},
                shm_size=spec.shm_size,
                security_opt=list(spec.security_opt),
                environment=dict(spec.environment),
                volumes=volumes,
                device_requests=device_requests,
            )
        except docker.errors.DockerException as e:
            raise self._fail(spec.cli_args(), e) from e
        return container.id

    def stop(self, name: str) -> None:
        try:
            self.client.containers.get(name).stop()
        except docker.errors.APIError as e:
            raise self._fail(["stop", name], e) from e

    def remove(self, name: str, *, missing_ok: bool = False) -> None:
        try:
            self.client.containers.get(name).remove()
        except docker.errors.APIError as e:
            # NotFound is an APIError too
            if not missing_ok:
                raise self._fail(["rm", name], e) from e
            logger.debug(f"Ignoring failure removing {name}: {e}")

    def remove_image(self, image: str) -> None:
        try:
            self.client.images.remove(image)
        except docker.errors.APIError as e:
            raise self._fail(["rmi", image], e) from e

    def remove_volume(self, name: str) -> None:
        try:
            self.client.volumes.get(name).remove()
        except docker.errors.APIError as e:
            raise self._fail(["volume", "rm", name], e) from e

    def list_volumes(self, name_filter: str) -> list[str]:
        try:
            return [v.name for v in self.client.volumes.list(filters={"name": name_filter})]
        except docker.errors.APIError as e:
            raise self._fail(["volume", "ls"], e) from e

    def exec_interactive(self, name: str, user: str, argv: list[str]) -> int:
        # The SDK cannot hand a TTY to the caller; the CLI can.
        return self.runner.interactive(
            ["docker", "exec", "-it", "--user", user, name, *argv],
            env=self.resolved.command_env(),
        )

    def follow_logs(self, name: str) -> None:
        try:
            container = self.client.containers.get(name)
            for chunk in container.logs(stream=True, follow=True):
                sys.stdout.write(chunk.decode("utf-8", errors="replace"))
                sys.stdout.flush()
        except docker.errors.APIError as e:
            raise self._fail(["logs", "-f", name], e) from e

    def info(self) -> dict[str, Any]:
        try:
            return dict(self.client.info())
        except docker.errors.DockerException as e:
            raise self._fail(["info"], e) from e

    def describe_container(self, name: str) -> Optional[dict[str, str]]:
        try:
            c = self.client.containers.get(name)
        except docker.errors.NotFound:
            return None
        attrs = c.attrs or {}
        image = (attrs.get("Config") or {}).get("Image", "")
        return {
            "Names": c.name,
            "Status": (attrs.get("State") or {}).get("Status", c.status),
            "Image": image,
            "CreatedAt": attrs.get("Created", ""),
        }

    def describe_image(self, image: str) -> Optional[dict[str, str]]:
        try:
            img = self.client.images.get(image)
        except docker.errors.ImageNotFound:
            return None
        repo, _, tag = image.rpartition(":")
        attrs = img.attrs or {}
        return {
            "Repository": repo or image,
            "Tag": tag if repo else "latest",
            "Size": format_size(int(attrs.get("Size") or 0)),
            "CreatedAt": attrs.get("Created", ""),
        }


class CliRuntime(DockerRuntime):
    """docker CLI backend; every call carries the mode's command prefix."""

    mode = ExecutionMode.PRIVILEGED

    def __init__(self, resolved: ResolvedMode, runner: Optional[CommandRunner] = None):
        self.resolved = resolved
        self.runner = runner or CommandRunner()

    def _argv(self, *args: str) -> list[str]:
        return [*self.resolved.runtime_prefix, *args]

    def _run(self, *args: str, capture: bool = True):
        return self.runner.run(self._argv(*args), capture=capture, env=self.resolved.command_env())

    def _lines(self, *args: str) -> list[str]:
        out = self._run(*args).stdout or ""
        return [line.strip() for line in out.splitlines() if line.strip()]

    def image_exists(self, image: str) -> bool:
        return image in self._lines("images", "--format", "{{.Repository}}:{{.Tag}}")

    def container_state(self, name: str) -> ContainerState:
        rows = self._lines("ps", "-a", "--filter", f"name=^{name}$", "--format", "{{.Names}}\t{{.State}}")
        for row in rows:
            cname, _, state = row.partition("\t")
            if cname == name:
                return ContainerState.RUNNING if state.strip() == "running" else ContainerState.STOPPED
        return ContainerState.ABSENT

    def build(self, dockerfile: Path, context: Path, tag: str, buildargs: dict[str, str]) -> None:
        args = ["build"]
        for key, value in buildargs.items():
            args += ["--build-arg", f"{key}={value}"]
        args += ["-t", tag, "-f", str(dockerfile), str(context)]
        self._run(*args, capture=False)

    def save(self, image: str, path: Path) -> None:
        self._run("save", "-o", str(path), image)

    def load(self, path: Path) -> None:
        for line in self._lines("load", "-i", str(path)):
            logger.info(line)

    def run(self, spec: RunSpec) -> str:
        lines = self._lines(*spec.cli_args())
        return lines[-1] if lines else ""

    def stop(self, name: str) -> None:
        self._run("stop", name)

    def remove(self, name: str, *, missing_ok: bool = False) -> None:
        try:
            self._run("rm", name)
        except RuntimeCommandError as e:
            if not missing_ok:
                raise
            logger.debug(f"Ignoring failure removing {name}: {e}")

    def remove_image(self, image: str) -> None:
        self._run("rmi", image)

    def remove_volume(self, name: str) -> None:
        self._run("volume", "rm", name)

    def list_volumes(self, name_filter: str) -> list[str]:
        return self._lines("volume", "ls", "--filter", f"name={name_filter}", "--format", "{{.Name}}")

    def exec_interactive(self, name: str, user: str, argv: list[str]) -> int:
        return self.runner.interactive(
            self._argv("exec", "-it", "--user", user, name, *argv),
            env=self.resolved.command_env(),
        )

    def follow_logs(self, name: str) -> None:
        self.runner.interactive(self._argv("logs", "-f", name), env=self.resolved.command_env())

    def info(self) -> dict[str, Any]:
        out = self._run("info", "--format", "{{json .}}").stdout or "{}"
        return json.loads(out)

    def _first_json_row(self, *args: str) -> Optional[dict[str, str]]:
        rows = self._lines(*args, "--format", "{{json .}}")
        return json.loads(rows[0]) if rows else None

    def describe_container(self, name: str) -> Optional[dict[str, str]]:
        return self._first_json_row("ps", "-a", "--filter", f"name=^{name}$")

    def describe_image(self, image: str) -> Optional[dict[str, str]]:
        return self._first_json_row("images", image)


def format_size(num: float) -> str:
    """Human readable byte count, du -h style."""
    for unit in ("B", "K", "M", "G", "T"):
        if abs(num) < 1024 or unit == "T":
            return f"{num:.0f}{unit}" if unit == "B" else f"{num:.1f}{unit}"
        num /= 1024
    return f"{num:.1f}T"


def runtime_for(resolved: ResolvedMode, runner: Optional[CommandRunner] = None) -> DockerRuntime:
    """Pick the backend matching the resolved execution mode."""
    if resolved.mode is ExecutionMode.ROOTLESS:
        return SdkRuntime(resolved, runner=runner)
    return CliRuntime(resolved, runner=runner)
