"""Shared fakes for gpu-devbox tests.

These stand in for the container runtime and host commands so lifecycle
logic can be exercised without Docker.
"""

import subprocess
from pathlib import Path

import pytest

from gpu_devbox.config import ProjectConfig
from gpu_devbox.errors import RuntimeCommandError
from gpu_devbox.mode import ExecutionMode, ResolvedMode
from gpu_devbox.runtime import ContainerState, DockerRuntime


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: needs a real docker daemon")


class FakeRuntime(DockerRuntime):
    """In-memory runtime tracking images, containers and volumes."""

    mode = ExecutionMode.ROOTLESS

    def __init__(self, images=(), archive_image="ubuntu:22041311"):
        self.images = set(images)
        self.containers: dict[str, ContainerState] = {}
        self.volumes: set[str] = set()
        self.archive_image = archive_image
        self.calls: list[tuple] = []
        self.run_specs = []
        self.fail: set[str] = set()
        self.info_data = {"Runtimes": {"nvidia": {}, "runc": {}}}
        self.exec_status = 0
        self._next_id = 0

    def _maybe_fail(self, op, *argv):
        self.calls.append((op, *argv))
        if op in self.fail:
            raise RuntimeCommandError(["docker", op, *map(str, argv)], 1, f"{op} failed")

    def image_exists(self, image):
        return image in self.images

    def container_state(self, name):
        return self.containers.get(name, ContainerState.ABSENT)

    def build(self, dockerfile, context, tag, buildargs):
        self._maybe_fail("build", dockerfile, context, tag, dict(buildargs))
        self.images.add(tag)

    def save(self, image, path):
        self._maybe_fail("save", image, path)
        Path(path).write_bytes(b"archive of " + image.encode())

    def load(self, path):
        self._maybe_fail("load", path)
        self.images.add(self.archive_image)

    def run(self, spec):
        self._maybe_fail("run", spec.name)
        if spec.name in self.containers:
            raise RuntimeCommandError(["docker", "run"], 125, f"Conflict: name {spec.name} in use")
        self.run_specs.append(spec)
        for vol in spec.volumes:
            self.volumes.add(vol.name)
        self.containers[spec.name] = ContainerState.RUNNING
        self._next_id += 1
        return f"{self._next_id:064x}"

    def stop(self, name):
        self._maybe_fail("stop", name)
        if name in self.containers:
            self.containers[name] = ContainerState.STOPPED

    def remove(self, name, *, missing_ok=False):
        self.calls.append(("remove", name))
        if name not in self.containers:
            if missing_ok:
                return
            raise RuntimeCommandError(["docker", "rm", name], 1, "No such container")
        del self.containers[name]

    def remove_image(self, image):
        self._maybe_fail("remove_image", image)
        self.images.discard(image)

    def remove_volume(self, name):
        self._maybe_fail("remove_volume", name)
        self.volumes.discard(name)

    def list_volumes(self, name_filter):
        return sorted(v for v in self.volumes if name_filter in v)

    def exec_interactive(self, name, user, argv):
        self.calls.append(("exec", name, user, list(argv)))
        return self.exec_status

    def follow_logs(self, name):
        self.calls.append(("logs", name))

    def info(self):
        return self.info_data

    def describe_container(self, name):
        state = self.container_state(name)
        if state is ContainerState.ABSENT:
            return None
        return {"Names": name, "Status": state.value, "Image": "img", "CreatedAt": "now"}

    def describe_image(self, image):
        if image not in self.images:
            return None
        repo, _, tag = image.rpartition(":")
        return {"Repository": repo, "Tag": tag, "Size": "1.0G", "CreatedAt": "now"}


class FakeRunner:
    """Records host commands; answers ``which`` from a fixed set."""

    def __init__(self, available=("docker", "nvidia-smi"), outputs=None, failing=()):
        self.available = set(available)
        self.outputs = dict(outputs or {})
        self.failing = set(failing)
        self.commands: list[list[str]] = []
        self.inputs: list = []

    def _key(self, argv):
        return " ".join(str(a) for a in argv)

    def run(self, argv, *, check=True, capture=True, env=None, input=None):
        argv = [str(a) for a in argv]
        self.commands.append(argv)
        self.inputs.append(input)
        key = self._key(argv)
        rc = 1 if any(key.startswith(f) for f in self.failing) else 0
        stdout = ""
        for prefix, out in self.outputs.items():
            if key.startswith(prefix):
                stdout = out
                break
        if check and rc != 0:
            raise RuntimeCommandError(argv, rc, "failed")
        return subprocess.CompletedProcess(argv, rc, stdout=stdout, stderr="")

    def output(self, argv, *, env=None):
        return self.run(argv, env=env).stdout

    def succeeds(self, argv, *, env=None):
        return self.run(argv, check=False, env=env).returncode == 0

    def interactive(self, argv, *, env=None):
        self.commands.append([str(a) for a in argv])
        return 0

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.available else None


@pytest.fixture
def rootless_mode():
    return ResolvedMode(
        mode=ExecutionMode.ROOTLESS,
        uid=1000,
        docker_host="unix:///run/user/1000/docker.sock",
    )


@pytest.fixture
def privileged_mode():
    return ResolvedMode(mode=ExecutionMode.PRIVILEGED, uid=1000, security_warning=True)


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    (root / "docker").mkdir(parents=True)
    (root / "docker" / "Dockerfile").write_text("FROM scratch\n")
    return ProjectConfig(root_dir=root, workspace_dir=tmp_path / "workspace")


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def fake_runner():
    return FakeRunner()
