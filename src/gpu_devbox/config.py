"""Project configuration for gpu-devbox."""

import os
from importlib import resources
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# User mapping baked into the image. These must match the ARG defaults in
# gpu_devbox/docker/Dockerfile or file ownership inside the container breaks.
DEVBOX_USERNAME = "urays"
DEVBOX_UID = 42752
DEVBOX_GID = 42752

DEFAULT_IMAGE_NAME = "ubuntu:22041311"
DEFAULT_CONTAINER_NAME = "urays_dev"


def bundled_dockerfile() -> Path:
    """The build definition installed alongside this package."""
    return Path(str(resources.files("gpu_devbox") / "docker" / "Dockerfile"))


class NamedVolume(BaseModel):
    """A runtime-managed volume that outlives the container."""

    model_config = ConfigDict(frozen=True)

    name: str
    target: str


class ProjectConfig(BaseModel):
    """Immutable settings shared by every lifecycle operation."""

    model_config = ConfigDict(frozen=True)

    image_name: str = DEFAULT_IMAGE_NAME
    container_name: str = DEFAULT_CONTAINER_NAME
    root_dir: Path = Field(default_factory=lambda: Path.cwd().absolute())
    definition_path: Optional[Path] = None
    build_context: Optional[Path] = None
    image_dir: Optional[Path] = None
    workspace_dir: Optional[Path] = None

    username: str = DEVBOX_USERNAME
    uid: int = DEVBOX_UID
    gid: int = DEVBOX_GID

    shm_size: str = "32g"
    # unless-stopped keeps an explicit `stop` sticky across daemon restarts
    restart_policy: str = "unless-stopped"
    settle_delay: float = 2.0
    default_display: str = ":0"

    @property
    def dockerfile(self) -> Path:
        """Explicit path, else <root>/docker/Dockerfile, else the bundled one."""
        if self.definition_path is not None:
            return self.definition_path
        local = self.root_dir / "docker" / "Dockerfile"
        if local.is_file():
            return local
        return bundled_dockerfile()

    @property
    def context_dir(self) -> Path:
        return self.build_context or self.dockerfile.parent

    @property
    def image_root(self) -> Path:
        return self.image_dir or self.root_dir / ".docker"

    @property
    def workspace(self) -> Path:
        return self.workspace_dir or self.root_dir

    @property
    def archive_path(self) -> Path:
        """Deterministic location of the saved image archive."""
        safe_image = self.image_name.replace(":", "-")
        return self.image_root / f"{safe_image}.{self.container_name}.backup.tar"

    @property
    def home_dir(self) -> str:
        return f"/home/{self.username}"

    @property
    def user_spec(self) -> str:
        return f"{self.uid}:{self.gid}"

    @property
    def build_args(self) -> dict[str, str]:
        return {
            "USERNAME": self.username,
            "USER_UID": str(self.uid),
            "USER_GID": str(self.gid),
        }

    @property
    def volumes(self) -> list[NamedVolume]:
        """Package-manager caches that persist across container recreation."""
        return [
            NamedVolume(name=f"{self.container_name}-conda-pkgs", target="/opt/conda/pkgs"),
            NamedVolume(name=f"{self.container_name}-pip-cache", target=f"{self.home_dir}/.cache/pip"),
        ]

    @classmethod
    def from_env(cls, root_dir: Optional[Path] = None, environ: Optional[dict[str, str]] = None) -> "ProjectConfig":
        """Build the configuration, honouring DEVBOX_* overrides.

        The user name and ids are not overridable; they belong to the image.
        """
        env = os.environ if environ is None else environ
        values: dict = {}
        if root_dir is not None:
            values["root_dir"] = Path(root_dir).absolute()
        if env.get("DEVBOX_IMAGE_NAME"):
            values["image_name"] = env["DEVBOX_IMAGE_NAME"]
        if env.get("DEVBOX_CONTAINER_NAME"):
            values["container_name"] = env["DEVBOX_CONTAINER_NAME"]
        if env.get("DEVBOX_DOCKERFILE"):
            values["definition_path"] = Path(env["DEVBOX_DOCKERFILE"]).expanduser().absolute()
        if env.get("DEVBOX_IMAGE_DIR"):
            values["image_dir"] = Path(env["DEVBOX_IMAGE_DIR"]).expanduser().absolute()
        if env.get("DEVBOX_WORKSPACE_DIR"):
            values["workspace_dir"] = Path(env["DEVBOX_WORKSPACE_DIR"]).expanduser().absolute()
        return cls(**values)
