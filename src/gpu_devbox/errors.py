"""Error taxonomy for gpu-devbox.

Every operation raises one of these; the CLI turns them into a labeled
``[ERROR]`` line and a non-zero exit status.
"""

from typing import Optional


class DevboxError(Exception):
    """Base class for all user-facing failures."""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class RuntimeCommandError(DevboxError):
    """A container runtime or host command exited with an error."""

    def __init__(self, argv: list[str], returncode: int, output: str = ""):
        msg = f"Command failed with exit code {returncode}: {' '.join(argv)}"
        if output.strip():
            msg = f"{msg}\n{output.strip()}"
        super().__init__(msg)
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output


class DefinitionMissing(DevboxError):
    pass


class ImageNotBuilt(DevboxError):
    pass


class ArchiveMissing(DevboxError):
    pass


class NoImageAvailable(DevboxError):
    pass


class BuildFailed(DevboxError):
    pass


class SaveFailed(DevboxError):
    pass


class LoadFailed(DevboxError):
    pass


class StartFailed(DevboxError):
    pass


class StopFailed(DevboxError):
    pass


class ContainerMissing(DevboxError):
    pass


class PrerequisiteMissing(DevboxError):
    """The container runtime, GPU driver or a host tool is absent."""
