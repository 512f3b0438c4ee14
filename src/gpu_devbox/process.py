"""Host command execution.

All commands are argument lists; nothing is ever passed through a shell.
"""

import logging
import shutil
import subprocess
from typing import Mapping, Optional, Sequence

from .errors import RuntimeCommandError

logger = logging.getLogger(__name__)


class CommandRunner:
    """Thin wrapper around subprocess used by the CLI runtime and host setup."""

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        capture: bool = True,
        env: Optional[Mapping[str, str]] = None,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        argv = [str(a) for a in argv]
        logger.debug(f"exec: {argv}")
        try:
            result = subprocess.run(
                argv,
                capture_output=capture,
                text=True,
                env=dict(env) if env is not None else None,
                input=input,
            )
        except FileNotFoundError as e:
            raise RuntimeCommandError(argv, 127, str(e)) from e
        if check and result.returncode != 0:
            output = (result.stderr or "") + (result.stdout or "") if capture else ""
            raise RuntimeCommandError(argv, result.returncode, output)
        return result

    def output(self, argv: Sequence[str], *, env: Optional[Mapping[str, str]] = None) -> str:
        """Run a command and return its stdout; raises on failure."""
        return self.run(argv, env=env).stdout or ""

    def succeeds(self, argv: Sequence[str], *, env: Optional[Mapping[str, str]] = None) -> bool:
        try:
            return self.run(argv, check=False, env=env).returncode == 0
        except RuntimeCommandError:
            return False

    def interactive(self, argv: Sequence[str], *, env: Optional[Mapping[str, str]] = None) -> int:
        """Run attached to the current terminal and return the exit status."""
        argv = [str(a) for a in argv]
        logger.debug(f"exec (interactive): {argv}")
        try:
            return subprocess.call(argv, env=dict(env) if env is not None else None)
        except FileNotFoundError as e:
            raise RuntimeCommandError(argv, 127, str(e)) from e

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)
