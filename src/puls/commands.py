"""Execution of external programs (systemctl, journalctl, nvidia-smi, docker)."""

import logging
import shutil
import subprocess
from collections.abc import Sequence

from puls.errors import ExternalCommandFailed, SourceTimeout, SourceUnavailable

logger = logging.getLogger(__name__)


class CommandRunner:
    """
    Thin wrapper around subprocess.run.

    Every external program puls touches goes through one of these, so tests can
    substitute a scripted runner.
    """

    def __init__(self, sudo: bool = False) -> None:
        """
        Initialize the CommandRunner.

        Args:
            sudo: Prefix privileged commands with `sudo -n`.
        """
        self.sudo = sudo

    def available(self, program: str) -> bool:
        """Check whether a program is on PATH."""
        return shutil.which(program) is not None

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float = 30.0,
        input: str | None = None,
        privileged: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """
        Run a command and return the completed process.

        Args:
            argv: Program and arguments.
            timeout: Seconds before the command is abandoned.
            input: Text fed to standard input.
            privileged: Whether the command needs root (adds `sudo -n` when
                this runner was created with sudo=True).

        Raises:
            SourceUnavailable: The program does not exist.
            SourceTimeout: The program did not finish in time.
        """
        cmd = list(argv)
        if privileged and self.sudo:
            cmd = ["sudo", "-n", *cmd]
        logger.debug("Running %s", cmd)
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SourceUnavailable(f"Command not found: {cmd[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise SourceTimeout(f"Command timed out: {' '.join(cmd)}") from exc

    def check_output(self, argv: Sequence[str], **kwargs) -> str:
        """
        Run a command and return its stdout.

        Raises:
            ExternalCommandFailed: The command exited non-zero.
        """
        result = self.run(argv, **kwargs)
        if result.returncode != 0:
            raise ExternalCommandFailed(result.args, result.returncode, result.stderr or "")
        return result.stdout
