"""Exception types shared by the puls sources and control subsystem."""

from collections.abc import Sequence


class PulsError(Exception):
    """Base class for every error raised by puls."""


class SourceUnavailable(PulsError):
    """A metric source is absent on this host (no daemon, no device, no tool)."""


class SourceTimeout(PulsError):
    """A metric source did not answer within its per-tick budget."""


class PermissionDenied(PulsError):
    """The process capability does not allow the requested mutation."""


class ParseError(PulsError):
    """External data could not be parsed without guessing."""


class BackupFailed(PulsError):
    """A backup copy could not be written, so the mutation was aborted."""


class ExternalCommandFailed(PulsError):
    """An external program exited with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str) -> None:
        """
        Initialize the error.

        Args:
            argv: The command that was run.
            returncode: Its exit status.
            stderr: Its standard error, kept verbatim.
        """
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"{' '.join(self.argv)}: {detail}")
