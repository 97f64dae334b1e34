"""
Boot parameter file (/etc/default/grub) parsing and guarded editing.

The file is a shell fragment. Only simple `KEY=value` assignment lines are
editable; every other line (comments, blanks, shell statements) is kept
verbatim so an untouched file renders back byte for byte.
"""

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path

from puls.commands import CommandRunner
from puls.config import DEFAULT_BOOT_CONFIG
from puls.errors import BackupFailed, ParseError, PermissionDenied, PulsError
from puls.models import ActionResult, ActionStatus
from puls.privilege import PrivilegeGate

logger = logging.getLogger(__name__)

_ASSIGNMENT_RE = re.compile(r"^(\s*(?:export\s+)?)([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_UNQUOTED_SAFE_RE = re.compile(r"^[A-Za-z0-9_./:,+@%-]*$")
_UNQUOTED_VALUE_RE = re.compile(r"^([^\s\"'`$\\;&|<>()]*)(.*)$")
# What may follow a value: nothing, or a trailing comment
_SUFFIX_RE = re.compile(r"^(?:\s+#.*|\s*)$")

# Backup names look like grub.20260131-235959.bak
BACKUP_TIME_FORMAT = "%Y%m%d-%H%M%S"


@dataclass(slots=True, frozen=True)
class ConfigLine:
    """
    One physical line. `key` is None for anything that is not an assignment.

    An assignment whose right-hand side is more than one plain word or one
    quoted string (concatenated quoting, a trailing command) is kept with
    `editable` False and its raw right-hand side as `value`.
    """

    text: str  # Without the line ending
    ending: str  # "\n", "\r\n" or "" for a final unterminated line
    key: str | None = None
    value: str = ""
    prefix: str = ""  # Indentation and/or "export "
    quote: str = ""  # '"', "'" or ""
    suffix: str = ""  # Whitespace and an optional trailing comment
    editable: bool = True

    def render(self) -> str:
        return self.text + self.ending


def _split_ending(line: str) -> tuple[str, str]:
    if line.endswith("\r\n"):
        return line[:-2], "\r\n"
    if line.endswith("\n"):
        return line[:-1], "\n"
    return line, ""


def _parse_value(rest: str, lineno: int) -> tuple[str, str, str]:
    """Split the right-hand side of an assignment into (quote, value, suffix)."""
    if rest.startswith('"'):
        i = 1
        while i < len(rest):
            if rest[i] == "\\":
                i += 2
                continue
            if rest[i] == '"':
                return '"', rest[1:i], rest[i + 1 :]
            i += 1
        raise ParseError(f"line {lineno}: unterminated double quote")
    if rest.startswith("'"):
        end = rest.find("'", 1)
        if end == -1:
            raise ParseError(f"line {lineno}: unterminated single quote")
        return "'", rest[1:end], rest[end + 1 :]
    match = _UNQUOTED_VALUE_RE.match(rest)
    return "", match.group(1), match.group(2)


def parse_line(line: str, lineno: int = 0) -> ConfigLine:
    """Parse one physical line (line ending included, if any)."""
    text, ending = _split_ending(line)
    stripped = text.strip()
    if not stripped or stripped.startswith("#"):
        return ConfigLine(text=text, ending=ending)
    match = _ASSIGNMENT_RE.match(text)
    if match is None:
        return ConfigLine(text=text, ending=ending)
    prefix, key, rest = match.groups()
    quote, value, suffix = _parse_value(rest, lineno)
    if not _SUFFIX_RE.match(suffix):
        return ConfigLine(text=text, ending=ending, key=key, value=rest, prefix=prefix, editable=False)
    return ConfigLine(
        text=text,
        ending=ending,
        key=key,
        value=value,
        prefix=prefix,
        quote=quote,
        suffix=suffix,
    )


class GrubConfig:
    """
    Ordered, immutable view of a boot parameter file.

    Editing returns a new GrubConfig and leaves this one unchanged.
    """

    def __init__(self, lines: list[ConfigLine]) -> None:
        self._lines = tuple(lines)

    @classmethod
    def parse(cls, text: str) -> "GrubConfig":
        """
        Parse file contents.

        Raises:
            ParseError: An assignment has an unterminated quote.
        """
        return cls([parse_line(line, n) for n, line in enumerate(text.splitlines(keepends=True), 1)])

    @property
    def lines(self) -> tuple[ConfigLine, ...]:
        return self._lines

    def entries(self) -> list[tuple[str, str]]:
        """Key/value pairs in file order."""
        return [(line.key, line.value) for line in self._lines if line.key is not None]

    def get(self, key: str, default: str | None = None) -> str | None:
        """
        Value of the last assignment of key (the one the shell would use).

        Raises:
            ParseError: That assignment is not a simple one.
        """
        index = self._find(key)
        if index is None:
            return default
        line = self._lines[index]
        if not line.editable:
            raise ParseError(f"{key}: not a simple assignment: {line.text.strip()}")
        return line.value

    def __contains__(self, key: str) -> bool:
        return self._find(key) is not None

    def _find(self, key: str) -> int | None:
        for index in range(len(self._lines) - 1, -1, -1):
            if self._lines[index].key == key:
                return index
        return None

    def render(self) -> str:
        """File contents, byte-identical for untouched lines."""
        return "".join(line.render() for line in self._lines)

    def set(self, key: str, value: str) -> "GrubConfig":
        """
        Return a copy with key set to value.

        Only the line holding the effective assignment changes; an absent key
        is appended. The existing quoting style is kept when it can hold the
        new value.

        Raises:
            ParseError: The key is not a valid name or the value cannot be
                written without escaping.
        """
        if not _KEY_RE.match(key):
            raise ParseError(f"invalid parameter name: {key!r}")
        if "\n" in value or "\r" in value:
            raise ParseError(f"{key}: value must be a single line")

        lines = list(self._lines)
        index = self._find(key)
        if index is None:
            if lines and not lines[-1].ending:
                last = lines[-1]
                lines[-1] = replace(last, ending="\n")
            quote = _choose_quote(key, value, '"')
            lines.append(parse_line(f"{key}={quote}{value}{quote}\n"))
            return GrubConfig(lines)

        old = lines[index]
        if not old.editable:
            raise ParseError(f"{key}: not a simple assignment: {old.text.strip()}")
        quote = _choose_quote(key, value, old.quote)
        text = f"{old.prefix}{key}={quote}{value}{quote}{old.suffix}"
        lines[index] = replace(old, text=text, value=value, quote=quote)
        return GrubConfig(lines)


def _choose_quote(key: str, value: str, preferred: str) -> str:
    if preferred == "'":
        if "'" in value:
            raise ParseError(f"{key}: single-quoted value cannot contain a single quote")
        return "'"
    if preferred == "" and value and _UNQUOTED_SAFE_RE.match(value):
        return ""
    for ch in ('"', "`", "$", "\\"):
        if ch in value:
            raise ParseError(f"{key}: value contains {ch!r}, which would need shell escaping")
    return '"'


def read_text(path: Path) -> str:
    """Read a file keeping line endings and undecodable bytes intact."""
    with open(path, "r", encoding="utf-8", errors="surrogateescape", newline="") as f:
        return f.read()


class BootConfigEditor:
    """
    Guarded read-modify-write of the boot parameter file.

    The order is fixed: read, parse, edit in memory, write a timestamped
    backup, write the file. If the backup cannot be written nothing is written.
    """

    def __init__(
        self,
        gate: PrivilegeGate,
        path: str | Path = DEFAULT_BOOT_CONFIG,
        runner: CommandRunner | None = None,
        backup_dir: str | Path | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """
        Initialize the BootConfigEditor.

        Args:
            gate: Capability of this process.
            path: The boot parameter file.
            runner: Used for sudo-backed copies and writes.
            backup_dir: Where backups go; defaults to the file's directory.
            clock: Source of the backup timestamp.
        """
        self._gate = gate
        self.path = Path(path)
        self._runner = runner or CommandRunner(sudo=gate.use_sudo)
        self._backup_dir = Path(backup_dir) if backup_dir is not None else self.path.parent
        self._clock = clock

    def load(self) -> GrubConfig:
        """
        Read and parse the file. Reading needs no privilege.

        Raises:
            OSError: The file cannot be read.
            ParseError: The file is malformed.
        """
        return GrubConfig.parse(read_text(self.path))

    def backup_path(self) -> Path:
        """A fresh timestamp-suffixed path next to the backups."""
        stamp = self._clock().strftime(BACKUP_TIME_FORMAT)
        candidate = self._backup_dir / f"{self.path.name}.{stamp}.bak"
        counter = 1
        while candidate.exists():
            candidate = self._backup_dir / f"{self.path.name}.{stamp}-{counter}.bak"
            counter += 1
        return candidate

    def set_parameter(self, key: str, value: str) -> ActionResult:
        """Set one boot parameter, backing the file up first."""
        action = f"set {key} in {self.path}"
        try:
            self._gate.require_mutation(action)
        except PermissionDenied as e:
            logger.info("Refused: %s", e)
            return ActionResult(ActionStatus.PERMISSION_DENIED, str(e))

        try:
            original = read_text(self.path)
            edited = GrubConfig.parse(original).set(key, value)
        except ParseError as e:
            logger.warning("Rejected edit of %s: %s", self.path, e)
            return ActionResult(ActionStatus.PARSE_ERROR, str(e))
        except OSError as e:
            return ActionResult(ActionStatus.FAILURE, f"Cannot read {self.path}: {e}")

        new_text = edited.render()
        if new_text == original:
            return ActionResult(ActionStatus.SUCCESS, f"{key} already set to {value!r}")

        try:
            backup = self._backup()
        except BackupFailed as e:
            logger.error("Aborted edit of %s: %s", self.path, e)
            return ActionResult(ActionStatus.BACKUP_FAILED, str(e))

        try:
            self._write(new_text)
        except (OSError, PulsError) as e:
            logger.error("Writing %s failed (backup at %s): %s", self.path, backup, e)
            return ActionResult(ActionStatus.FAILURE, str(e), backup_path=str(backup))

        logger.info("Set %s=%r in %s (backup %s)", key, value, self.path, backup)
        return ActionResult(
            ActionStatus.SUCCESS, f"{key} set to {value!r}", backup_path=str(backup)
        )

    def _backup(self) -> Path:
        target = self.backup_path()
        try:
            if self._gate.use_sudo:
                self._runner.check_output(["cp", "-p", str(self.path), str(target)], privileged=True)
            else:
                shutil.copy2(self.path, target)
        except (OSError, PulsError) as e:
            raise BackupFailed(f"Backup of {self.path} to {target} failed: {e}") from e
        return target

    def _write(self, text: str) -> None:
        if self._gate.use_sudo:
            self._runner.check_output(["tee", str(self.path)], input=text, privileged=True)
            return
        # Write beside the target and rename, so a crash never leaves a torn file
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
                f.write(text)
            shutil.copymode(self.path, tmp)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
