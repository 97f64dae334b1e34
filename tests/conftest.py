"""Shared fakes for puls tests."""

import subprocess
import threading

import pytest

from puls.commands import CommandRunner
from puls.errors import SourceUnavailable
from puls.sources import MetricSource


class FakeRunner(CommandRunner):
    """
    Scripted command runner.

    Responses are matched on the longest registered argv prefix. Every call is
    recorded (after any sudo prefix is applied) so tests can assert on what ran.
    """

    def __init__(self, sudo: bool = False, installed: tuple[str, ...] = ()) -> None:
        super().__init__(sudo=sudo)
        self.calls: list[list[str]] = []
        self.inputs: list[str | None] = []
        self._responses: dict[tuple[str, ...], tuple[int, str, str]] = {}
        self._installed = set(installed)

    def add(self, argv, stdout: str = "", stderr: str = "", returncode: int = 0) -> None:
        self._responses[tuple(argv)] = (returncode, stdout, stderr)
        self._installed.add(argv[0])

    def available(self, program: str) -> bool:
        return program in self._installed

    def run(self, argv, *, timeout=30.0, input=None, privileged=False):
        cmd = list(argv)
        if privileged and self.sudo:
            cmd = ["sudo", "-n", *cmd]
        self.calls.append(cmd)
        self.inputs.append(input)
        best = None
        for prefix in self._responses:
            if tuple(argv[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            raise SourceUnavailable(f"Command not found: {argv[0]}")
        returncode, stdout, stderr = self._responses[best]
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


class FakeSource(MetricSource):
    """Source returning a fixed fragment, or raising, optionally after a delay."""

    def __init__(self, name, fields, fragment=None, error=None, delay=0.0, timeout=None):
        self.name = name
        self.fields = tuple(fields)
        self.fragment = fragment or {}
        self.error = error
        self.delay = delay
        self.timeout = timeout
        self.calls = 0
        self.release = threading.Event()

    def poll(self):
        self.calls += 1
        if self.delay:
            self.release.wait(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.fragment)


@pytest.fixture
def runner():
    return FakeRunner()
