from __future__ import annotations

import enum
import sys
from typing import TextIO


class Verbosity(enum.IntEnum):
    QUIET = 0
    NORMAL = 1
    DETAILED = 2

    @classmethod
    def parse(cls, value: str) -> "Verbosity":
        try:
            return cls[value.strip().upper()]
        except KeyError as e:
            raise ValueError(f"Unknown verbosity {value!r}. Expected quiet, normal or detailed.") from e


class Console:
    """
    Reporting sink for human-readable progress lines. Purely observational.

    Streams are looked up at write time so redirected sys.stdout/sys.stderr are honoured.
    """

    def __init__(
        self,
        verbosity: Verbosity = Verbosity.NORMAL,
        *,
        out: TextIO | None = None,
        err: TextIO | None = None,
    ) -> None:
        self.verbosity = verbosity
        self._out = out
        self._err = err

    def info(self, message: str) -> None:
        if self.verbosity >= Verbosity.NORMAL:
            print(message, file=self._out or sys.stdout)

    def detail(self, message: str) -> None:
        if self.verbosity >= Verbosity.DETAILED:
            print(message, file=self._out or sys.stdout)

    def warning(self, message: str) -> None:
        if self.verbosity >= Verbosity.NORMAL:
            print(f"warning: {message}", file=self._err or sys.stderr)

    def error(self, message: str) -> None:
        print(f"error: {message}", file=self._err or sys.stderr)

    def timing(self, label: str, seconds: float) -> None:
        self.detail(f"{label}: {seconds:.3f}s")


class NullConsole(Console):
    def __init__(self) -> None:
        super().__init__(Verbosity.QUIET)

    def error(self, message: str) -> None:
        pass
