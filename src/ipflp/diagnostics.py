"""Indented iteration diagnostics passed explicitly down the call chain."""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging


@dataclass(frozen=True)
class LogContext:
    """Logger plus indentation depth.

    ``verbose`` mirrors the solver's ``print`` flag: diagnostics are emitted at
    INFO when set and at DEBUG otherwise, so they stay available to callers
    that configure logging without forcing output on everyone else.
    """

    logger: logging.Logger
    depth: int = 0
    verbose: bool = False

    @property
    def level(self) -> int:
        return logging.INFO if self.verbose else logging.DEBUG

    def nested(self) -> "LogContext":
        return replace(self, depth=self.depth + 1)

    def active(self) -> bool:
        return self.logger.isEnabledFor(self.level)

    def output(self, msg: str, *args: object) -> None:
        if not self.active():
            return
        self.logger.log(self.level, "  " * self.depth + msg, *args)


__all__ = ["LogContext"]
