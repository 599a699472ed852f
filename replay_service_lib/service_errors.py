from __future__ import annotations

from typing import Optional


class ReplayError(Exception):
    """Base class for every failure raised while replaying a session.

    ``step_index`` is the 0-based index of the event being replayed when the
    failure happened, or ``None`` when it happened before any event ran.
    """

    fatal: bool = True

    def __init__(self, reason: str, step_index: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.step_index = step_index

    @property
    def kind(self) -> str:
        return type(self).__name__

    def describe(self) -> str:
        if self.step_index is None:
            return self.reason
        return f"step {self.step_index + 1}: {self.reason}"


class InvalidSessionError(ReplayError):
    """Session file is missing, unparsable, empty or does not start with a navigation."""


class NavigationError(ReplayError):
    """Initial or mid-session navigation did not complete within the hard timeout."""


class ElementNotFound(ReplayError):
    """Every click resolution strategy was exhausted."""


class InputTargetNotFound(ReplayError):
    """Every input resolution strategy was exhausted."""


class WaitTimeout(ReplayError):
    """A WaitFor selector did not appear in time. Logged, never ends a run."""

    fatal = False


class UnhandledRuntimeError(ReplayError):
    """Any unexpected fault while a run was in progress."""

    @classmethod
    def wrap(cls, exc: BaseException, step_index: Optional[int] = None) -> "UnhandledRuntimeError":
        err = cls(f"{type(exc).__name__}: {exc}", step_index)
        err.__cause__ = exc
        return err
