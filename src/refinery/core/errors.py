from __future__ import annotations


class RefineryError(RuntimeError):
    """Base class for errors raised by the orchestration engine."""


class InvalidRequest(RefineryError):
    pass


class SessionNotFound(RefineryError):
    pass


class CallbackRejected(RefineryError):
    pass


class SessionCancelled(RefineryError):
    pass


class InvalidTransition(RefineryError):
    pass


class NoWinnerError(RefineryError):
    """Every exploration variant failed, so there is nothing to refine."""
