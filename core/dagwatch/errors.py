"""Exceptions raised across dagwatch."""


class DagwatchError(Exception):
    """Base class for dagwatch errors."""


class ApiError(DagwatchError):
    """The agent service answered with a non-success envelope."""

    def __init__(self, code: str, info: str | None = None):
        self.code = code
        self.info = info or "Error"
        super().__init__(f"[{code}] {self.info}")


class UnauthorizedError(ApiError):
    """Token missing, expired or rejected (envelope code 0401 or HTTP 401)."""

    def __init__(self, info: str | None = None):
        super().__init__("0401", info or "Unauthorized")


class ReviewSubmissionError(DagwatchError):
    """A review decision could not be delivered; the session stays paused."""


class ProtocolError(DagwatchError):
    """An event contradicts the session state (raised only by a strict applier)."""
