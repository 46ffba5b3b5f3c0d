"""Errors raised by the process helpers and the teardown report."""

from __future__ import annotations

from dataclasses import dataclass, field


class GridfleetError(Exception):
    """Base class for gridfleet errors."""


class InstanceNeverStarted(GridfleetError):
    """A spawned service never answered ``alive`` before the deadline."""

    def __init__(self, url: str, timeout: float) -> None:
        self.url = url
        self.timeout = timeout
        super().__init__(f"Instance '{url}' never started!")


class RemoteCallError(GridfleetError):
    """Raised when a service answers a tool call with an error status."""

    def __init__(self, url: str, status_code: int, detail: str) -> None:
        self.url = url
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{url}: HTTP {status_code}: {detail}")


@dataclass
class TeardownError:
    """A failure recorded (not raised) during ``killall``.

    Attributes:
        url: Service the failing call was addressed to.
        stage: ``"consumed_pids"`` or ``"shutdown"``.
        error: The exception raised by the call.
    """

    url: str
    stage: str
    error: BaseException

    def to_dict(self) -> dict:
        return {"url": self.url, "stage": self.stage, "error": str(self.error)}


@dataclass
class TeardownReport:
    """Outcome of a best-effort ``killall`` pass."""

    pids: set[int] = field(default_factory=set)
    shut_down: list[str] = field(default_factory=list)
    errors: list[TeardownError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors
