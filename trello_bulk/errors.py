from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .executor import RequestDescriptor


class TrelloApiError(Exception):
    pass


class ExecutorError(TrelloApiError):
    """A single remote call that did not produce a usable response."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        descriptor: RequestDescriptor | None = None,
        status: int | None = None,
        body: str = "",
    ):
        super().__init__(message)
        self.descriptor = descriptor
        self.status = status
        self.body = body
        self.attempt = 0
        self.latency = 0.0

    def record(self, attempt: int, latency: float) -> None:
        self.attempt = attempt
        self.latency = latency


class ClientFailure(ExecutorError):
    pass


class TrelloAuthError(ClientFailure):
    pass


class ServerFailure(ExecutorError):
    retryable = True


class NetworkFailure(ExecutorError):
    retryable = True


class TimeoutFailure(ExecutorError):
    retryable = True


class RetriesExhausted(ExecutorError):
    def __init__(self, last_failure: ExecutorError, attempts: int):
        super().__init__(
            f"Gave up after {attempts} attempts: {last_failure}",
            descriptor=last_failure.descriptor,
            status=last_failure.status,
            body=last_failure.body,
        )
        self.last_failure = last_failure
        self.attempts = attempts
        self.record(last_failure.attempt, last_failure.latency)


class SelectionError(TrelloApiError):
    pass


class OperationCancelled(TrelloApiError):
    pass
