"""Cooperative cancellation for a single run."""

USER_STOP_MESSAGE = "Run stopped by user."


class CancellationToken:
    """Flag checked by the StepDriver between fragments and after each tool call.

    Set by the transport when the client disconnects or a write fails, or by
    an explicit stop request. Only the first reason is kept.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    def cancel(self, reason: str = "client disconnected") -> None:
        if not self._cancelled:
            self.reason = reason
            self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled
