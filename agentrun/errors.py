"""Exception types shared across the runtime.

Admission errors are the only failures allowed to short-circuit a request
before streaming starts. Everything else is converted into in-band events
by the StepDriver.
"""


class AdmissionError(Exception):
    """A request was rejected before the run started."""

    status: int = 400
    code: str | None = None

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.message}
        if self.code:
            body["code"] = self.code
        return body


class MalformedRequestError(AdmissionError):
    """Request body is missing required fields or is not valid JSON."""

    status = 400


class UnauthenticatedError(AdmissionError):
    """The lane requires an authenticated identity."""

    status = 401

    def __init__(self, message: str = "Unauthorized", code: str | None = None):
        super().__init__(message, code)


class TargetNotFoundError(AdmissionError):
    """The requested agent or workflow does not exist or is not owned by the caller."""

    status = 404


class InsufficientCreditsError(AdmissionError):
    """The caller's credit balance is below the admission threshold."""

    status = 402
    code = "NO_CREDITS"

    def __init__(self, message: str = "Insufficient credits", code: str | None = None):
        super().__init__(message, code)


class CreditChargeError(Exception):
    """A ledger could not deduct credits."""


class RunStateError(Exception):
    """Illegal run status transition (terminal runs are immutable)."""


class ToolNotFoundError(Exception):
    """No capability is registered under the requested name."""


class ToolTimeoutError(Exception):
    """A capability did not finish within its time limit."""
