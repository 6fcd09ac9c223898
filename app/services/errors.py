from __future__ import annotations

from typing import Optional


class FlowError(Exception):
    """Base class for batch automation failures."""


class ConfigurationError(FlowError):
    """A required credential or setting is missing; fatal before a run starts."""


class SubmissionError(FlowError):
    """The UI refused a submission; fails only the affected item."""


class PollTransportError(FlowError):
    """The status endpoint could not be reached; retried on a later cycle."""


class SessionError(FlowError):
    """The browser session could not be prepared for work."""


class SessionLostError(SessionError):
    """The browser disconnected; fatal to the whole run."""


class SessionTimeoutError(SessionError):
    """A wait on the remote site exceeded its configured timeout."""


class RunCancelledError(FlowError):
    """Cancellation was requested while a blocking step was in progress."""


class ApiRequestError(FlowError):
    def __init__(self, url: str, status: Optional[int], body: str) -> None:
        self.url = url
        self.status = status
        self.body = body
        if status is None:
            message = f"API request to {url} failed: {body}"
        else:
            message = f"API request to {url} failed with status {status}: {body}"
        super().__init__(message)
