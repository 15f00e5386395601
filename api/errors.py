"""
Error taxonomy for stream status reconciliation.

Gateway failures are classified so callers can decide whether to retry:
- transient: network errors, timeouts, 5xx, 429 (safe to retry later)
- not_found: the stream host has no record of the asset (likely permanent)
- validation: other 4xx or an unsuccessful response body (fix the request first)

StaleTransition and RetryCeilingExceeded are logged by the reconciliation
path rather than surfaced as hard failures.
"""

from enum import Enum
from typing import Any, List, Optional

from config import ERROR_DETAIL_MAX_LENGTH


def truncate_error(error: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """Truncate an error message to a bounded length for storage and display.

    Args:
        error: The error message (may be None)
        max_length: Maximum length including the ellipsis

    Returns:
        The message unchanged if short enough, otherwise truncated with "..."
    """
    if error is None:
        return None
    if len(error) <= max_length:
        return error
    if max_length <= 3:
        return error[:max_length]
    return error[: max_length - 3] + "..."


class GatewayErrorKind(str, Enum):
    """Failure categories for stream host calls."""

    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"


class GatewayError(Exception):
    """Raised when a stream host call fails."""

    def __init__(
        self,
        kind: GatewayErrorKind,
        message: str,
        status_code: int = 0,
        remote_code: Optional[int] = None,
        remote_errors: Optional[List[Any]] = None,
    ):
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.remote_code = remote_code
        self.remote_errors = remote_errors or []
        super().__init__(f"Stream host {kind.value} error ({status_code}): {message}")

    @property
    def is_transient(self) -> bool:
        return self.kind == GatewayErrorKind.TRANSIENT

    @property
    def is_not_found(self) -> bool:
        return self.kind == GatewayErrorKind.NOT_FOUND


class InvalidPayload(Exception):
    """Raised when a webhook body is malformed."""

    pass


class WebhookSignatureError(Exception):
    """Raised when a webhook signature is missing, stale or does not match."""

    pass


class StaleTransition(Exception):
    """A snapshot implied a transition the state machine does not allow.

    Carried as a log record; remote hosts occasionally report stale
    transitional states after ready.
    """

    def __init__(self, remote_asset_id: str, current: str, proposed: str):
        self.remote_asset_id = remote_asset_id
        self.current = current
        self.proposed = proposed
        super().__init__(f"Ignoring stale transition {current} -> {proposed} for asset {remote_asset_id}")


class RetryCeilingExceeded(Exception):
    """Too many consecutive transient failures for one asset."""

    def __init__(self, remote_asset_id: str, attempts: int):
        self.remote_asset_id = remote_asset_id
        self.attempts = attempts
        super().__init__(f"Asset {remote_asset_id} exceeded {attempts} consecutive failed status checks")


class InvalidTransition(Exception):
    """Raised when an explicit operator action is not legal from the current state."""

    pass
