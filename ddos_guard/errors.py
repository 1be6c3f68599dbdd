"""
Error taxonomy for the detection core.

Validation-class errors (bad or missing input, illegal transitions) derive
from ValueError and fail the single operation that raised them.
Infrastructure-class errors (feed fetch, delivery) derive from RuntimeError
and are handled where they occur: logged, never propagated into the business
operation that triggered them.
"""

from __future__ import annotations

from typing import Any


class FeatureMissingError(ValueError):
    """A detector variant's required input feature is absent."""

    def __init__(self, detector: str, feature: str) -> None:
        super().__init__(f"Detector '{detector}' requires feature '{feature}'")
        self.detector = detector
        self.feature = feature


class NoDetectorAvailableError(RuntimeError):
    """No detector variant produced a timely result for a sample."""


class FeedUnavailableError(RuntimeError):
    """A threat intelligence refresh failed (network, HTTP status or parse)."""


class IllegalTransitionError(ValueError):
    """A lifecycle transition was requested from a state that forbids it.

    ``current`` holds the record as it was before the request; it is
    returned unchanged to the caller.
    """

    def __init__(self, action: str, current: Any) -> None:
        status = getattr(current, "status", None)
        status_value = getattr(status, "value", status)
        super().__init__(
            f"Cannot {action} '{getattr(current, 'id', '?')}' from status '{status_value}'"
        )
        self.action = action
        self.current = current


class TimelineOrderError(ValueError):
    """A timeline append carried a timestamp earlier than the last entry."""


class NotificationDeliveryError(RuntimeError):
    """A single channel failed to deliver a notification."""

    def __init__(self, channel: str, reason: str) -> None:
        super().__init__(f"Delivery via '{channel}' failed: {reason}")
        self.channel = channel
        self.reason = reason


class RecordNotFoundError(LookupError):
    """No alert or incident exists with the requested id."""
