"""Exception hierarchy for pulsewatch.

Only configuration errors are ever raised into host code, plus a
``UsageError`` when a plugin's ``init`` is called outside ``setup``. Other
usage errors are logged by the tracker. Delivery errors are caught by the
tracker, which requeues the failed batch.
"""

from __future__ import annotations

from typing import Optional


class PulsewatchError(Exception):
    """Base class for all pulsewatch errors."""


class ConfigurationError(PulsewatchError, ValueError):
    """Raised when a tracker is constructed with invalid configuration."""


class UsageError(PulsewatchError):
    """An operation was attempted on an instance that cannot perform it."""


class TrackerDestroyedError(UsageError):
    """An operation was attempted after ``destroy()``."""


class DeliveryError(PulsewatchError):
    """A batch could not be delivered to the collection endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DeliveryBusyError(DeliveryError):
    """A blocking delivery was requested while another one is in flight."""
