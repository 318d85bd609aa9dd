"""
Error taxonomy for the ingestion and analytics paths.

HTTP mapping lives in api.main; background paths (worker, buffer flush)
log these and keep going.
"""

from typing import Any, List, Optional, Union


class AnalyticsError(Exception):
    """Base class for all domain errors raised by this service."""

    status_code = 500

    def __init__(self, message: Union[str, List[str]], *, detail: Optional[Any] = None):
        if isinstance(message, list):
            self.messages = [str(m) for m in message]
        else:
            self.messages = [str(message)]
        self.detail = detail
        super().__init__("; ".join(self.messages))

    def to_payload(self) -> Any:
        """Error body used in the `{success: false, error}` envelope."""
        if len(self.messages) == 1:
            return self.messages[0]
        return self.messages


class ValidationError(AnalyticsError):
    """Malformed or missing input. User-fixable."""

    status_code = 400


class PayloadTooLarge(AnalyticsError):
    """Batch exceeds the configured maximum event count."""

    status_code = 400


class QueueUnavailable(AnalyticsError):
    """The durable channel refused or could not accept the batch."""

    status_code = 500


class PersistenceError(AnalyticsError):
    """A storage call failed."""

    status_code = 500


class CacheError(AnalyticsError):
    """Cache failure. Never surfaced to clients."""

    status_code = 500
