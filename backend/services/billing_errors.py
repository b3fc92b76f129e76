"""Billing error taxonomy.

User-facing operations raise these with a human-readable message that the
HTTP layer passes through verbatim. Background paths (webhooks, the
reconciliation sweep) catch and log them instead.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for billing failures."""

    http_status = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class BillingValidationError(BillingError):
    """Malformed input (unknown plan tier, missing field). No side effects."""

    http_status = 400


class BillingConsistencyError(BillingError):
    """Local state does not allow the requested operation."""

    http_status = 409


class BillingProviderError(BillingError):
    """The payment provider was unreachable, timed out or returned an error."""

    http_status = 502

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class WebhookAuthenticationError(BillingError):
    """Webhook signature did not verify. Nothing is processed."""

    http_status = 401
