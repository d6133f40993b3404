"""
Webhook pipeline error taxonomy.

Each class maps to one HTTP outcome at the ingress boundary:
- WebhookAuthenticationError -> 400/403, nothing touched
- WebhookConfigurationError  -> 500, operator must fix config
- RateLimitExceeded          -> 429, provider backs off and redelivers
- BusinessLogicError         -> claim released, then 500 (retryable)

"Already processed" and unhandled event types are not errors; they are
ordinary results of the pipeline.
"""
from typing import Optional


class WebhookError(Exception):
    """Base class for webhook pipeline failures."""


class WebhookAuthenticationError(WebhookError):
    """Request could not be proven to come from the billing provider."""


class WebhookSignatureError(WebhookAuthenticationError):
    """Signature header missing, malformed, stale, or not matching the body."""


class UntrustedSourceError(WebhookAuthenticationError):
    """Request originated outside the provider's published IP ranges."""


class WebhookConfigurationError(WebhookError):
    """Required configuration (e.g. the webhook secret) is missing."""


class RateLimitExceeded(WebhookError):
    def __init__(self, key: str, retry_after: Optional[int] = None):
        super().__init__(f"Rate limit exceeded for {key}")
        self.key = key
        self.retry_after = retry_after


class IdempotencyStoreError(WebhookError):
    """The claim transaction itself failed. Nothing was claimed; safe to redeliver."""


class BusinessLogicError(WebhookError):
    """Reducer or membership store failure. Triggers compensation."""


class MembershipNotFoundError(BusinessLogicError):
    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id
