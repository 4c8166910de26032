"""Error taxonomy for the inbox sync engine.

    InboxSyncError
    ├── UpstreamError                 non-retryable upstream failure
    │   ├── UpstreamNotFoundError
    │   ├── MalformedResponseError
    │   └── TransientUpstreamError    retried by infra.retry
    │       ├── RateLimitedError
    │       └── UpstreamTimeoutError
    ├── AuthError                     token missing/expired, aborts a run
    ├── DataAnomalyError              skip one record, keep going
    │   ├── MissingConversationIdError
    │   └── SelfParticipantError
    ├── PersistenceConflictError
    └── SyncInProgressError
"""

from __future__ import annotations

from typing import Literal


class InboxSyncError(Exception):
    """Root exception for all inbox sync errors."""


class UpstreamError(InboxSyncError):
    """An upstream Graph API call failed."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class UpstreamNotFoundError(UpstreamError):
    pass


class MalformedResponseError(UpstreamError):
    pass


class TransientUpstreamError(UpstreamError):
    """Failure worth retrying: throttling or a timeout."""


class RateLimitedError(TransientUpstreamError):
    pass


class UpstreamTimeoutError(TransientUpstreamError):
    pass


class AuthError(InboxSyncError):
    """The account's access token is missing, expired, or rejected."""

    def __init__(self, code: Literal["EXPIRED", "MISSING"], message: str) -> None:
        super().__init__(message)
        self.code = code


class DataAnomalyError(InboxSyncError):
    """A single message or conversation cannot be processed safely."""


class MissingConversationIdError(DataAnomalyError):
    pass


class SelfParticipantError(DataAnomalyError):
    pass


class PersistenceConflictError(InboxSyncError):
    """The (account, participant) conflict could not be healed."""


class SyncInProgressError(InboxSyncError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"Reconciliation sync already running for account {account_id}")
        self.account_id = account_id
