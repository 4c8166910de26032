"""Infrastructure: retry/backoff for upstream calls and the per-account sync lease."""

from inboxsync.infra.lease import SyncLease
from inboxsync.infra.retry import call_with_backoff

__all__ = ["SyncLease", "call_with_backoff"]
