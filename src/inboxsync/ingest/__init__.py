"""Ingestion sources: the push webhook handler and the reconciliation sync."""

from inboxsync.ingest.signature import compute_signature, verify_signature
from inboxsync.ingest.sync import ReconciliationSync, SyncSummary
from inboxsync.ingest.webhook import PayloadResult, PushResult, WebhookHandler

__all__ = [
    "PayloadResult",
    "PushResult",
    "ReconciliationSync",
    "SyncSummary",
    "WebhookHandler",
    "compute_signature",
    "verify_signature",
]
