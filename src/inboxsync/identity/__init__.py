"""Participant identity resolution with caching and failure cooldown."""

from inboxsync.identity.backfill import BackfillSummary, backfill_identities, refresh_identities
from inboxsync.identity.cache import IdentityResolver, IdentityResult

__all__ = [
    "BackfillSummary",
    "IdentityResolver",
    "IdentityResult",
    "backfill_identities",
    "refresh_identities",
]
