"""Identity Resolution Cache.

Turns opaque participant IDs into a display identity (name, username,
picture) while keeping upstream calls to a minimum:

- Fresh: an entry with a name or username fetched within ``ttl`` is served
  from the table with no network call.
- Cooldown: once ``consecutive_failures`` reaches ``max_failures``, calls
  within ``cooldown`` of the last failure return the cached (possibly empty)
  values without a network call. After the window one attempt is allowed;
  if it fails the window starts again. The window is fixed, it does not grow.
- Failures never erase previously cached values.

Only AuthError escapes ``resolve``; every other failure is recorded on the
entry and reported through ``IdentityResult.outcome``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy.exc import IntegrityError

from inboxsync.accounts import load_credentials
from inboxsync.config import settings
from inboxsync.db.models import IdentityCacheEntry, utcnow
from inboxsync.db.session import SessionFactory, db_session
from inboxsync.errors import AuthError, UpstreamError
from inboxsync.graph.client import GraphClient
from inboxsync.graph.payloads import ParticipantProfile
from inboxsync.infra.retry import call_with_backoff
from inboxsync.observability.metrics import get_metrics

logger = structlog.get_logger()

OUTCOME_CACHED = "cached"
OUTCOME_FETCHED = "fetched"
OUTCOME_COOLDOWN = "cooldown"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class IdentityResult:
    participant_id: str
    outcome: str
    name: str | None = None
    username: str | None = None
    profile_pic_url: str | None = None
    error: str | None = None

    @classmethod
    def from_entry(
        cls, participant_id: str, entry: IdentityCacheEntry | None, outcome: str,
        error: str | None = None,
    ) -> IdentityResult:
        if entry is None:
            return cls(participant_id=participant_id, outcome=outcome, error=error)
        return cls(
            participant_id=participant_id,
            outcome=outcome,
            name=entry.name,
            username=entry.username,
            profile_pic_url=entry.profile_pic_url,
            error=error,
        )


class IdentityResolver:
    """Cache-first participant identity lookups."""

    def __init__(
        self,
        graph: GraphClient,
        session_factory: SessionFactory | None = None,
        *,
        ttl: timedelta | None = None,
        max_failures: int | None = None,
        cooldown: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.graph = graph
        self._factory = session_factory
        self.ttl = ttl or timedelta(days=settings.identity_ttl_days)
        self.max_failures = max_failures or settings.identity_max_failures
        self.cooldown = cooldown or timedelta(seconds=settings.identity_cooldown_s)
        self._clock = clock

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        return self._clock()

    def is_fresh(self, entry: IdentityCacheEntry, now: datetime) -> bool:
        return bool(
            (entry.name or entry.username)
            and entry.last_fetched_at is not None
            and now - entry.last_fetched_at < self.ttl
        )

    def in_cooldown(self, entry: IdentityCacheEntry, now: datetime) -> bool:
        return (
            entry.consecutive_failures >= self.max_failures
            and entry.last_failed_at is not None
            and now - entry.last_failed_at < self.cooldown
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self, account_id: str, participant_id: str, force: bool = False,
    ) -> IdentityResult:
        """Identity for ``participant_id``; ``force`` skips freshness but never cooldown."""
        now = self._clock()

        async with db_session(self._factory) as db:
            entry = await db.get(IdentityCacheEntry, participant_id)

        if entry is not None:
            if not force and self.is_fresh(entry, now):
                await get_metrics().identity_fetch(OUTCOME_CACHED)
                return IdentityResult.from_entry(participant_id, entry, OUTCOME_CACHED)
            if self.in_cooldown(entry, now):
                logger.debug(
                    "identity_cooldown_active",
                    participant_id=participant_id,
                    failures=entry.consecutive_failures,
                )
                await get_metrics().identity_fetch(OUTCOME_COOLDOWN)
                return IdentityResult.from_entry(participant_id, entry, OUTCOME_COOLDOWN)

        creds = await load_credentials(account_id, self._factory)
        try:
            if creds is None:
                raise AuthError("MISSING", f"No connection for account {account_id}")
            token = creds.require_token(now)
            profile = await call_with_backoff(
                lambda: self.graph.get_participant_profile(participant_id, token),
                operation="participant_profile",
                retry_on_timeout=False,
            )
        except AuthError as e:
            await self._record_failure(account_id, participant_id, now, {"error": str(e), "code": e.code})
            await get_metrics().identity_fetch(OUTCOME_FAILED)
            raise
        except UpstreamError as e:
            entry = await self._record_failure(
                account_id, participant_id, now,
                {"error": str(e), "status_code": e.status_code, "error_code": e.error_code},
            )
            await get_metrics().identity_fetch(OUTCOME_FAILED)
            logger.info(
                "identity_fetch_failed",
                participant_id=participant_id,
                account_id=account_id,
                error=str(e),
                error_type=type(e).__name__,
                failures=entry.consecutive_failures,
            )
            return IdentityResult.from_entry(participant_id, entry, OUTCOME_FAILED, error=str(e))

        if profile.is_empty:
            entry = await self._record_failure(account_id, participant_id, now, profile.raw)
            await get_metrics().identity_fetch(OUTCOME_FAILED)
            logger.info("identity_fetch_empty", participant_id=participant_id)
            return IdentityResult.from_entry(
                participant_id, entry, OUTCOME_FAILED, error="empty profile",
            )

        entry = await self._record_success(account_id, participant_id, now, profile)
        await get_metrics().identity_fetch(OUTCOME_FETCHED)
        logger.info(
            "identity_resolved",
            participant_id=participant_id,
            has_name=bool(entry.name),
            has_username=bool(entry.username),
            has_picture=bool(entry.profile_pic_url),
        )
        return IdentityResult.from_entry(participant_id, entry, OUTCOME_FETCHED)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _save(
        self,
        account_id: str,
        participant_id: str,
        mutate: Callable[[IdentityCacheEntry], None],
    ) -> IdentityCacheEntry:
        # Two enrichments for the same participant can race on the insert;
        # the loser re-reads and applies its change as an update.
        for attempt in (1, 2):
            try:
                async with db_session(self._factory) as db:
                    entry = await db.get(IdentityCacheEntry, participant_id)
                    if entry is None:
                        entry = IdentityCacheEntry(
                            participant_id=participant_id,
                            account_id=account_id,
                            consecutive_failures=0,
                        )
                        db.add(entry)
                    mutate(entry)
                return entry
            except IntegrityError:
                if attempt == 2:
                    raise
        raise AssertionError("unreachable")

    async def _record_success(
        self, account_id: str, participant_id: str, now: datetime, profile: ParticipantProfile,
    ) -> IdentityCacheEntry:
        def apply(entry: IdentityCacheEntry) -> None:
            entry.account_id = account_id
            entry.name = profile.name or entry.name
            entry.username = profile.username or entry.username
            entry.profile_pic_url = profile.profile_pic_url or entry.profile_pic_url
            entry.follower_count = profile.follower_count
            entry.is_user_follow_business = profile.is_user_follow_business
            entry.is_business_follow_user = profile.is_business_follow_user
            entry.raw = profile.raw
            entry.last_fetched_at = now
            entry.consecutive_failures = 0
            entry.last_failed_at = None

        return await self._save(account_id, participant_id, apply)

    async def _record_failure(
        self, account_id: str, participant_id: str, now: datetime, raw: dict | None,
    ) -> IdentityCacheEntry:
        def apply(entry: IdentityCacheEntry) -> None:
            entry.consecutive_failures = (entry.consecutive_failures or 0) + 1
            entry.last_failed_at = now
            entry.raw = raw

        return await self._save(account_id, participant_id, apply)
