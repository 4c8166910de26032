"""HTTP client for the upstream Graph API.

Every failure is classified into the inboxsync error taxonomy so callers
(and the retry wrapper) can decide what to do without looking at HTTP:

  - HTTP 401, Graph code 190, "expired" in the message   -> AuthError
  - HTTP 429, Graph codes 4/17/32/613                     -> RateLimitedError
  - HTTP 404                                              -> UpstreamNotFoundError
  - transport timeout                                     -> UpstreamTimeoutError
  - body is not JSON or not the expected shape            -> MalformedResponseError
  - anything else                                         -> UpstreamError

The access token travels in the Authorization header. Pagination URLs handed
back by the API can embed it, so query strings are cut before logging.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any

import certifi
import httpx
import structlog
from pydantic import ValidationError

from inboxsync.config import settings
from inboxsync.errors import (
    AuthError,
    MalformedResponseError,
    RateLimitedError,
    UpstreamError,
    UpstreamNotFoundError,
    UpstreamTimeoutError,
)
from inboxsync.graph.payloads import (
    ConversationDetail,
    ConversationSummary,
    ParticipantProfile,
    parse_graph_time,
)
from inboxsync.observability.metrics import get_metrics

logger = structlog.get_logger()

_THROTTLE_CODES = frozenset({4, 17, 32, 613})
_TOKEN_INVALID_CODE = 190
_UNSUPPORTED_REQUEST_CODE = 100

_DETAIL_FIELDS = (
    "participants{username,id,profile_pic},"
    "messages{from,to,message,created_time,id,attachments}"
)
_PROFILE_FIELDS = (
    "name,username,profile_pic,follower_count,"
    "is_user_follow_business,is_business_follow_user"
)


def _redact(path_or_url: str) -> str:
    return path_or_url.split("?", 1)[0]


def classify_error(status_code: int, body: Any) -> Exception:
    """Map an error response onto the exception the engine expects."""
    error = body.get("error") if isinstance(body, dict) else None
    error = error if isinstance(error, dict) else {}
    code = error.get("code")
    message = str(error.get("message") or f"HTTP {status_code}")

    if (
        status_code == 401
        or code == _TOKEN_INVALID_CODE
        or "expired" in message.lower()
    ):
        return AuthError("EXPIRED", message)
    if status_code == 429 or code in _THROTTLE_CODES:
        return RateLimitedError(message, status_code=status_code, error_code=code)
    if status_code == 404:
        return UpstreamNotFoundError(message, status_code=status_code, error_code=code)
    return UpstreamError(message, status_code=status_code, error_code=code)


class GraphClient:
    """Thin async wrapper over the Graph endpoints the engine depends on."""

    def __init__(
        self,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        page_limit: int | None = None,
    ) -> None:
        root = (base_url or settings.graph_base_url).rstrip("/")
        version = api_version or settings.graph_api_version
        self.page_limit = page_limit if page_limit is not None else settings.sync_page_limit

        read_timeout = timeout if timeout is not None else settings.upstream_timeout_s
        self._client = httpx.AsyncClient(
            base_url=f"{root}/{version}",
            verify=certifi.where(),
            timeout=httpx.Timeout(connect=5.0, read=read_timeout, write=5.0, pool=10.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GraphClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _get(
        self,
        path_or_url: str,
        token: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        t0 = time.monotonic()
        try:
            response = await self._client.get(
                path_or_url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            logger.warning("graph_request_timeout", path=_redact(path_or_url), error=str(e))
            raise UpstreamTimeoutError(f"GET {_redact(path_or_url)} timed out") from e
        except httpx.HTTPError as e:
            logger.warning("graph_request_failed", path=_redact(path_or_url), error=str(e))
            raise UpstreamError(f"GET {_redact(path_or_url)} failed: {e}") from e
        finally:
            await get_metrics().record("upstream_latency_ms", (time.monotonic() - t0) * 1000)

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            exc = classify_error(response.status_code, body)
            logger.warning(
                "graph_error_response",
                path=_redact(path_or_url),
                status_code=response.status_code,
                error_type=type(exc).__name__,
                error=str(exc)[:300],
            )
            raise exc

        if not isinstance(body, dict):
            raise MalformedResponseError(
                f"GET {_redact(path_or_url)} returned a non-object body",
                status_code=response.status_code,
            )
        return body

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def list_conversations(
        self,
        account_id: str,
        token: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ConversationSummary]:
        """All conversations visible to the account, newest first, within [since, until]."""
        since, until = parse_graph_time(since), parse_graph_time(until)
        params = {"platform": "instagram", "fields": "id,updated_time", "limit": 50}
        try:
            body = await self._get("/me/conversations", token, params)
        except UpstreamError as e:
            if e.status_code != 400 or e.error_code != _UNSUPPORTED_REQUEST_CODE:
                raise
            logger.info("graph_conversations_fallback", account_id=account_id)
            body = await self._get(f"/{account_id}/conversations", token, params)

        summaries: list[ConversationSummary] = []
        pages = 1
        while True:
            summaries.extend(self._parse_list(body.get("data"), ConversationSummary))
            next_url = (body.get("paging") or {}).get("next")
            if not next_url or pages >= self.page_limit:
                break
            body = await self._get(next_url, token)
            pages += 1

        in_window = [
            s for s in summaries
            if s.updated_time is None
            or (
                (since is None or s.updated_time >= since)
                and (until is None or s.updated_time <= until)
            )
        ]
        logger.info(
            "graph_conversations_listed",
            account_id=account_id,
            pages=pages,
            found=len(summaries),
            in_window=len(in_window),
        )
        return in_window

    async def get_conversation_detail(
        self, conversation_id: str, token: str,
    ) -> ConversationDetail:
        body = await self._get(f"/{conversation_id}", token, {"fields": _DETAIL_FIELDS})
        body.setdefault("id", conversation_id)
        try:
            return ConversationDetail.model_validate(body)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Conversation {conversation_id} detail has unexpected shape: {e.error_count()} errors"
            ) from e

    async def find_conversation_with(
        self, participant_id: str, token: str,
    ) -> str | None:
        """ID of the conversation with one counterparty, or None."""
        body = await self._get(
            "/me/conversations",
            token,
            {"platform": "instagram", "user_id": participant_id},
        )
        data = body.get("data")
        if not isinstance(data, list):
            raise MalformedResponseError("Conversation lookup returned no data list")
        for item in data:
            if isinstance(item, dict) and item.get("id"):
                return str(item["id"])
        return None

    async def get_participant_profile(
        self, participant_id: str, token: str,
    ) -> ParticipantProfile:
        body = await self._get(f"/{participant_id}", token, {"fields": _PROFILE_FIELDS})
        return ParticipantProfile.from_graph(body)

    @staticmethod
    def _parse_list(data: Any, model: type[ConversationSummary]) -> list[ConversationSummary]:
        if data is None:
            return []
        if not isinstance(data, list):
            raise MalformedResponseError("Expected a list under `data`")
        try:
            return [model.model_validate(item) for item in data]
        except ValidationError as e:
            raise MalformedResponseError(f"Unexpected list item shape: {e.error_count()} errors") from e
