"""Counterparty and message-direction resolution.

Both are strategy cascades with the same "resolve or decline" contract as
the conversation-ID cascade: each strategy returns a decision or None, and
the first decision wins.

Direction (per message):
  1. by_self_id              sender == self -> outbound, otherwise inbound
  2. by_echo_flag            push echoes are authored by the account
  3. by_username             match the sender against participants by username
  4. by_counterparty         sender/recipient equals the thread's known counterparty
  5. by_inbound_default      inbound, flagged low-confidence

Counterparty (per conversation):
  1. exclude_self_id         the single participant that is not self
  2. exclude_self_username   the single participant whose username is not ours
  3. from_message_parties    union of message from/to IDs minus self

The resolved counterparty must never be the account itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

import structlog

from inboxsync.db.models import MessageDirection
from inboxsync.errors import DataAnomalyError, SelfParticipantError
from inboxsync.graph.payloads import GraphMessage, Party

logger = structlog.get_logger()


def _same_username(a: str | None, b: str | None) -> bool:
    return bool(a and b) and a.lstrip("@").lower() == b.lstrip("@").lower()


def self_id_from_username(
    participants: Sequence[Party], self_username: str | None,
) -> str | None:
    """The account's own participant ID, found by matching its username."""
    if not self_username:
        return None
    matches = [p.id for p in participants if _same_username(p.username, self_username)]
    return matches[0] if len(matches) == 1 else None


# ═══════════════════════════════════════════════════════════════════════════════
# DIRECTION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MessageParties:
    """Everything known about who sent a message to whom."""

    sender_id: str | None
    recipient_id: str | None
    self_id: str | None = None
    self_username: str | None = None
    participants: Sequence[Party] = ()
    counterparty_id: str | None = None
    is_echo: bool = False


@dataclass(frozen=True)
class DirectionDecision:
    direction: MessageDirection
    participant_id: str | None
    confident: bool
    strategy: str
    self_id: str | None = None


DirectionStrategy = Callable[[MessageParties], DirectionDecision | None]


def _outbound(p: MessageParties, strategy: str, self_id: str | None) -> DirectionDecision:
    return DirectionDecision(
        direction=MessageDirection.OUTBOUND,
        participant_id=p.recipient_id,
        confident=True,
        strategy=strategy,
        self_id=self_id,
    )


def _inbound(
    p: MessageParties, strategy: str, self_id: str | None, confident: bool = True,
) -> DirectionDecision:
    return DirectionDecision(
        direction=MessageDirection.INBOUND,
        participant_id=p.sender_id,
        confident=confident,
        strategy=strategy,
        self_id=self_id,
    )


def by_self_id(p: MessageParties) -> DirectionDecision | None:
    if not p.self_id:
        return None
    if p.sender_id == p.self_id:
        return _outbound(p, "self_id", p.self_id)
    return _inbound(p, "self_id", p.self_id)


def by_echo_flag(p: MessageParties) -> DirectionDecision | None:
    if not p.is_echo:
        return None
    return _outbound(p, "echo", p.sender_id)


def by_username(p: MessageParties) -> DirectionDecision | None:
    self_id = self_id_from_username(p.participants, p.self_username)
    if self_id is None:
        return None
    if p.sender_id == self_id:
        return _outbound(p, "username", self_id)
    return _inbound(p, "username", self_id)


def by_counterparty(p: MessageParties) -> DirectionDecision | None:
    if not p.counterparty_id:
        return None
    if p.sender_id == p.counterparty_id:
        return _inbound(p, "counterparty", p.recipient_id)
    if p.recipient_id == p.counterparty_id:
        return _outbound(p, "counterparty", p.sender_id)
    return None


def by_inbound_default(p: MessageParties) -> DirectionDecision | None:
    return _inbound(p, "inbound_default", None, confident=False)


DIRECTION_STRATEGIES: tuple[DirectionStrategy, ...] = (
    by_self_id,
    by_echo_flag,
    by_username,
    by_counterparty,
    by_inbound_default,
)


def resolve_direction(
    parties: MessageParties,
    strategies: tuple[DirectionStrategy, ...] = DIRECTION_STRATEGIES,
) -> DirectionDecision:
    """Decide direction and counterparty for one message.

    Raises SelfParticipantError when the counterparty would be the account
    itself, DataAnomalyError when there is no counterparty at all.
    """
    decision: DirectionDecision | None = None
    for strategy in strategies:
        decision = strategy(parties)
        if decision is not None:
            break
    if decision is None:
        raise DataAnomalyError("No direction strategy produced a decision")

    if not decision.participant_id:
        raise DataAnomalyError(
            f"Message has no counterparty (sender={parties.sender_id}, "
            f"recipient={parties.recipient_id})"
        )

    known_self = decision.self_id or parties.self_id
    if known_self and decision.participant_id == known_self:
        raise SelfParticipantError(
            f"Resolved participant {decision.participant_id} is the account itself"
        )

    if not decision.confident:
        logger.info(
            "direction_low_confidence",
            sender_id=parties.sender_id,
            recipient_id=parties.recipient_id,
        )
    return decision


# ═══════════════════════════════════════════════════════════════════════════════
# COUNTERPARTY
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ThreadView:
    """A conversation as seen in a sync detail response."""

    participants: Sequence[Party]
    messages: Sequence[GraphMessage] = ()
    self_id: str | None = None
    self_username: str | None = None


@dataclass(frozen=True)
class CounterpartyDecision:
    participant_id: str | None
    is_group: bool
    participant_count: int
    self_id: str | None
    strategy: str


CounterpartyStrategy = Callable[[ThreadView], str | None]


def exclude_self_id(view: ThreadView) -> str | None:
    if not view.self_id:
        return None
    others = {p.id for p in view.participants if p.id != view.self_id}
    return others.pop() if len(others) == 1 else None


def exclude_self_username(view: ThreadView) -> str | None:
    if not view.self_username:
        return None
    others = {
        p.id for p in view.participants
        if not _same_username(p.username, view.self_username)
    }
    if len(others) == 1 and len(others) < len({p.id for p in view.participants}):
        return others.pop()
    return None


def from_message_parties(view: ThreadView) -> str | None:
    exclude = {view.self_id, self_id_from_username(view.participants, view.self_username)}
    seen: set[str] = set()
    for message in view.messages:
        seen.update(i for i in (message.from_id, *(t.id for t in message.to)) if i)
    candidates = seen - exclude
    return candidates.pop() if len(candidates) == 1 else None


COUNTERPARTY_STRATEGIES: tuple[tuple[str, CounterpartyStrategy], ...] = (
    ("exclude_self_id", exclude_self_id),
    ("exclude_self_username", exclude_self_username),
    ("message_parties", from_message_parties),
)


def resolve_counterparty(
    view: ThreadView,
    strategies: tuple[tuple[str, CounterpartyStrategy], ...] = COUNTERPARTY_STRATEGIES,
) -> CounterpartyDecision:
    """Pick the thread's counterparty; groups get no single counterparty."""
    self_id = view.self_id or self_id_from_username(view.participants, view.self_username)
    count = len({p.id for p in view.participants})

    if count > 2:
        return CounterpartyDecision(
            participant_id=None,
            is_group=True,
            participant_count=count,
            self_id=self_id,
            strategy="group",
        )

    for name, strategy in strategies:
        participant_id = strategy(view)
        if not participant_id:
            continue
        if self_id and participant_id == self_id:
            raise SelfParticipantError(
                f"Counterparty {participant_id} resolved by {name} is the account itself"
            )
        return CounterpartyDecision(
            participant_id=participant_id,
            is_group=False,
            participant_count=max(count, 2),
            self_id=self_id,
            strategy=name,
        )

    raise DataAnomalyError(
        f"Cannot tell the counterparty apart among {count} participants"
    )
