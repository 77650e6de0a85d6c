from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from settlebot.domain.models import SettlementKind

MATCH_ENDED = "match_ended"
MATCH_CANCELLED = "match_cancelled"
MATCH_STARTED = "match_started"

_TYPE_ALIASES = {"match_canceled": MATCH_CANCELLED}
_TEAM_LABELS = {"team1": 1, "team2": 2}


class MalformedEventError(ValueError):
    """Raised when a hosting event payload cannot be interpreted."""


class HostingPlayer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    steam_id_64: str | int | None = None
    connected: bool = False


class _HostingEventBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    correlation_id: str
    event_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def dedupe_id(self) -> str:
        return self.event_id or f"{self.correlation_id}:{getattr(self, 'event_type', '')}"


class MatchEndedEvent(_HostingEventBase):
    event_type: Literal["match_ended"]
    winner: str | None = None


class MatchCancelledEvent(_HostingEventBase):
    event_type: Literal["match_cancelled"]
    cancel_reason: str | None = None


class MatchStartedEvent(_HostingEventBase):
    event_type: Literal["match_started"]
    players: list[HostingPlayer] = Field(default_factory=list)

    @property
    def connected_player_count(self) -> int:
        return len(
            {
                player.steam_id_64
                for player in self.players
                if player.connected and player.steam_id_64
            }
        )


class UnknownHostingEvent(_HostingEventBase):
    event_type: str | None = None


KnownHostingEvent = Annotated[
    MatchEndedEvent | MatchCancelledEvent | MatchStartedEvent,
    Field(discriminator="event_type"),
]
HostingEvent = MatchEndedEvent | MatchCancelledEvent | MatchStartedEvent | UnknownHostingEvent

_KNOWN_EVENT_ADAPTER: TypeAdapter[KnownHostingEvent] = TypeAdapter(KnownHostingEvent)


def infer_event_type(payload: Mapping[str, Any]) -> str | None:
    raw = payload.get("eventType") or payload.get("type")
    if isinstance(raw, str) and raw.strip():
        candidate = raw.strip().lower()
        return _TYPE_ALIASES.get(candidate, candidate)
    if payload.get("cancel_reason"):
        return MATCH_CANCELLED
    if payload.get("finished") is True:
        return MATCH_ENDED
    return None


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_hosting_event(payload: object) -> HostingEvent:
    if not isinstance(payload, Mapping):
        raise MalformedEventError("event payload must be a JSON object")
    correlation_id = _optional_str(payload.get("correlationId") or payload.get("id"))
    if correlation_id is None:
        raise MalformedEventError("event payload is missing a correlation id")

    event_type = infer_event_type(payload)
    data: dict[str, Any] = {
        "event_type": event_type,
        "correlation_id": correlation_id,
        "event_id": _optional_str(payload.get("eventId") or payload.get("event_id")),
        "payload": dict(payload),
        "winner": _optional_str(payload.get("winner")),
        "cancel_reason": _optional_str(payload.get("cancel_reason")),
        "players": payload.get("players") or [],
    }
    if event_type not in {MATCH_ENDED, MATCH_CANCELLED, MATCH_STARTED}:
        return UnknownHostingEvent.model_validate(data)
    try:
        return _KNOWN_EVENT_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        raise MalformedEventError(
            f"invalid {event_type} payload: {exc.error_count()} errors"
        ) from exc


class HostingMatchState(StrEnum):
    ENDED = "ended"
    CANCELLED = "cancelled"
    IN_PROGRESS = "in_progress"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class HostingMatchStatus:
    state: HostingMatchState
    winner_team: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SettlementDecision:
    kind: SettlementKind
    reason: str
    winner: str | None = None


def decision_for_event(event: HostingEvent) -> SettlementDecision | None:
    if isinstance(event, MatchEndedEvent):
        return SettlementDecision(
            kind=SettlementKind.PAYOUT, reason=MATCH_ENDED, winner=event.winner
        )
    if isinstance(event, MatchCancelledEvent):
        return SettlementDecision(
            kind=SettlementKind.REFUND,
            reason=event.cancel_reason or MATCH_CANCELLED,
        )
    return None


def decision_for_status(status: HostingMatchStatus) -> SettlementDecision | None:
    if status.state is HostingMatchState.ENDED and status.winner_team:
        return SettlementDecision(
            kind=SettlementKind.PAYOUT, reason="provider_ended", winner=status.winner_team
        )
    if status.state is HostingMatchState.CANCELLED:
        return SettlementDecision(kind=SettlementKind.REFUND, reason="provider_cancelled")
    if status.state is HostingMatchState.NOT_FOUND:
        return SettlementDecision(kind=SettlementKind.REFUND, reason="provider_not_found")
    return None


def resolve_winner_address(
    winner: str | None, player1: str | None, player2: str | None
) -> str | None:
    """Map a team label to the matching player, passing addresses through."""
    if winner is None:
        return None
    leg = _TEAM_LABELS.get(winner.strip().lower())
    if leg == 1:
        return player1
    if leg == 2:
        return player2
    return winner.strip()
