from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from .errors import InvalidArgument


Difficulty = Literal["easy", "medium", "hard"]
FinishReason = Literal["all_matched", "time_expired", "opponent_left"]

PAIR_COUNTS: Dict[str, int] = {"easy": 4, "medium": 6, "hard": 9}

ROOMS_PREFIX = "rooms"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def room_path(room_id: str) -> str:
    return f"{ROOMS_PREFIX}/{room_id}"


@dataclass(frozen=True)
class Tile:
    tile_id: int
    pair_key: int
    face_up: bool = False
    matched: bool = False
    matched_by: Optional[str] = None


@dataclass(frozen=True)
class TimerPolicy:
    mode: Literal["untimed", "timed"] = "untimed"
    limit_seconds: Optional[int] = None

    def __post_init__(self) -> None:
        if self.mode == "timed":
            if not isinstance(self.limit_seconds, int) or self.limit_seconds <= 0:
                raise InvalidArgument("timed_policy_requires_positive_limit")
        elif self.mode == "untimed":
            if self.limit_seconds is not None:
                raise InvalidArgument("untimed_policy_has_no_limit")
        else:
            raise InvalidArgument(f"unknown_timer_mode:{self.mode}")

    @classmethod
    def untimed(cls) -> "TimerPolicy":
        return cls(mode="untimed")

    @classmethod
    def timed(cls, limit_seconds: int) -> "TimerPolicy":
        return cls(mode="timed", limit_seconds=limit_seconds)

    @property
    def is_timed(self) -> bool:
        return self.mode == "timed"


@dataclass(frozen=True)
class Room:
    room_id: str
    host_id: str
    difficulty: Difficulty
    timer_policy: TimerPolicy
    board: Tuple[Tile, ...]
    turn_holder: str
    guest_id: Optional[str] = None
    pending_reveals: Tuple[int, ...] = ()
    resolving: bool = False
    host_score: int = 0
    guest_score: int = 0
    started: bool = False
    finished: bool = False
    last_reveal_by: Optional[str] = None
    finish_reason: Optional[FinishReason] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def active(self) -> bool:
        return self.started and not self.finished

    def tile(self, tile_id: int) -> Optional[Tile]:
        for t in self.board:
            if t.tile_id == tile_id:
                return t
        return None

    def participants(self) -> List[str]:
        return [p for p in (self.host_id, self.guest_id) if p]

    def other_player(self, player_id: str) -> Optional[str]:
        if player_id == self.host_id:
            return self.guest_id
        if player_id == self.guest_id:
            return self.host_id
        return None

    def score_of(self, player_id: str) -> int:
        if player_id == self.host_id:
            return self.host_score
        if player_id == self.guest_id:
            return self.guest_score
        return 0


@dataclass(frozen=True)
class Move:
    """Informational record of one committed reveal. Never persisted."""

    actor_id: str
    tile_id: int
    timestamp: datetime = field(default_factory=_now)


def tile_to_dict(tile: Tile) -> Dict[str, Any]:
    return {
        "id": tile.tile_id,
        "pairKey": tile.pair_key,
        "faceUp": tile.face_up,
        "matched": tile.matched,
        "matchedBy": tile.matched_by,
    }


def timer_policy_to_dict(policy: TimerPolicy) -> Dict[str, Any]:
    return {"mode": policy.mode, "limitSeconds": policy.limit_seconds}


def room_to_dict(room: Room) -> Dict[str, Any]:
    return {
        "roomId": room.room_id,
        "hostId": room.host_id,
        "guestId": room.guest_id,
        "difficulty": room.difficulty,
        "timerPolicy": timer_policy_to_dict(room.timer_policy),
        "board": [tile_to_dict(t) for t in room.board],
        "turnHolder": room.turn_holder,
        "pendingReveals": list(room.pending_reveals),
        "resolving": room.resolving,
        "hostScore": room.host_score,
        "guestScore": room.guest_score,
        "started": room.started,
        "finished": room.finished,
        "lastRevealBy": room.last_reveal_by,
        "finishReason": room.finish_reason,
        "createdAt": room.created_at,
        "updatedAt": room.updated_at,
    }


def _decode_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return _now()


def room_from_dict(data: Dict[str, Any], room_id: Optional[str] = None) -> Room:
    """Reconstruct a Room from a store document.

    Documents written by older clients may miss optional fields; those fall
    back to the creation-time defaults.
    """

    policy_data = data.get("timerPolicy") or {}
    policy = TimerPolicy(
        mode=str(policy_data.get("mode", "untimed")),  # type: ignore[arg-type]
        limit_seconds=policy_data.get("limitSeconds"),
    )

    board: List[Tile] = []
    for t in data.get("board") or []:
        board.append(
            Tile(
                tile_id=int(t.get("id", 0)),
                pair_key=int(t.get("pairKey", 0)),
                face_up=bool(t.get("faceUp")),
                matched=bool(t.get("matched")),
                matched_by=t.get("matchedBy"),
            )
        )

    host_id = str(data.get("hostId", ""))
    return Room(
        room_id=str(data.get("roomId") or room_id or ""),
        host_id=host_id,
        guest_id=data.get("guestId"),
        difficulty=str(data.get("difficulty", "easy")),  # type: ignore[arg-type]
        timer_policy=policy,
        board=tuple(board),
        turn_holder=str(data.get("turnHolder") or host_id),
        pending_reveals=tuple(int(i) for i in data.get("pendingReveals") or []),
        resolving=bool(data.get("resolving")),
        host_score=int(data.get("hostScore", 0)),
        guest_score=int(data.get("guestScore", 0)),
        started=bool(data.get("started")),
        finished=bool(data.get("finished")),
        last_reveal_by=data.get("lastRevealBy"),
        finish_reason=data.get("finishReason"),
        created_at=_decode_timestamp(data.get("createdAt")),
        updated_at=_decode_timestamp(data.get("updatedAt")),
    )


def room_to_client(room: Room, viewer_id: Optional[str] = None) -> Dict[str, Any]:
    """Shape a room for an HTTP client.

    Pair keys of face-down, unmatched tiles are hidden so that a client
    cannot read the layout off the wire.
    """

    data = room_to_dict(room)
    data["createdAt"] = room.created_at.isoformat()
    data["updatedAt"] = room.updated_at.isoformat()
    for t in data["board"]:
        if not t["faceUp"] and not t["matched"]:
            t["pairKey"] = None
    if viewer_id is not None:
        data["isMyTurn"] = room.active and room.turn_holder == viewer_id
    return data
