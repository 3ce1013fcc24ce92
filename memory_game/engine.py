from __future__ import annotations

from dataclasses import replace
from typing import List, Optional, Tuple
import random

from .errors import (
    GameNotActive,
    InvalidArgument,
    InvalidTile,
    InvariantViolation,
    NotYourTurn,
    RoomFull,
    StartRejected,
    TurnBusy,
)
from .models import PAIR_COUNTS, Difficulty, Room, Tile, TimerPolicy, _now


VALID_PAIR_COUNTS = frozenset(PAIR_COUNTS.values())
MAX_PENDING_REVEALS = 2


def pair_count_for(difficulty: str) -> int:
    try:
        return PAIR_COUNTS[difficulty]
    except KeyError:
        raise InvalidArgument(f"unknown_difficulty:{difficulty}") from None


def generate_board(pair_count: int, rng: Optional[random.Random] = None) -> Tuple[Tile, ...]:
    """Return ``2 * pair_count`` face-down tiles in uniformly shuffled order.

    Every pair key in ``range(pair_count)`` appears on exactly two tiles.
    Tile ids are ``0..2p-1`` and are assigned after shuffling, so the id says
    nothing about the pair.
    """

    if pair_count not in VALID_PAIR_COUNTS:
        raise InvalidArgument(f"invalid_pair_count:{pair_count}")
    keys: List[int] = [k for k in range(pair_count) for _ in range(2)]
    (rng or random).shuffle(keys)
    return tuple(Tile(tile_id=i, pair_key=k) for i, k in enumerate(keys))


def new_room(
    room_id: str,
    host_id: str,
    difficulty: Difficulty,
    timer_policy: TimerPolicy,
    rng: Optional[random.Random] = None,
) -> Room:
    board = generate_board(pair_count_for(difficulty), rng)
    now = _now()
    return Room(
        room_id=room_id,
        host_id=host_id,
        difficulty=difficulty,
        timer_policy=timer_policy,
        board=board,
        turn_holder=host_id,
        created_at=now,
        updated_at=now,
    )


def check_invariants(room: Room) -> None:
    """Raise InvariantViolation if the room is in a state no valid write produces."""

    if len(room.pending_reveals) > MAX_PENDING_REVEALS:
        raise InvariantViolation("too_many_pending_reveals")
    if len(set(room.pending_reveals)) != len(room.pending_reveals):
        raise InvariantViolation("duplicate_pending_reveal")
    for tile_id in room.pending_reveals:
        tile = room.tile(tile_id)
        if tile is None:
            raise InvariantViolation(f"pending_tile_missing:{tile_id}")
        if tile.matched or not tile.face_up:
            raise InvariantViolation(f"pending_tile_not_revealable:{tile_id}")
    if room.resolving and len(room.pending_reveals) != MAX_PENDING_REVEALS:
        raise InvariantViolation("resolving_without_two_reveals")
    if room.host_score < 0 or room.guest_score < 0:
        raise InvariantViolation("negative_score")
    if room.active and room.turn_holder not in room.participants():
        raise InvariantViolation("turn_holder_not_participant")


# --- Lifecycle transitions ---


def apply_join(room: Room, guest_id: str) -> Room:
    if guest_id == room.host_id:
        raise InvalidArgument("host_cannot_join_own_room")
    if room.guest_id is not None or room.started:
        raise RoomFull()
    return replace(room, guest_id=guest_id, updated_at=_now())


def apply_start(room: Room, requester_id: str) -> Room:
    if requester_id != room.host_id:
        raise StartRejected("not_host")
    if room.guest_id is None:
        raise StartRejected("no_guest")
    if room.started:
        raise StartRejected("already_started")
    return replace(room, started=True, turn_holder=room.host_id, updated_at=_now())


def apply_guest_leave(room: Room) -> Room:
    """Clear the guest; an in-progress match ends, forfeited by the guest."""

    if room.started and not room.finished:
        return replace(
            room,
            guest_id=None,
            finished=True,
            finish_reason="opponent_left",
            updated_at=_now(),
        )
    return replace(room, guest_id=None, updated_at=_now())


# --- Turn transitions ---


def apply_reveal(room: Room, actor_id: str, tile_id: int) -> Room:
    """Flip one tile for the turn holder.

    The checks run in a fixed order so the rejection reason is stable: match
    state, turn ownership, resolution in flight, reveal cap, tile
    availability. The second reveal of a turn also raises ``resolving`` and
    records ``last_reveal_by`` in the same state.
    """

    check_invariants(room)
    if not room.active:
        raise GameNotActive()
    if room.turn_holder != actor_id:
        raise NotYourTurn()
    if room.resolving:
        raise TurnBusy("resolution_in_flight")
    if len(room.pending_reveals) >= MAX_PENDING_REVEALS:
        raise TurnBusy("reveal_cap_reached")
    tile = room.tile(tile_id)
    if tile is None:
        raise InvalidTile("unknown_tile")
    if tile.matched:
        raise InvalidTile("already_matched")
    if tile_id in room.pending_reveals or tile.face_up:
        raise InvalidTile("already_revealed")

    board = tuple(replace(t, face_up=True) if t.tile_id == tile_id else t for t in room.board)
    pending = room.pending_reveals + (tile_id,)
    second = len(pending) == MAX_PENDING_REVEALS
    return replace(
        room,
        board=board,
        pending_reveals=pending,
        resolving=room.resolving or second,
        last_reveal_by=actor_id if second else room.last_reveal_by,
        updated_at=_now(),
    )


def apply_resolution(room: Room) -> Room:
    """Score or unflip the two pending tiles and decide who plays next."""

    check_invariants(room)
    if not room.resolving:
        raise InvariantViolation("nothing_to_resolve")
    first_id, second_id = room.pending_reveals
    first = room.tile(first_id)
    second = room.tile(second_id)
    if first is None or second is None:
        raise InvariantViolation("pending_tile_missing")
    actor = room.turn_holder

    host_score = room.host_score
    guest_score = room.guest_score
    if first.pair_key == second.pair_key:
        board = tuple(
            replace(t, face_up=True, matched=True, matched_by=actor)
            if t.tile_id in (first_id, second_id)
            else t
            for t in room.board
        )
        if actor == room.host_id:
            host_score += 1
        else:
            guest_score += 1
        next_holder = actor
    else:
        board = tuple(
            replace(t, face_up=False) if t.tile_id in (first_id, second_id) else t
            for t in room.board
        )
        next_holder = room.other_player(actor) or actor

    all_matched = all(t.matched for t in board)
    return replace(
        room,
        board=board,
        host_score=host_score,
        guest_score=guest_score,
        turn_holder=next_holder,
        pending_reveals=(),
        resolving=False,
        last_reveal_by=None,
        finished=room.finished or all_matched,
        finish_reason=room.finish_reason or ("all_matched" if all_matched else None),
        updated_at=_now(),
    )


def apply_turn_timeout(room: Room, expected_holder: str) -> Room:
    """Force the turn away from ``expected_holder`` after its countdown ran out.

    Returns the room unchanged when the turn already moved on, a resolution
    is in flight, or the match is not active. That makes a duplicated expiry
    from both clients harmless.
    """

    if not room.active or room.resolving or room.turn_holder != expected_holder:
        return room
    nxt = room.other_player(expected_holder)
    if nxt is None:
        return room
    pending = set(room.pending_reveals)
    board = tuple(replace(t, face_up=False) if t.tile_id in pending else t for t in room.board)
    return replace(
        room,
        board=board,
        turn_holder=nxt,
        pending_reveals=(),
        last_reveal_by=None,
        updated_at=_now(),
    )


def apply_time_expired(room: Room) -> Room:
    if room.finished or not room.started:
        return room
    return replace(room, finished=True, finish_reason="time_expired", updated_at=_now())


# --- Outcome ---


def winner_of(room: Room) -> Optional[str]:
    """Return the winner's id, or None for a draw or an unfinished match."""

    if not room.finished:
        return None
    if room.finish_reason == "opponent_left":
        return room.host_id
    if room.host_score > room.guest_score:
        return room.host_id
    if room.guest_score > room.host_score:
        return room.guest_id
    return None


def match_outcome(room: Room, player_id: str) -> Optional[str]:
    """``"win"``, ``"lose"`` or ``"draw"`` from ``player_id``'s point of view."""

    if not room.finished:
        return None
    winner = winner_of(room)
    if winner is None:
        return "draw"
    return "win" if winner == player_id else "lose"
