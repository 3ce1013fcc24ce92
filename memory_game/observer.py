from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple
import asyncio
import logging

from .config import SessionSettings
from .engine import match_outcome
from .errors import InvariantViolation, StoreUnavailable
from .models import Room, room_from_dict, room_path
from .persistence import Document, RealtimeStore
from .resolver import MatchResolver


logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    IDLE = "idle"
    AWAITING_OPPONENT = "awaiting_opponent"
    READY = "ready"
    MY_TURN = "my_turn"
    OPPONENT_TURN = "opponent_turn"
    RESOLVING = "resolving"
    FINISHED = "finished"
    ABORTED = "aborted"


TERMINAL_PHASES = frozenset({SessionPhase.FINISHED, SessionPhase.ABORTED})


@dataclass(frozen=True)
class TileView:
    tile_id: int
    face_up: bool
    matched: bool
    # None while the tile is face down.
    pair_key: Optional[int]
    mine: bool


@dataclass(frozen=True)
class SessionView:
    phase: SessionPhase = SessionPhase.IDLE
    room: Optional[Room] = None
    is_my_turn: bool = False
    tiles: Tuple[TileView, ...] = ()
    my_score: int = 0
    opponent_score: int = 0
    outcome: Optional[str] = None
    reason: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


ViewListener = Callable[[SessionView], None]

_UNSEEN: Any = object()


class SessionObserver:
    """Turn room snapshots into a local view and drive the resolver.

    Snapshots may be redelivered or coalesced; ``apply_snapshot`` only looks
    at the latest value, so the result does not depend on which intermediate
    states were seen. Once the view reaches FINISHED or ABORTED it never
    changes again.
    """

    def __init__(
        self,
        store: RealtimeStore,
        room_id: str,
        my_id: str,
        resolver: MatchResolver,
        settings: Optional[SessionSettings] = None,
    ) -> None:
        self.store = store
        self.room_id = room_id
        self.my_id = my_id
        self.resolver = resolver
        self.settings = settings or SessionSettings()
        self.view = SessionView()
        self._listeners: List[ViewListener] = []
        self._result_listeners: List[ViewListener] = []
        self._last_data: Any = _UNSEEN
        self._seen_room = False
        self._resolving_local = False
        self._result_emitted = False
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        self._resolve_task: Optional[asyncio.Task] = None

    def add_listener(self, listener: ViewListener) -> None:
        self._listeners.append(listener)

    def add_result_listener(self, listener: ViewListener) -> None:
        """Called once, with the first FINISHED view."""

        self._result_listeners.append(listener)

    # --- Reconciliation ---

    def _terminal_view(self, phase: SessionPhase, reason: str, room: Optional[Room] = None) -> SessionView:
        base = self.view
        return SessionView(
            phase=phase,
            room=room or base.room,
            is_my_turn=False,
            tiles=base.tiles,
            my_score=base.my_score,
            opponent_score=base.opponent_score,
            outcome=None,
            reason=reason,
        )

    def _derive(self, room: Room) -> SessionView:
        me = self.my_id
        tiles = tuple(
            TileView(
                tile_id=t.tile_id,
                face_up=t.face_up or t.matched,
                matched=t.matched,
                pair_key=t.pair_key if (t.face_up or t.matched) else None,
                mine=t.matched_by == me,
            )
            for t in room.board
        )
        my_score = room.score_of(me)
        opponent_score = room.guest_score if me == room.host_id else room.host_score

        outcome: Optional[str] = None
        reason: Optional[str] = None
        if room.finished:
            phase = SessionPhase.FINISHED
            outcome = match_outcome(room, me)
            reason = room.finish_reason
        elif room.started and room.guest_id is None:
            # Guest vanished without the finish flag: treat it as a forfeit.
            phase = SessionPhase.FINISHED
            outcome = "win" if me == room.host_id else "lose"
            reason = "opponent_left"
        elif not room.started:
            phase = SessionPhase.AWAITING_OPPONENT if room.guest_id is None else SessionPhase.READY
        elif room.resolving:
            phase = SessionPhase.RESOLVING
        elif room.turn_holder == me:
            phase = SessionPhase.MY_TURN
        else:
            phase = SessionPhase.OPPONENT_TURN

        return SessionView(
            phase=phase,
            room=room,
            is_my_turn=room.active and room.turn_holder == me,
            tiles=tiles,
            my_score=my_score,
            opponent_score=opponent_score,
            outcome=outcome,
            reason=reason,
        )

    def apply_snapshot(self, data: Optional[Document]) -> SessionView:
        if self.view.terminal or self._closed:
            return self.view
        if data == self._last_data:
            return self.view
        self._last_data = data

        if data is None:
            reason = "room_closed" if self._seen_room else "room_not_found"
            return self._publish(self._terminal_view(SessionPhase.ABORTED, reason))

        try:
            room = room_from_dict(data, self.room_id)
        except (TypeError, ValueError) as e:
            logger.error(f"[memory] unreadable room snapshot room_id={self.room_id} error={e}")
            return self._publish(self._terminal_view(SessionPhase.ABORTED, InvariantViolation.code))
        self._seen_room = True

        if self.my_id not in room.participants() and not room.finished:
            return self._publish(self._terminal_view(SessionPhase.ABORTED, "not_in_room", room))

        if not room.resolving:
            self._resolving_local = False

        view = self._publish(self._derive(room))

        if (
            room.resolving
            and room.last_reveal_by == self.my_id
            and not room.finished
            and not self._resolving_local
        ):
            self._resolving_local = True
            self._resolve_task = asyncio.get_running_loop().create_task(self._resolve())
        return view

    def _publish(self, view: SessionView) -> SessionView:
        previous = self.view
        self.view = view
        if view != previous:
            logger.debug(
                f"[memory] view room_id={self.room_id} my_id={self.my_id} phase={view.phase.value} "
                f"my_score={view.my_score} opponent_score={view.opponent_score}"
            )
            for listener in list(self._listeners):
                listener(view)
        if view.phase == SessionPhase.FINISHED and not self._result_emitted:
            self._result_emitted = True
            logger.info(
                f"[memory] match result room_id={self.room_id} my_id={self.my_id} outcome={view.outcome} "
                f"reason={view.reason} my_score={view.my_score} opponent_score={view.opponent_score}"
            )
            for listener in list(self._result_listeners):
                listener(view)
        elif view.phase == SessionPhase.ABORTED and previous.phase != SessionPhase.ABORTED:
            logger.info(f"[memory] session ended room_id={self.room_id} my_id={self.my_id} reason={view.reason}")
        return view

    async def _resolve(self) -> None:
        backoff = self.settings.backoff_initial
        while not self._closed:
            try:
                await self.resolver.resolve(self.room_id, self.my_id)
                return
            except StoreUnavailable as e:
                logger.warning(
                    f"[memory] resolve failed, retrying room_id={self.room_id} error={e} backoff={backoff}"
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.settings.backoff_max)

    # --- Subscription ---

    async def run(self) -> SessionView:
        """Follow the room until the view is terminal or the observer is closed.

        A dropped subscription is re-opened with exponential backoff.
        """

        backoff = self.settings.backoff_initial
        path = room_path(self.room_id)
        while not self._closed and not self.view.terminal:
            stream = self.store.subscribe(path)
            try:
                async for data in stream:
                    backoff = self.settings.backoff_initial
                    self.apply_snapshot(data)
                    if self._closed or self.view.terminal:
                        break
            except StoreUnavailable as e:
                logger.warning(
                    f"[memory] subscription lost room_id={self.room_id} error={e} retry_in={backoff}"
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.settings.backoff_max)
            finally:
                await stream.aclose()
        return self.view

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    def close(self) -> None:
        self._closed = True
        for task in (self._task, self._resolve_task):
            if task is not None and not task.done():
                task.cancel()
