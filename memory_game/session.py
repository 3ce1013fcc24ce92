from __future__ import annotations

from typing import Optional, Set
import asyncio
import logging

from .config import SessionSettings
from .errors import MemoryGameError, StoreUnavailable
from .lobby import RoomLifecycle
from .observer import SessionObserver, SessionView
from .persistence import RealtimeStore
from .resolver import MatchResolver
from .timers import Countdown, TimeoutWriter
from .turns import TurnEngine


logger = logging.getLogger(__name__)


class OnlineSession:
    """One client's side of a networked match.

    Owns the observer, the tap guard and the two local countdowns. Taps are
    serialised: a tap made while another reveal is outstanding is dropped.
    """

    def __init__(
        self,
        store: RealtimeStore,
        room_id: str,
        my_id: str,
        settings: Optional[SessionSettings] = None,
    ) -> None:
        self.settings = settings or SessionSettings()
        self.room_id = room_id
        self.my_id = my_id
        self.lifecycle = RoomLifecycle(store, self.settings)
        self.turns = TurnEngine(store, self.settings)
        self.timeouts = TimeoutWriter(store, self.settings)
        self.observer = SessionObserver(store, room_id, my_id, MatchResolver(store, self.settings), self.settings)
        self.observer.add_listener(self._on_view)
        self.turn_clock = Countdown(self.settings.turn_seconds, self._on_turn_expired)
        self.match_clock: Optional[Countdown] = None
        self.optimistic: Set[int] = set()
        self.last_rejection: Optional[MemoryGameError] = None
        self._tap_in_flight = False
        self._previous_holder: Optional[str] = None
        self._previous_resolving = False
        self._background: Set[asyncio.Task] = set()

    @property
    def view(self) -> SessionView:
        return self.observer.view

    def start(self) -> asyncio.Task:
        return self.observer.start()

    def tile_visible(self, tile_id: int) -> bool:
        if tile_id in self.optimistic:
            return True
        for t in self.view.tiles:
            if t.tile_id == tile_id:
                return t.face_up
        return False

    async def tap(self, tile_id: int) -> bool:
        """Reveal a tile. Returns False when the tap was dropped or rejected.

        The tile shows face up locally while the transaction is in flight and
        is rolled back if the transaction is rejected. Rejections are not
        retried.
        """

        if self._tap_in_flight or self.view.terminal:
            return False
        self._tap_in_flight = True
        self.optimistic.add(tile_id)
        try:
            await self.turns.reveal_tile(self.room_id, self.my_id, tile_id)
            self.last_rejection = None
            return True
        except MemoryGameError as e:
            self.last_rejection = e
            return False
        finally:
            self.optimistic.discard(tile_id)
            self._tap_in_flight = False

    def _on_view(self, view: SessionView) -> None:
        room = view.room
        if view.terminal or room is None:
            self._stop_clocks()
            return

        holder = room.turn_holder if room.active else None
        # A settled match keeps the turn, so it gets a fresh countdown too.
        settled = self._previous_resolving and not room.resolving
        if view.is_my_turn and (holder != self._previous_holder or settled):
            self.turn_clock.start()
        elif not view.is_my_turn:
            self.turn_clock.cancel()
        self._previous_holder = holder
        self._previous_resolving = room.resolving

        if room.active and room.timer_policy.is_timed and self.match_clock is None:
            self.match_clock = Countdown(float(room.timer_policy.limit_seconds or 0), self._on_match_expired)
            self.match_clock.start()

    def _stop_clocks(self) -> None:
        self.turn_clock.cancel()
        if self.match_clock is not None:
            self.match_clock.cancel()

    async def _on_turn_expired(self) -> None:
        try:
            await self.timeouts.force_turn_pass(self.room_id, self.my_id)
        except StoreUnavailable as e:
            logger.warning(f"[memory] turn pass write failed room_id={self.room_id} error={e}")

    async def _on_match_expired(self) -> None:
        try:
            await self.timeouts.expire_match(self.room_id)
        except StoreUnavailable as e:
            logger.warning(f"[memory] match expiry write failed room_id={self.room_id} error={e}")

    def leave(self) -> asyncio.Task:
        """Stop following the room and leave it without waiting for the network.

        The returned task only exists so callers may await it in tests; the
        session keeps a reference until it completes.
        """

        self.observer.close()
        self._stop_clocks()
        task = asyncio.get_running_loop().create_task(self.lifecycle.leave_room(self.room_id, self.my_id))
        self._background.add(task)
        task.add_done_callback(self._leave_done)
        return task

    def _leave_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            logger.warning(f"[memory] leave_room failed room_id={self.room_id} my_id={self.my_id} error={err}")
