from __future__ import annotations

from typing import Awaitable, Callable, Dict, Optional
import asyncio
import logging

from .config import SessionSettings
from .engine import apply_time_expired, apply_turn_timeout
from .errors import RoomNotFound
from .models import Room, room_from_dict, room_path, room_to_dict
from .persistence import Document, RealtimeStore, bounded


logger = logging.getLogger(__name__)


class Countdown:
    """A restartable one-shot timer running ``on_expire`` after ``seconds``.

    ``remaining`` is what a turn indicator would show. Restarting cancels the
    pending expiry.
    """

    def __init__(self, seconds: float, on_expire: Callable[[], Awaitable[None]]) -> None:
        self.seconds = seconds
        self.on_expire = on_expire
        self._task: Optional[asyncio.Task] = None
        self._deadline: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def remaining(self) -> float:
        if self._deadline is None or not self.running:
            return 0.0
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    def start(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self.seconds
        self._task = loop.create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        await asyncio.sleep(self.seconds)
        try:
            await self.on_expire()
        except Exception:
            logger.exception("[memory] countdown expiry handler failed")


class TimeoutWriter:
    """Writes issued when a local countdown expires.

    Both clients run their own countdowns, so either write may happen twice.
    The reducers make the second one a no-op. The turn pass is transactional;
    match expiry only ever sets ``finished`` and is a plain update.
    """

    def __init__(self, store: RealtimeStore, settings: Optional[SessionSettings] = None) -> None:
        self.store = store
        self.settings = settings or SessionSettings()

    async def _read(self, room_id: str) -> Optional[Room]:
        data = await bounded(self.store.read(room_path(room_id)), self.settings.write_timeout, "read")
        if data is None:
            return None
        return room_from_dict(data, room_id)

    async def force_turn_pass(self, room_id: str, expected_holder: str) -> Optional[Room]:
        """Pass the turn away from ``expected_holder``.

        Runs as a transaction so a reveal committed after our read is seen
        before deciding; a pass never lands on top of a resolution in flight.
        """

        room = await self._read(room_id)
        if room is None:
            return None
        if apply_turn_timeout(room, expected_holder) is room:
            return room

        outcome: Dict[str, Room] = {}

        def _pass(current: Optional[Document]) -> Document:
            if current is None:
                raise RoomNotFound(room_id)
            fresh = room_from_dict(current, room_id)
            outcome["before"] = fresh
            outcome["after"] = apply_turn_timeout(fresh, expected_holder)
            return room_to_dict(outcome["after"])

        try:
            await bounded(
                self.store.transact(room_path(room_id), _pass), self.settings.write_timeout, "force_turn_pass"
            )
        except RoomNotFound:
            return None
        passed = outcome["after"]
        if passed is outcome["before"]:
            logger.debug(f"[memory] turn pass skipped room_id={room_id} expected_holder={expected_holder}")
            return passed
        logger.info(f"[memory] turn timed out room_id={room_id} from={expected_holder} to={passed.turn_holder}")
        return passed

    async def expire_match(self, room_id: str) -> Optional[Room]:
        room = await self._read(room_id)
        if room is None:
            return None
        expired = apply_time_expired(room)
        if expired is room:
            return room
        await bounded(
            self.store.update(
                room_path(room_id),
                {"finished": True, "finishReason": expired.finish_reason, "updatedAt": expired.updated_at},
            ),
            self.settings.write_timeout,
            "expire_match",
        )
        logger.info(
            f"[memory] match time expired room_id={room_id} host_score={room.host_score} "
            f"guest_score={room.guest_score}"
        )
        return expired
