from __future__ import annotations

from typing import List, Optional
import logging
import random

from .config import SessionSettings
from .engine import apply_guest_leave, apply_join, apply_start, new_room, pair_count_for
from .errors import RoomNotFound
from .models import ROOMS_PREFIX, Difficulty, Room, TimerPolicy, room_from_dict, room_path, room_to_dict
from .persistence import Document, RealtimeStore, bounded


logger = logging.getLogger(__name__)


class RoomLifecycle:
    """Create, join, start and leave rooms.

    Only ``join_room`` needs the store's conditional-retry transaction: two
    guests racing for the same empty seat must not both win. The other
    transitions are one-shot and guarded by a flag that leaves at most one
    party eligible to write.
    """

    def __init__(
        self,
        store: RealtimeStore,
        settings: Optional[SessionSettings] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.settings = settings or SessionSettings()
        self.rng = rng

    async def _read_room(self, room_id: str) -> Room:
        data = await bounded(self.store.read(room_path(room_id)), self.settings.write_timeout, "read")
        if data is None:
            raise RoomNotFound(room_id)
        return room_from_dict(data, room_id)

    async def create_room(self, host_id: str, difficulty: Difficulty, timer_policy: TimerPolicy) -> str:
        # Validate before allocating anything in the store.
        pair_count_for(difficulty)
        path = await bounded(
            self.store.create_document(ROOMS_PREFIX), self.settings.create_timeout, "create_document"
        )
        room_id = path.rpartition("/")[2]
        room = new_room(room_id, host_id, difficulty, timer_policy, self.rng)
        await bounded(self.store.write(path, room_to_dict(room)), self.settings.create_timeout, "create_room")
        logger.info(
            f"[memory] room created room_id={room_id} host_id={host_id} difficulty={difficulty} "
            f"timer={timer_policy.mode} tiles={len(room.board)}"
        )
        return room_id

    async def join_room(self, room_id: str, guest_id: str) -> Room:
        def _join(current: Optional[Document]) -> Document:
            if current is None:
                raise RoomNotFound(room_id)
            return room_to_dict(apply_join(room_from_dict(current, room_id), guest_id))

        data = await bounded(
            self.store.transact(room_path(room_id), _join), self.settings.write_timeout, "join_room"
        )
        logger.info(f"[memory] guest joined room_id={room_id} guest_id={guest_id}")
        return room_from_dict(data, room_id)

    async def start_game(self, room_id: str, requester_id: str) -> Room:
        room = await self._read_room(room_id)
        started = apply_start(room, requester_id)
        ok = await bounded(
            self.store.update(
                room_path(room_id),
                {"started": True, "turnHolder": started.turn_holder, "updatedAt": started.updated_at},
            ),
            self.settings.write_timeout,
            "start_game",
        )
        if not ok:
            raise RoomNotFound(room_id)
        logger.info(f"[memory] match started room_id={room_id} host_id={room.host_id} guest_id={room.guest_id}")
        return started

    async def leave_room(self, room_id: str, requester_id: str) -> None:
        """Host leaving deletes the room; guest leaving frees the seat.

        A guest leaving a started match forfeits it. Unknown rooms and
        requesters who are not in the room are ignored.
        """

        path = room_path(room_id)
        data = await bounded(self.store.read(path), self.settings.write_timeout, "read")
        if data is None:
            return
        room = room_from_dict(data, room_id)

        if requester_id == room.host_id:
            await bounded(self.store.delete(path), self.settings.write_timeout, "leave_room")
            logger.info(f"[memory] host left, room deleted room_id={room_id}")
            return

        if requester_id == room.guest_id:
            left = apply_guest_leave(room)
            await bounded(
                self.store.update(
                    path,
                    {
                        "guestId": None,
                        "finished": left.finished,
                        "finishReason": left.finish_reason,
                        "updatedAt": left.updated_at,
                    },
                ),
                self.settings.write_timeout,
                "leave_room",
            )
            logger.info(
                f"[memory] guest left room_id={room_id} guest_id={requester_id} forfeit={int(room.active)}"
            )

    async def find_joinable_rooms(self, limit: Optional[int] = None) -> List[Room]:
        docs = await bounded(
            self.store.query(
                ROOMS_PREFIX,
                {"guestId": None, "started": False},
                limit or self.settings.joinable_limit,
            ),
            self.settings.write_timeout,
            "find_joinable_rooms",
        )
        rooms: List[Room] = []
        for data in docs:
            try:
                rooms.append(room_from_dict(data))
            except (TypeError, ValueError) as e:
                logger.warning(f"[memory] skipping unreadable room doc room_id={data.get('roomId')} error={e}")
        return rooms
