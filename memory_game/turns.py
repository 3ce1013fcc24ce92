from __future__ import annotations

from typing import Optional
import logging

from .config import SessionSettings
from .engine import apply_reveal
from .errors import MemoryGameError, RoomNotFound
from .models import Move, Room, room_from_dict, room_path, room_to_dict
from .persistence import Document, RealtimeStore, bounded


logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("memory_game.audit")


class TurnEngine:
    def __init__(self, store: RealtimeStore, settings: Optional[SessionSettings] = None) -> None:
        self.store = store
        self.settings = settings or SessionSettings()

    async def reveal_tile(self, room_id: str, actor_id: str, tile_id: int) -> Room:
        """Flip ``tile_id`` for ``actor_id`` inside a conditional-retry transaction.

        Every precondition is checked against the value the transaction read,
        so a stale local copy can never let a second reveal through. A
        rejection raises the matching MemoryGameError subclass and aborts the
        transaction; callers must not retry it.
        """

        def _reveal(current: Optional[Document]) -> Document:
            if current is None:
                raise RoomNotFound(room_id)
            room = room_from_dict(current, room_id)
            return room_to_dict(apply_reveal(room, actor_id, tile_id))

        try:
            data = await bounded(
                self.store.transact(room_path(room_id), _reveal),
                self.settings.write_timeout,
                "reveal_tile",
            )
        except MemoryGameError as e:
            logger.info(
                f"[memory] reveal rejected room_id={room_id} actor_id={actor_id} tile_id={tile_id} "
                f"reason={e} detail={e.detail or '-'}"
            )
            raise

        room = room_from_dict(data, room_id)
        move = Move(actor_id=actor_id, tile_id=tile_id, timestamp=room.updated_at)
        audit_logger.info(
            f"[memory] move room_id={room_id} actor_id={move.actor_id} tile_id={move.tile_id} "
            f"at={move.timestamp.isoformat()} pending={len(room.pending_reveals)} resolving={int(room.resolving)}"
        )
        return room
