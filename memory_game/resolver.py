from __future__ import annotations

from typing import Dict, Optional
import asyncio
import logging

from .config import SessionSettings
from .engine import apply_resolution, winner_of
from .errors import RoomNotFound
from .models import Room, room_from_dict, room_path, room_to_dict
from .persistence import Document, RealtimeStore, bounded


logger = logging.getLogger(__name__)


def _is_resolver(room: Room, my_id: str) -> bool:
    return not room.finished and room.resolving and room.last_reveal_by == my_id


class MatchResolver:
    """Settle a turn once both of its tiles are face up.

    Only the client that made the second reveal resolves. The outcome is
    committed through the store transaction, which re-checks eligibility
    against the freshest room: a match that expired or lost its guest in the
    meantime stays finished.
    """

    def __init__(self, store: RealtimeStore, settings: Optional[SessionSettings] = None) -> None:
        self.store = store
        self.settings = settings or SessionSettings()

    async def resolve(self, room_id: str, my_id: str) -> Optional[Room]:
        if self.settings.resolve_delay > 0:
            await asyncio.sleep(self.settings.resolve_delay)

        path = room_path(room_id)
        data = await bounded(self.store.read(path), self.settings.write_timeout, "read")
        if data is None:
            return None
        room = room_from_dict(data, room_id)
        if not _is_resolver(room, my_id):
            logger.debug(
                f"[memory] resolve skipped room_id={room_id} my_id={my_id} resolving={int(room.resolving)} "
                f"last_reveal_by={room.last_reveal_by} finished={int(room.finished)}"
            )
            return None

        outcome: Dict[str, Optional[Room]] = {}

        def _resolve(current: Optional[Document]) -> Document:
            outcome["before"] = outcome["after"] = None
            if current is None:
                raise RoomNotFound(room_id)
            fresh = room_from_dict(current, room_id)
            outcome["before"] = fresh
            if not _is_resolver(fresh, my_id):
                return current
            outcome["after"] = apply_resolution(fresh)
            return room_to_dict(outcome["after"])

        try:
            await bounded(self.store.transact(path, _resolve), self.settings.write_timeout, "resolve")
        except RoomNotFound:
            return None
        before, resolved = outcome["before"], outcome["after"]
        if before is None or resolved is None:
            logger.debug(f"[memory] resolve lost race room_id={room_id} my_id={my_id}")
            return None

        actor = before.turn_holder
        matched = resolved.score_of(actor) > before.score_of(actor)
        logger.info(
            f"[memory] turn resolved room_id={room_id} actor_id={actor} matched={int(matched)} "
            f"next={resolved.turn_holder} host_score={resolved.host_score} guest_score={resolved.guest_score}"
        )
        if resolved.finished:
            logger.info(
                f"[memory] match finished room_id={room_id} reason={resolved.finish_reason} "
                f"winner={winner_of(resolved) or 'draw'}"
            )
        return resolved
