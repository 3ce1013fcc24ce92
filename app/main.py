import logging
import os
from pathlib import Path
from typing import Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from dotenv import load_dotenv

from memory_game.config import SessionSettings, env_flag
from memory_game.errors import (
    GameNotActive,
    InvalidTile,
    MemoryGameError,
    NotAuthenticated,
    NotYourTurn,
    RoomFull,
    RoomNotFound,
    StartRejected,
    StoreUnavailable,
    TurnBusy,
)
from memory_game.lobby import RoomLifecycle
from memory_game.models import TimerPolicy, room_from_dict, room_path, room_to_client
from memory_game.persistence import FirestoreStore, InMemoryStore
from memory_game.resolver import MatchResolver
from memory_game.timers import TimeoutWriter
from memory_game.turns import TurnEngine

load_dotenv(dotenv_path=Path(".env.local"))

API_BASE = "/api/memory"

CONFLICT_ERRORS = (RoomFull, NotYourTurn, TurnBusy, GameNotActive, StartRejected, InvalidTile)


def choose_store():
    if env_flag("USE_INMEMORY", "1"):
        return InMemoryStore()
    try:
        return FirestoreStore()
    except Exception:
        logging.getLogger("uvicorn.error").exception("[memory] firestore unavailable, using in-memory store")
        return InMemoryStore()


class CreateRoomBody(BaseModel):
    difficulty: Literal["easy", "medium", "hard"] = "easy"
    timed: bool = False
    limit_seconds: Optional[int] = Field(None, gt=0, le=3600)


class RevealBody(BaseModel):
    tile_id: int = Field(..., ge=0)


def error_status(err: MemoryGameError) -> int:
    if isinstance(err, RoomNotFound):
        return 404
    if isinstance(err, CONFLICT_ERRORS):
        return 409
    if isinstance(err, NotAuthenticated):
        return 401
    if isinstance(err, StoreUnavailable):
        return 503
    return 400


def create_app(store=None, settings: Optional[SessionSettings] = None) -> FastAPI:
    app = FastAPI(title="Memory Match Service", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.store = store or choose_store()
    app.state.settings = settings or SessionSettings.from_env()
    app.state.lifecycle = RoomLifecycle(app.state.store, app.state.settings)
    app.state.turns = TurnEngine(app.state.store, app.state.settings)
    app.state.resolver = MatchResolver(app.state.store, app.state.settings)
    app.state.timeouts = TimeoutWriter(app.state.store, app.state.settings)

    @app.on_event("startup")
    async def _log_store():
        klass = app.state.store.__class__.__name__
        use_inmem = env_flag("USE_INMEMORY", "1")
        emulator = os.getenv("FIRESTORE_EMULATOR_HOST")
        project = os.getenv("GOOGLE_CLOUD_PROJECT")
        logging.getLogger("uvicorn.error").info(
            f"[memory] Store={klass} USE_INMEMORY={int(use_inmem)} FIRESTORE_EMULATOR_HOST={emulator or '-'} "
            f"GOOGLE_CLOUD_PROJECT={project or '-'} resolve_delay={app.state.settings.resolve_delay}"
        )

    def _identity(headers) -> str:
        is_cloud_run = bool(os.getenv("K_SERVICE") or os.getenv("K_REVISION") or os.getenv("K_CONFIGURATION"))
        trust_x_user_id = env_flag("TRUST_X_USER_ID", "0" if is_cloud_run else "1")
        allow_anon = env_flag("ALLOW_ANON", "0" if is_cloud_run else "1")
        default_uid = os.getenv("DEFAULT_USER_ID", "local-user")

        forwarded_user = headers.get("X-Forwarded-User")
        if forwarded_user:
            return forwarded_user
        uid = headers.get("X-User-Id")
        if uid and trust_x_user_id:
            return uid
        if allow_anon:
            return default_uid
        logging.getLogger("uvicorn.error").warning(
            f"[memory] get_user_id missing user id is_cloud_run={int(is_cloud_run)} "
            f"trust_x_user_id={int(trust_x_user_id)} allow_anon={int(allow_anon)}"
        )
        raise NotAuthenticated()

    def get_user_id(req: Request) -> str:
        try:
            return _identity(req.headers)
        except NotAuthenticated:
            raise HTTPException(status_code=401, detail="missing user id")

    def _raise(err: MemoryGameError):
        raise HTTPException(status_code=error_status(err), detail=str(err))

    @app.post(f"{API_BASE}/rooms")
    async def create_room(body: CreateRoomBody, user_id: str = Depends(get_user_id)):
        try:
            policy = TimerPolicy.timed(body.limit_seconds or 0) if body.timed else TimerPolicy.untimed()
            room_id = await app.state.lifecycle.create_room(user_id, body.difficulty, policy)
            room = await _load(room_id)
        except MemoryGameError as e:
            _raise(e)
        return room_to_client(room, user_id)

    @app.get(f"{API_BASE}/rooms/joinable")
    async def list_joinable_rooms(user_id: str = Depends(get_user_id)):
        try:
            rooms = await app.state.lifecycle.find_joinable_rooms()
        except MemoryGameError as e:
            _raise(e)
        return {
            "rooms": [
                {
                    "roomId": r.room_id,
                    "hostId": r.host_id,
                    "difficulty": r.difficulty,
                    "timerPolicy": {"mode": r.timer_policy.mode, "limitSeconds": r.timer_policy.limit_seconds},
                }
                for r in rooms
                if r.host_id != user_id
            ]
        }

    async def _load(room_id: str):
        data = await app.state.store.read(room_path(room_id))
        if data is None:
            raise RoomNotFound(room_id)
        return room_from_dict(data, room_id)

    @app.get(f"{API_BASE}/rooms/{{room_id}}")
    async def get_room(room_id: str, user_id: str = Depends(get_user_id)):
        try:
            room = await _load(room_id)
        except MemoryGameError as e:
            _raise(e)
        return room_to_client(room, user_id)

    @app.post(f"{API_BASE}/rooms/{{room_id}}/join")
    async def join_room(room_id: str, user_id: str = Depends(get_user_id)):
        try:
            room = await app.state.lifecycle.join_room(room_id, user_id)
        except MemoryGameError as e:
            _raise(e)
        return room_to_client(room, user_id)

    @app.post(f"{API_BASE}/rooms/{{room_id}}/start")
    async def start_game(room_id: str, user_id: str = Depends(get_user_id)):
        try:
            room = await app.state.lifecycle.start_game(room_id, user_id)
        except MemoryGameError as e:
            _raise(e)
        return room_to_client(room, user_id)

    @app.post(f"{API_BASE}/rooms/{{room_id}}/leave")
    async def leave_room(room_id: str, user_id: str = Depends(get_user_id)):
        try:
            await app.state.lifecycle.leave_room(room_id, user_id)
        except MemoryGameError as e:
            _raise(e)
        return {"roomId": room_id, "left": True}

    @app.post(f"{API_BASE}/rooms/{{room_id}}/reveal")
    async def reveal_tile(room_id: str, body: RevealBody, user_id: str = Depends(get_user_id)):
        try:
            room = await app.state.turns.reveal_tile(room_id, user_id, body.tile_id)
        except MemoryGameError as e:
            _raise(e)
        return room_to_client(room, user_id)

    @app.post(f"{API_BASE}/rooms/{{room_id}}/resolve")
    async def resolve_turn(room_id: str, user_id: str = Depends(get_user_id)):
        """Settle the current turn. Only the author of the second reveal gets a result."""

        try:
            room = await app.state.resolver.resolve(room_id, user_id)
        except MemoryGameError as e:
            _raise(e)
        if room is None:
            raise HTTPException(status_code=409, detail="not_resolver")
        return room_to_client(room, user_id)

    @app.post(f"{API_BASE}/rooms/{{room_id}}/pass-turn")
    async def pass_turn(room_id: str, user_id: str = Depends(get_user_id)):
        try:
            room = await app.state.timeouts.force_turn_pass(room_id, user_id)
        except MemoryGameError as e:
            _raise(e)
        if room is None:
            raise HTTPException(status_code=404, detail=RoomNotFound.code)
        return room_to_client(room, user_id)

    @app.post(f"{API_BASE}/rooms/{{room_id}}/expire")
    async def expire_match(room_id: str, user_id: str = Depends(get_user_id)):
        try:
            room = await app.state.timeouts.expire_match(room_id)
        except MemoryGameError as e:
            _raise(e)
        if room is None:
            raise HTTPException(status_code=404, detail=RoomNotFound.code)
        return room_to_client(room, user_id)

    @app.websocket(f"{API_BASE}/rooms/{{room_id}}/stream")
    async def stream_room(websocket: WebSocket, room_id: str):
        """Push every room snapshot; a null payload means the room is gone."""

        try:
            user_id = _identity(websocket.headers)
        except NotAuthenticated:
            await websocket.close(code=4401)
            return
        await websocket.accept()
        stream = app.state.store.subscribe(room_path(room_id))
        try:
            async for data in stream:
                if data is None:
                    await websocket.send_json({"room": None})
                    break
                await websocket.send_json({"room": room_to_client(room_from_dict(data, room_id), user_id)})
        except WebSocketDisconnect:
            return
        except StoreUnavailable as e:
            logging.getLogger("uvicorn.error").warning(f"[memory] stream dropped room_id={room_id} error={e}")
            await websocket.close(code=1011)
            return
        finally:
            await stream.aclose()
        await websocket.close()

    return app


app = create_app()
