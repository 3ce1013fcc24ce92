from __future__ import annotations

from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar
import asyncio
import copy
import functools
import logging
import os
import uuid

try:
    from google.cloud import firestore  # type: ignore
    from google.api_core import exceptions as google_exceptions  # type: ignore
except Exception:
    firestore = None  # type: ignore
    google_exceptions = None  # type: ignore

from .errors import StoreUnavailable


logger = logging.getLogger(__name__)

T = TypeVar("T")

Document = Dict[str, Any]
Mutation = Callable[[Optional[Document]], Document]


async def bounded(awaitable: Awaitable[T], timeout: Optional[float], op: str) -> T:
    """Await a store call, turning a timeout into StoreUnavailable."""

    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        logger.warning(f"[memory] store op timed out op={op} timeout={timeout}")
        raise StoreUnavailable(f"{op}_timeout") from None


class RealtimeStore(Protocol):
    async def create_document(self, prefix: str) -> str: ...

    async def read(self, path: str) -> Optional[Document]: ...

    async def write(self, path: str, value: Document) -> None: ...

    async def update(self, path: str, fields: Document) -> bool: ...

    async def delete(self, path: str) -> None: ...

    def subscribe(self, path: str) -> AsyncIterator[Optional[Document]]: ...

    async def transact(self, path: str, fn: Mutation) -> Document: ...

    async def query(self, prefix: str, filters: Dict[str, Any], limit: int) -> List[Document]: ...

    async def get_or_create_identity(self) -> str: ...


class InMemoryStore:
    """Single-process stand-in for the realtime store.

    Documents carry a version counter. ``transact`` reads a version, runs the
    mutation, yields to the event loop (the simulated round trip) and only
    commits if nobody else committed in between; otherwise it re-runs the
    mutation against the fresh value. Setting ``offline`` makes every call
    raise StoreUnavailable and drops live subscriptions.
    """

    def __init__(self, identity: Optional[str] = None, max_attempts: int = 25) -> None:
        self.docs: Dict[str, Document] = {}
        self.versions: Dict[str, int] = {}
        self.max_attempts = max_attempts
        self.transaction_attempts = 0
        self._identity = identity
        self._offline = False
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    @property
    def offline(self) -> bool:
        return self._offline

    @offline.setter
    def offline(self, value: bool) -> None:
        self._offline = value
        if value:
            for queues in self._subscribers.values():
                for q in queues:
                    q.put_nowait(StoreUnavailable("connection_lost"))

    def _check_online(self) -> None:
        if self._offline:
            raise StoreUnavailable("offline")

    def _commit(self, path: str, value: Optional[Document]) -> None:
        if value is None:
            self.docs.pop(path, None)
        else:
            self.docs[path] = copy.deepcopy(value)
        self.versions[path] = self.versions.get(path, 0) + 1
        for q in self._subscribers.get(path, []):
            q.put_nowait(copy.deepcopy(value))

    async def create_document(self, prefix: str) -> str:
        self._check_online()
        return f"{prefix}/{uuid.uuid4().hex[:12]}"

    async def read(self, path: str) -> Optional[Document]:
        self._check_online()
        await asyncio.sleep(0)
        return copy.deepcopy(self.docs.get(path))

    async def write(self, path: str, value: Document) -> None:
        self._check_online()
        await asyncio.sleep(0)
        self._commit(path, value)

    async def update(self, path: str, fields: Document) -> bool:
        self._check_online()
        await asyncio.sleep(0)
        current = self.docs.get(path)
        if current is None:
            return False
        merged = copy.deepcopy(current)
        merged.update(copy.deepcopy(fields))
        self._commit(path, merged)
        return True

    async def delete(self, path: str) -> None:
        self._check_online()
        await asyncio.sleep(0)
        if path in self.docs:
            self._commit(path, None)

    async def subscribe(self, path: str) -> AsyncIterator[Optional[Document]]:
        self._check_online()
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(path, []).append(queue)
        try:
            yield copy.deepcopy(self.docs.get(path))
            while True:
                item = await queue.get()
                if isinstance(item, StoreUnavailable):
                    raise item
                yield item
        finally:
            queues = self._subscribers.get(path, [])
            if queue in queues:
                queues.remove(queue)

    async def transact(self, path: str, fn: Mutation) -> Document:
        for attempt in range(self.max_attempts):
            self._check_online()
            self.transaction_attempts += 1
            base_version = self.versions.get(path, 0)
            new_value = fn(copy.deepcopy(self.docs.get(path)))
            await asyncio.sleep(0)
            if self.versions.get(path, 0) != base_version:
                logger.debug(f"[memory] transaction contention path={path} attempt={attempt + 1}")
                continue
            self._commit(path, new_value)
            return copy.deepcopy(new_value)
        raise StoreUnavailable("transaction_contention")

    async def query(self, prefix: str, filters: Dict[str, Any], limit: int) -> List[Document]:
        self._check_online()
        await asyncio.sleep(0)
        results: List[Document] = []
        for path in sorted(self.docs):
            if len(results) >= limit:
                break
            head, _, doc_id = path.rpartition("/")
            if head != prefix or not doc_id:
                continue
            data = self.docs[path]
            if all(data.get(k) == v for k, v in filters.items()):
                results.append(copy.deepcopy(data))
        return results

    async def get_or_create_identity(self) -> str:
        if self._identity is None:
            self._identity = uuid.uuid4().hex
        return self._identity


def _translate_errors(method):
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except google_exceptions.GoogleAPICallError as e:
            logger.warning(f"[memory] firestore call failed op={method.__name__} error={e}")
            raise StoreUnavailable(str(e)) from e
        except google_exceptions.RetryError as e:
            logger.warning(f"[memory] firestore retries exhausted op={method.__name__} error={e}")
            raise StoreUnavailable(str(e)) from e

    return wrapper


class FirestoreStore:
    """Realtime store backed by Cloud Firestore.

    Reads, writes, queries and transactions go through the async client.
    Listening uses the synchronous client's ``on_snapshot`` watch, whose
    callbacks run on a background thread and are handed to the event loop.
    """

    WATCH_POLL_SECONDS = 5.0

    def __init__(
        self,
        client: Optional[Any] = None,
        watch_client: Optional[Any] = None,
        identity_file: Optional[str] = None,
    ) -> None:
        if firestore is None:
            raise RuntimeError("google-cloud-firestore not available")
        project = os.environ.get("GOOGLE_CLOUD_PROJECT")
        self.client = client if client is not None else firestore.AsyncClient(project=project)
        self._watch_client = watch_client
        self._project = project
        self.identity_file = Path(
            identity_file
            or os.environ.get("MEMORY_IDENTITY_FILE")
            or Path.home() / ".memory_game" / "identity"
        )

    def _watcher(self) -> Any:
        if self._watch_client is None:
            self._watch_client = firestore.Client(project=self._project)
        return self._watch_client

    @_translate_errors
    async def create_document(self, prefix: str) -> str:
        ref = self.client.collection(prefix).document()
        return f"{prefix}/{ref.id}"

    @_translate_errors
    async def read(self, path: str) -> Optional[Document]:
        snap = await self.client.document(path).get()
        if not snap.exists:
            return None
        return snap.to_dict() or {}

    @_translate_errors
    async def write(self, path: str, value: Document) -> None:
        await self.client.document(path).set(value)

    @_translate_errors
    async def update(self, path: str, fields: Document) -> bool:
        try:
            await self.client.document(path).update(fields)
        except google_exceptions.NotFound:
            return False
        return True

    @_translate_errors
    async def delete(self, path: str) -> None:
        await self.client.document(path).delete()

    async def subscribe(self, path: str) -> AsyncIterator[Optional[Document]]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def _on_snapshot(docs: List[Any], changes: Any, read_time: Any) -> None:
            value: Optional[Document] = None
            for snap in docs:
                if snap.exists:
                    value = snap.to_dict() or {}
            loop.call_soon_threadsafe(queue.put_nowait, value)

        try:
            watch = self._watcher().document(path).on_snapshot(_on_snapshot)
        except google_exceptions.GoogleAPICallError as e:
            raise StoreUnavailable(str(e)) from e
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), self.WATCH_POLL_SECONDS)
                except asyncio.TimeoutError:
                    if not watch.is_active:
                        raise StoreUnavailable("watch_closed") from None
                    continue
                yield item
        finally:
            watch.unsubscribe()

    @_translate_errors
    async def transact(self, path: str, fn: Mutation) -> Document:
        ref = self.client.document(path)

        @firestore.async_transactional
        async def _txn(transaction: Any) -> Document:
            snap = await ref.get(transaction=transaction)
            current = (snap.to_dict() or {}) if snap.exists else None
            new_value = fn(current)
            transaction.set(ref, new_value)
            return new_value

        return await _txn(self.client.transaction())

    @_translate_errors
    async def query(self, prefix: str, filters: Dict[str, Any], limit: int) -> List[Document]:
        q = self.client.collection(prefix)
        for field_name, value in filters.items():
            q = q.where(field_name, "==", value)
        results: List[Document] = []
        async for snap in q.limit(limit).stream():
            results.append(snap.to_dict() or {})
        return results

    async def get_or_create_identity(self) -> str:
        if self.identity_file.exists():
            identity = self.identity_file.read_text().strip()
            if identity:
                return identity
        identity = uuid.uuid4().hex
        self.identity_file.parent.mkdir(parents=True, exist_ok=True)
        self.identity_file.write_text(identity)
        logger.info(f"[memory] issued anonymous identity path={self.identity_file}")
        return identity
