import asyncio
import random
import unittest

from memory_game.config import SessionSettings
from memory_game.engine import check_invariants
from memory_game.errors import InvalidTile, NotYourTurn, RoomFull, RoomNotFound, StartRejected, StoreUnavailable, TurnBusy
from memory_game.lobby import RoomLifecycle
from memory_game.models import TimerPolicy, room_from_dict, room_path
from memory_game.observer import SessionObserver, SessionPhase
from memory_game.persistence import InMemoryStore
from memory_game.resolver import MatchResolver
from memory_game.session import OnlineSession
from memory_game.timers import TimeoutWriter
from memory_game.turns import TurnEngine


FAST = SessionSettings(
    resolve_delay=0.0,
    turn_seconds=60.0,
    create_timeout=1.0,
    write_timeout=1.0,
    backoff_initial=0.01,
    backoff_max=0.05,
)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class CountingResolver(MatchResolver):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.calls = 0
        self.applied = 0

    async def resolve(self, room_id, my_id):
        self.calls += 1
        result = await super().resolve(room_id, my_id)
        if result is not None:
            self.applied += 1
        return result


class ProtocolTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = InMemoryStore()
        self.lifecycle = RoomLifecycle(self.store, FAST, rng=random.Random(11))
        self.turns = TurnEngine(self.store, FAST)
        self.resolver = MatchResolver(self.store, FAST)

    async def _room(self, room_id):
        return room_from_dict(await self.store.read(room_path(room_id)), room_id)

    async def _started_room(self, difficulty="easy", timer_policy=None) -> str:
        room_id = await self.lifecycle.create_room("host", difficulty, timer_policy or TimerPolicy.untimed())
        await self.lifecycle.join_room(room_id, "guest")
        await self.lifecycle.start_game(room_id, "host")
        return room_id

    async def _pairs(self, room_id):
        room = await self._room(room_id)
        by_key = {}
        for t in room.board:
            by_key.setdefault(t.pair_key, []).append(t.tile_id)
        return list(by_key.values())


class LifecycleTests(ProtocolTestCase):
    async def test_create_room_writes_full_board(self) -> None:
        room_id = await self.lifecycle.create_room("host", "easy", TimerPolicy.untimed())
        room = await self._room(room_id)
        self.assertEqual(len(room.board), 8)
        self.assertEqual(sorted(t.pair_key for t in room.board), [0, 0, 1, 1, 2, 2, 3, 3])
        self.assertEqual(room.host_id, "host")
        self.assertIsNone(room.guest_id)
        self.assertFalse(room.started)

    async def test_create_room_offline_is_store_unavailable(self) -> None:
        self.store.offline = True
        with self.assertRaises(StoreUnavailable):
            await self.lifecycle.create_room("host", "easy", TimerPolicy.untimed())

    async def test_concurrent_joins_admit_exactly_one_guest(self) -> None:
        room_id = await self.lifecycle.create_room("host", "easy", TimerPolicy.untimed())
        results = await asyncio.gather(
            self.lifecycle.join_room(room_id, "guest-a"),
            self.lifecycle.join_room(room_id, "guest-b"),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(winners), 1)
        self.assertEqual(len(losers), 1)
        self.assertIsInstance(losers[0], RoomFull)
        room = await self._room(room_id)
        self.assertEqual(room.guest_id, winners[0].guest_id)
        # The loser's first attempt conflicted and was re-run.
        self.assertGreaterEqual(self.store.transaction_attempts, 3)

    async def test_many_concurrent_joins(self) -> None:
        room_id = await self.lifecycle.create_room("host", "easy", TimerPolicy.untimed())
        results = await asyncio.gather(
            *(self.lifecycle.join_room(room_id, f"guest-{i}") for i in range(6)),
            return_exceptions=True,
        )
        self.assertEqual(sum(1 for r in results if not isinstance(r, Exception)), 1)
        self.assertTrue(all(isinstance(r, RoomFull) for r in results if isinstance(r, Exception)))

    async def test_join_unknown_room(self) -> None:
        with self.assertRaises(RoomNotFound):
            await self.lifecycle.join_room("missing", "guest")

    async def test_start_requires_host_and_guest(self) -> None:
        room_id = await self.lifecycle.create_room("host", "easy", TimerPolicy.untimed())
        with self.assertRaises(StartRejected):
            await self.lifecycle.start_game(room_id, "host")
        await self.lifecycle.join_room(room_id, "guest")
        with self.assertRaises(StartRejected):
            await self.lifecycle.start_game(room_id, "guest")
        room = await self.lifecycle.start_game(room_id, "host")
        self.assertTrue(room.started)
        self.assertTrue((await self._room(room_id)).started)

    async def test_host_leaving_deletes_room(self) -> None:
        room_id = await self._started_room()
        await self.lifecycle.leave_room(room_id, "host")
        self.assertIsNone(await self.store.read(room_path(room_id)))
        # Leaving again is harmless.
        await self.lifecycle.leave_room(room_id, "guest")

    async def test_guest_leaving_mid_match_finishes_it(self) -> None:
        room_id = await self._started_room()
        await self.lifecycle.leave_room(room_id, "guest")
        room = await self._room(room_id)
        self.assertIsNone(room.guest_id)
        self.assertTrue(room.finished)
        self.assertEqual(room.finish_reason, "opponent_left")

    async def test_joinable_rooms(self) -> None:
        open_id = await self.lifecycle.create_room("host-1", "easy", TimerPolicy.untimed())
        full_id = await self.lifecycle.create_room("host-2", "medium", TimerPolicy.timed(60))
        await self.lifecycle.join_room(full_id, "guest")
        rooms = await self.lifecycle.find_joinable_rooms()
        self.assertEqual([r.room_id for r in rooms], [open_id])

    async def test_anonymous_identity_is_stable(self) -> None:
        first = await self.store.get_or_create_identity()
        self.assertTrue(first)
        self.assertEqual(await self.store.get_or_create_identity(), first)
        self.assertEqual(await InMemoryStore(identity="fixed").get_or_create_identity(), "fixed")


class TurnEngineTests(ProtocolTestCase):
    async def test_guest_cannot_reveal_on_hosts_turn(self) -> None:
        room_id = await self._started_room()
        before = await self.store.read(room_path(room_id))
        with self.assertRaises(NotYourTurn):
            await self.turns.reveal_tile(room_id, "guest", 0)
        self.assertEqual(await self.store.read(room_path(room_id)), before)

    async def test_opposing_simultaneous_reveals(self) -> None:
        room_id = await self._started_room()
        results = await asyncio.gather(
            self.turns.reveal_tile(room_id, "host", 0),
            self.turns.reveal_tile(room_id, "guest", 1),
            return_exceptions=True,
        )
        self.assertFalse(isinstance(results[0], Exception))
        self.assertIsInstance(results[1], NotYourTurn)
        self.assertEqual((await self._room(room_id)).pending_reveals, (0,))

    async def test_double_tap_same_tile(self) -> None:
        room_id = await self._started_room()
        results = await asyncio.gather(
            self.turns.reveal_tile(room_id, "host", 3),
            self.turns.reveal_tile(room_id, "host", 3),
            return_exceptions=True,
        )
        self.assertEqual(sum(1 for r in results if isinstance(r, InvalidTile)), 1)
        self.assertEqual((await self._room(room_id)).pending_reveals, (3,))

    async def test_reveal_cap_under_concurrency(self) -> None:
        room_id = await self._started_room()
        results = await asyncio.gather(
            *(self.turns.reveal_tile(room_id, "host", i) for i in range(4)),
            return_exceptions=True,
        )
        self.assertEqual(sum(1 for r in results if not isinstance(r, Exception)), 2)
        self.assertTrue(all(isinstance(r, TurnBusy) for r in results if isinstance(r, Exception)))
        room = await self._room(room_id)
        self.assertEqual(len(room.pending_reveals), 2)
        self.assertTrue(room.resolving)
        self.assertEqual(room.last_reveal_by, "host")

    async def test_reveal_unknown_room(self) -> None:
        with self.assertRaises(RoomNotFound):
            await self.turns.reveal_tile("missing", "host", 0)

    async def test_matching_pair_scenario(self) -> None:
        room_id = await self._started_room()
        a, b = (await self._pairs(room_id))[2]
        await self.turns.reveal_tile(room_id, "host", a)
        room = await self.turns.reveal_tile(room_id, "host", b)
        self.assertTrue(room.resolving)
        self.assertEqual(room.last_reveal_by, "host")

        self.assertIsNone(await self.resolver.resolve(room_id, "guest"))
        resolved = await self.resolver.resolve(room_id, "host")
        self.assertIsNotNone(resolved)
        room = await self._room(room_id)
        self.assertTrue(room.tile(a).matched and room.tile(b).matched)
        self.assertEqual(room.host_score, 1)
        self.assertEqual(room.turn_holder, "host")
        self.assertEqual(room.pending_reveals, ())
        self.assertFalse(room.resolving)

    async def test_mismatch_scenario(self) -> None:
        room_id = await self._started_room()
        pairs = await self._pairs(room_id)
        a, c = pairs[0][0], pairs[1][0]
        await self.turns.reveal_tile(room_id, "host", a)
        await self.turns.reveal_tile(room_id, "host", c)
        await self.resolver.resolve(room_id, "host")
        room = await self._room(room_id)
        self.assertFalse(room.tile(a).face_up)
        self.assertFalse(room.tile(c).face_up)
        self.assertEqual(room.turn_holder, "guest")
        self.assertEqual((room.host_score, room.guest_score), (0, 0))
        # A second resolve for the same turn is a no-op.
        self.assertIsNone(await self.resolver.resolve(room_id, "host"))

    async def test_full_match_terminates_with_monotonic_scores(self) -> None:
        room_id = await self._started_room()
        pairs = await self._pairs(room_id)
        last_scores = (0, 0)
        players = ["host", "guest"]
        # Each player misses once, then the host sweeps the board.
        for player, (a, c) in zip(players, [(pairs[0][0], pairs[1][0]), (pairs[0][0], pairs[2][0])]):
            await self.turns.reveal_tile(room_id, player, a)
            await self.turns.reveal_tile(room_id, player, c)
            await self.resolver.resolve(room_id, player)
        for a, b in pairs:
            room = await self._room(room_id)
            self.assertFalse(room.finished)
            await self.turns.reveal_tile(room_id, room.turn_holder, a)
            await self.turns.reveal_tile(room_id, room.turn_holder, b)
            await self.resolver.resolve(room_id, room.turn_holder)
            room = await self._room(room_id)
            scores = (room.host_score, room.guest_score)
            self.assertGreaterEqual(scores[0], last_scores[0])
            self.assertGreaterEqual(scores[1], last_scores[1])
            last_scores = scores
        room = await self._room(room_id)
        self.assertTrue(room.finished)
        self.assertEqual(room.finish_reason, "all_matched")
        self.assertEqual(last_scores, (4, 0))
        self.assertTrue(all(t.matched_by == "host" for t in room.board))


class WriterRaceTests(ProtocolTestCase):
    async def test_turn_pass_racing_second_reveal_stays_playable(self) -> None:
        room_id = await self._started_room()
        await self.turns.reveal_tile(room_id, "host", 0)
        await asyncio.gather(
            TimeoutWriter(self.store, FAST).force_turn_pass(room_id, "host"),
            self.turns.reveal_tile(room_id, "host", 1),
            return_exceptions=True,
        )
        room = await self._room(room_id)
        check_invariants(room)
        if room.resolving:
            self.assertEqual(room.pending_reveals, (0, 1))
            self.assertEqual(room.last_reveal_by, "host")
            self.assertIsNotNone(await self.resolver.resolve(room_id, "host"))
        else:
            self.assertEqual(room.turn_holder, "guest")
            self.assertEqual(room.pending_reveals, ())
            await self.turns.reveal_tile(room_id, "guest", 2)

    async def test_turn_pass_after_second_reveal_is_skipped(self) -> None:
        room_id = await self._started_room()
        pairs = await self._pairs(room_id)
        await self.turns.reveal_tile(room_id, "host", pairs[0][0])
        await self.turns.reveal_tile(room_id, "host", pairs[1][0])
        room = await TimeoutWriter(self.store, FAST).force_turn_pass(room_id, "host")
        self.assertTrue(room.resolving)
        self.assertEqual(room.turn_holder, "host")
        self.assertIsNone(await TimeoutWriter(self.store, FAST).force_turn_pass("missing", "host"))

    async def test_resolution_racing_expiry_keeps_match_finished(self) -> None:
        room_id = await self._started_room()
        a, b = (await self._pairs(room_id))[0]
        await self.turns.reveal_tile(room_id, "host", a)
        await self.turns.reveal_tile(room_id, "host", b)
        await asyncio.gather(
            TimeoutWriter(self.store, FAST).expire_match(room_id),
            self.resolver.resolve(room_id, "host"),
        )
        room = await self._room(room_id)
        self.assertTrue(room.finished)
        self.assertEqual(room.finish_reason, "time_expired")

    async def test_resolution_racing_guest_leave_keeps_forfeit(self) -> None:
        room_id = await self._started_room()
        a, b = (await self._pairs(room_id))[0]
        await self.turns.reveal_tile(room_id, "host", a)
        await self.turns.reveal_tile(room_id, "host", b)
        await asyncio.gather(
            self.lifecycle.leave_room(room_id, "guest"),
            self.resolver.resolve(room_id, "host"),
        )
        room = await self._room(room_id)
        self.assertTrue(room.finished)
        self.assertEqual(room.finish_reason, "opponent_left")
        self.assertIsNone(room.guest_id)

    async def test_resolution_racing_host_leave_keeps_room_deleted(self) -> None:
        room_id = await self._started_room()
        a, b = (await self._pairs(room_id))[0]
        await self.turns.reveal_tile(room_id, "host", a)
        await self.turns.reveal_tile(room_id, "host", b)
        # Whichever commits first, the resolver neither raises nor revives the room.
        await asyncio.gather(
            self.lifecycle.leave_room(room_id, "host"),
            self.resolver.resolve(room_id, "host"),
        )
        self.assertIsNone(await self.store.read(room_path(room_id)))


class ObserverTests(ProtocolTestCase):
    def _observer(self, room_id, my_id, resolver=None):
        return SessionObserver(self.store, room_id, my_id, resolver or self.resolver, FAST)

    async def test_phases_follow_lifecycle(self) -> None:
        room_id = await self.lifecycle.create_room("host", "easy", TimerPolicy.untimed())
        observer = self._observer(room_id, "host")
        phases = []
        observer.add_listener(lambda view: phases.append(view.phase))
        observer.start()
        await wait_until(lambda: observer.view.phase == SessionPhase.AWAITING_OPPONENT)
        await self.lifecycle.join_room(room_id, "guest")
        await wait_until(lambda: observer.view.phase == SessionPhase.READY)
        await self.lifecycle.start_game(room_id, "host")
        await wait_until(lambda: observer.view.phase == SessionPhase.MY_TURN)
        observer.close()
        self.assertEqual(
            phases,
            [SessionPhase.AWAITING_OPPONENT, SessionPhase.READY, SessionPhase.MY_TURN],
        )

    async def test_duplicate_snapshots_are_ignored(self) -> None:
        room_id = await self._started_room()
        observer = self._observer(room_id, "guest")
        seen = []
        observer.add_listener(seen.append)
        data = await self.store.read(room_path(room_id))
        observer.apply_snapshot(data)
        observer.apply_snapshot(dict(data))
        self.assertEqual(len(seen), 1)
        self.assertEqual(observer.view.phase, SessionPhase.OPPONENT_TURN)

    async def test_single_resolver_per_turn(self) -> None:
        room_id = await self._started_room()
        host_resolver = CountingResolver(self.store, FAST)
        guest_resolver = CountingResolver(self.store, FAST)
        host = self._observer(room_id, "host", host_resolver)
        guest = self._observer(room_id, "guest", guest_resolver)

        a, b = (await self._pairs(room_id))[1]
        await self.turns.reveal_tile(room_id, "host", a)
        await self.turns.reveal_tile(room_id, "host", b)
        data = await self.store.read(room_path(room_id))
        # Redelivered and slightly different snapshots of the same turn.
        for observer in (host, guest):
            observer.apply_snapshot(data)
            observer.apply_snapshot(dict(data))
            observer.apply_snapshot(dict(data, updatedAt=data["updatedAt"]))
        self.assertEqual(host.view.phase, SessionPhase.RESOLVING)

        await wait_until(lambda: host_resolver.calls == 1)
        await wait_until(lambda: not self.store.docs[room_path(room_id)]["resolving"])
        self.assertEqual(host_resolver.applied, 1)
        self.assertEqual(guest_resolver.calls, 0)
        room = await self._room(room_id)
        self.assertEqual(room.host_score, 1)

    async def test_resolution_flows_through_subscriptions(self) -> None:
        room_id = await self._started_room()
        host = self._observer(room_id, "host")
        guest = self._observer(room_id, "guest")
        host.start()
        guest.start()
        pairs = await self._pairs(room_id)
        await self.turns.reveal_tile(room_id, "host", pairs[0][0])
        await self.turns.reveal_tile(room_id, "host", pairs[1][0])
        await wait_until(
            lambda: guest.view.phase == SessionPhase.MY_TURN and host.view.phase == SessionPhase.OPPONENT_TURN
        )
        self.assertFalse(any(t.face_up for t in guest.view.tiles))
        host.close()
        guest.close()

    async def test_result_emitted_once(self) -> None:
        room_id = await self._started_room()
        observer = self._observer(room_id, "host")
        results = []
        observer.add_result_listener(results.append)
        observer.start()
        await wait_until(lambda: observer.view.phase == SessionPhase.MY_TURN)
        await TimeoutWriter(self.store, FAST).expire_match(room_id)
        await wait_until(lambda: observer.view.phase == SessionPhase.FINISHED)
        observer.apply_snapshot(await self.store.read(room_path(room_id)))
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].outcome, "draw")
        self.assertEqual(results[0].reason, "time_expired")

    async def test_guest_departure_declares_host_winner(self) -> None:
        room_id = await self._started_room()
        observer = self._observer(room_id, "host")
        observer.start()
        await wait_until(lambda: observer.view.phase == SessionPhase.MY_TURN)
        await self.lifecycle.leave_room(room_id, "guest")
        await wait_until(lambda: observer.view.terminal)
        self.assertEqual(observer.view.phase, SessionPhase.FINISHED)
        self.assertEqual(observer.view.outcome, "win")
        self.assertEqual(observer.view.reason, "opponent_left")

    async def test_room_deleted_aborts_session(self) -> None:
        room_id = await self._started_room()
        observer = self._observer(room_id, "guest")
        task = observer.start()
        await wait_until(lambda: observer.view.phase == SessionPhase.OPPONENT_TURN)
        await self.lifecycle.leave_room(room_id, "host")
        view = await asyncio.wait_for(task, 2.0)
        self.assertEqual(view.phase, SessionPhase.ABORTED)
        self.assertEqual(view.reason, "room_closed")
        # Terminal views never change.
        observer.apply_snapshot({"roomId": room_id})
        self.assertEqual(observer.view.phase, SessionPhase.ABORTED)

    async def test_subscription_recovers_after_outage(self) -> None:
        room_id = await self._started_room()
        observer = self._observer(room_id, "guest")
        observer.start()
        await wait_until(lambda: observer.view.phase == SessionPhase.OPPONENT_TURN)
        self.store.offline = True
        await asyncio.sleep(0.03)
        self.store.offline = False
        await self.turns.reveal_tile(room_id, "host", 5)
        await wait_until(lambda: any(t.tile_id == 5 and t.face_up for t in observer.view.tiles))
        observer.close()


class OnlineSessionTests(ProtocolTestCase):
    async def test_second_tap_while_in_flight_is_dropped(self) -> None:
        room_id = await self._started_room()
        session = OnlineSession(self.store, room_id, "host", FAST)
        first, second = await asyncio.gather(session.tap(0), session.tap(1))
        self.assertTrue(first)
        self.assertFalse(second)
        self.assertEqual((await self._room(room_id)).pending_reveals, (0,))

    async def test_rejected_tap_rolls_back(self) -> None:
        room_id = await self._started_room()
        session = OnlineSession(self.store, room_id, "guest", FAST)
        self.assertFalse(await session.tap(2))
        self.assertIsInstance(session.last_rejection, NotYourTurn)
        self.assertFalse(session.tile_visible(2))
        self.assertEqual(session.optimistic, set())

    async def test_turn_timer_passes_turn(self) -> None:
        room_id = await self._started_room()
        settings = SessionSettings(
            resolve_delay=0.0, turn_seconds=0.05, write_timeout=1.0, backoff_initial=0.01, backoff_max=0.05
        )
        session = OnlineSession(self.store, room_id, "host", settings)
        session.start()
        await self.turns.reveal_tile(room_id, "host", 0)
        await wait_until(lambda: self.store.docs[room_path(room_id)]["turnHolder"] == "guest")
        room = await self._room(room_id)
        self.assertEqual(room.pending_reveals, ())
        self.assertFalse(room.tile(0).face_up)
        # The opponent's late duplicate expiry does not hand the turn back.
        await TimeoutWriter(self.store, FAST).force_turn_pass(room_id, "host")
        self.assertEqual((await self._room(room_id)).turn_holder, "guest")
        session.leave()

    async def test_timed_match_expires(self) -> None:
        room_id = await self._started_room(timer_policy=TimerPolicy.timed(1))
        session = OnlineSession(self.store, room_id, "guest", FAST)
        session.start()
        await wait_until(lambda: session.view.phase == SessionPhase.FINISHED, timeout=3.0)
        self.assertEqual(session.view.reason, "time_expired")
        self.assertFalse(session.turn_clock.running)

    async def test_turn_clock_rearms_after_a_match(self) -> None:
        room_id = await self._started_room()
        settings = SessionSettings(
            resolve_delay=0.3, turn_seconds=0.1, write_timeout=1.0, backoff_initial=0.01, backoff_max=0.05
        )
        session = OnlineSession(self.store, room_id, "host", settings)
        session.start()
        await wait_until(lambda: session.view.phase == SessionPhase.MY_TURN)
        a, b = (await self._pairs(room_id))[0]
        self.assertTrue(await session.tap(a))
        self.assertTrue(await session.tap(b))
        # The first countdown runs out mid-resolution and is a no-op.
        await wait_until(lambda: self.store.docs[room_path(room_id)]["hostScore"] == 1)
        self.assertEqual(self.store.docs[room_path(room_id)]["turnHolder"], "host")
        await wait_until(lambda: self.store.docs[room_path(room_id)]["turnHolder"] == "guest")
        self.assertEqual((await self._room(room_id)).host_score, 1)
        await session.leave()

    async def test_leave_is_fire_and_forget(self) -> None:
        room_id = await self._started_room()
        host = OnlineSession(self.store, room_id, "host", FAST)
        guest = OnlineSession(self.store, room_id, "guest", FAST)
        host.start()
        guest.start()
        await wait_until(lambda: guest.view.phase == SessionPhase.OPPONENT_TURN)
        task = host.leave()
        self.assertFalse(task.done())
        await task
        await wait_until(lambda: guest.view.terminal)
        self.assertEqual(guest.view.reason, "room_closed")
        self.assertIsNone(await self.store.read(room_path(room_id)))

    async def test_leave_while_offline_does_not_raise(self) -> None:
        room_id = await self._started_room()
        session = OnlineSession(self.store, room_id, "guest", FAST)
        self.store.offline = True
        task = session.leave()
        await asyncio.gather(task, return_exceptions=True)
        self.assertIsInstance(task.exception(), StoreUnavailable)


if __name__ == "__main__":
    unittest.main()
