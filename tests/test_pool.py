"""Tests for AddressPool lifecycle, round-robin and reconciliation."""
import asyncio
import threading

import pytest

from conftest import FakeController, make_pool
from rotor_relay.pool import PoolState


def run(coro):
    return asyncio.run(coro)


class TestNext:

    def test_round_robin_in_insertion_order(self):
        async def scenario():
            pool = make_pool(desired_size=3, batch_size=3)
            assert await pool.start() is True
            addrs = pool.addresses
            got = [pool.next() for _ in range(7)]
            await pool.stop()
            return addrs, got

        addrs, got = run(scenario())
        assert len(addrs) == 3
        assert got[:3] == addrs
        assert got[3:6] == addrs
        assert got[6] == addrs[0]

    def test_not_running_returns_none(self):
        pool = make_pool()
        assert pool.next() is None

    def test_after_stop_returns_none(self):
        async def scenario():
            pool = make_pool()
            await pool.start()
            await pool.stop()
            return pool.next()

        assert run(scenario()) is None

    def test_skips_invalid_entry(self):
        async def scenario():
            pool = make_pool(desired_size=2, batch_size=2)
            await pool.start()
            good = pool.addresses
            pool._addresses = ["not-an-ip"] + good
            pool._cursor = 0
            first, second, third = pool.next(), pool.next(), pool.next()
            await pool.stop()
            return good, (first, second, third)

        good, got = run(scenario())
        assert got == (good[0], good[1], good[0])

    def test_all_invalid_is_empty(self):
        async def scenario():
            pool = make_pool()
            await pool.start()
            pool._addresses = ["bogus", "10.0.0.1", ""]
            pool._cursor = 1
            res = pool.next()
            pool._addresses = []
            await pool.stop()
            return res

        assert run(scenario()) is None


class TestLifecycle:

    def test_unconfigured_is_noop(self):
        ctl = FakeController()
        pool = make_pool(ctl, prefix="", subnet="")
        assert run(pool.start()) is False
        assert ctl.up_checks == 0
        assert pool.state is PoolState.UNINITIALIZED

    def test_interface_down(self):
        ctl = FakeController(up=False)
        pool = make_pool(ctl)
        assert run(pool.start()) is False
        assert pool.state is PoolState.UNINITIALIZED
        assert ctl.added == []

    def test_start_fills_first_batch(self):
        async def scenario():
            pool = make_pool(desired_size=3, batch_size=2)
            ok = await pool.start()
            state, size = pool.state, len(pool)
            await pool.stop()
            return ok, state, size

        assert run(scenario()) == (True, PoolState.RUNNING, 2)

    def test_start_twice_is_true(self):
        async def scenario():
            pool = make_pool()
            await pool.start()
            again = await pool.start()
            size = len(pool)
            await pool.stop()
            return again, size

        assert run(scenario()) == (True, 2)

    def test_stop_drains_despite_failures(self):
        ctl = FakeController(remove_ok=False)

        async def scenario():
            pool = make_pool(ctl, desired_size=3, batch_size=3)
            await pool.start()
            before = pool.addresses
            await pool.stop()
            return pool, before

        pool, before = run(scenario())
        assert len(before) == 3
        assert ctl.removed == before
        assert pool.addresses == []
        assert pool._cursor == 0
        assert pool.state is PoolState.STOPPED

    def test_stop_twice_and_before_start(self):
        ctl = FakeController()

        async def scenario():
            pool = make_pool(ctl)
            await pool.stop()
            assert pool.state is PoolState.UNINITIALIZED
            await pool.start()
            await pool.stop()
            removed = list(ctl.removed)
            await pool.stop()
            return pool, removed

        pool, removed = run(scenario())
        assert ctl.removed == removed
        assert pool.state is PoolState.STOPPED

    def test_start_after_stop_raises(self):
        async def scenario():
            pool = make_pool()
            await pool.start()
            await pool.stop()
            with pytest.raises(RuntimeError, match="create a new instance"):
                await pool.start()

        run(scenario())

    def test_status(self):
        async def scenario():
            pool = make_pool()
            idle = pool.status().to_dict()
            await pool.start()
            live = pool.status().to_dict()
            await pool.stop()
            return idle, live

        idle, live = run(scenario())
        assert idle == {"enabled": False, "poolSize": 0, "interface": "test0", "prefix": "2001:db8:1234"}
        assert live["enabled"] is True
        assert live["poolSize"] == 2


class TestReconcile:

    def test_growth_scenario(self):
        async def scenario():
            pool = make_pool(desired_size=3, batch_size=2)
            await pool.start()
            after_first = len(pool)
            res = await pool.reconcile()
            after_second = len(pool)
            await pool.stop()
            return after_first, after_second, res

        first, second, res = run(scenario())
        assert (first, second) == (2, 3)
        assert len(res.added) == 1 and res.removed == []

    def test_replacement_scenario(self):
        async def scenario():
            pool = make_pool(desired_size=5, batch_size=2)
            await pool.start()
            await pool.reconcile()
            await pool.reconcile()
            full = pool.addresses
            replace = await pool.reconcile()
            shrunk = pool.addresses
            regrow = await pool.reconcile()
            final = pool.addresses
            await pool.stop()
            return full, replace, shrunk, regrow, final

        full, replace, shrunk, regrow, final = run(scenario())
        assert len(full) == 5
        assert replace.removed == full[:2] and replace.added == []
        assert shrunk == full[2:]
        assert len(regrow.added) == 2 and regrow.removed == []
        assert final[:3] == full[2:]
        assert final[3:] == regrow.added

    def test_passes_never_add_and_remove(self):
        async def scenario():
            pool = make_pool(desired_size=4, batch_size=3)
            await pool.start()
            seen = []
            for _ in range(8):
                res = await pool.reconcile()
                seen.append((res, len(pool)))
            await pool.stop()
            return seen

        for res, size in run(scenario()):
            assert not (res.added and res.removed)
            assert size <= 4

    def test_failed_adds_not_appended(self):
        ctl = FakeController(add_results=[True, False, True])

        async def scenario():
            pool = make_pool(ctl, desired_size=3, batch_size=3)
            await pool.start()
            addrs = pool.addresses
            await pool.stop()
            return addrs

        addrs = run(scenario())
        assert len(ctl.added) == 3
        assert addrs == [ctl.added[0], ctl.added[2]]

    def test_cursor_reset_after_shrink(self):
        async def scenario():
            pool = make_pool(desired_size=3, batch_size=2)
            await pool.start()
            await pool.reconcile()
            pool._cursor = 2
            await pool.reconcile()
            cursor, size = pool._cursor, len(pool)
            await pool.stop()
            return cursor, size

        assert run(scenario()) == (0, 1)

    def test_overlapping_pass_is_dropped(self):
        ctl = FakeController()
        gate = threading.Event()

        async def scenario():
            pool = make_pool(ctl, desired_size=3, batch_size=2)
            await pool.start()
            ctl.add_gate = gate
            first = asyncio.create_task(pool.reconcile())
            while not pool._pass_lock.locked():
                await asyncio.sleep(0)
            second = await pool.reconcile()
            gate.set()
            res = await first
            await pool.stop()
            return second, res

        second, res = run(scenario())
        assert second is None
        assert len(res.added) == 1

    def test_reconcile_when_not_running(self):
        pool = make_pool()
        assert run(pool.reconcile()) is None

    def test_stop_waits_for_in_flight_pass(self):
        ctl = FakeController()
        gate = threading.Event()

        async def scenario():
            pool = make_pool(ctl, desired_size=3, batch_size=2)
            await pool.start()
            ctl.add_gate = gate
            inflight = asyncio.create_task(pool.reconcile())
            while not pool._pass_lock.locked():
                await asyncio.sleep(0)
            stopping = asyncio.create_task(pool.stop())
            await asyncio.sleep(0)
            gate.set()
            await inflight
            await stopping
            return pool

        pool = run(scenario())
        assert pool.addresses == []
        assert sorted(ctl.removed) == sorted(ctl.added)

    def test_concurrent_start_schedules_one_loop(self):
        ctl = FakeController()

        async def scenario():
            pool = make_pool(ctl)
            results = await asyncio.gather(pool.start(), pool.start())
            loops = [t for t in asyncio.all_tasks() if t.get_name() == "rotor-reconcile"]
            await pool.stop()
            await asyncio.sleep(0)
            leftover = [t for t in asyncio.all_tasks() if t.get_name() == "rotor-reconcile"]
            return results, len(loops), leftover, ctl.up_checks

        results, loops, leftover, up_checks = run(scenario())
        assert sorted(results) == [False, True]
        assert loops == 1
        assert leftover == []
        assert up_checks == 1

    def test_interface_down_allows_retry(self):
        ctl = FakeController(up=False)

        async def scenario():
            pool = make_pool(ctl)
            first = await pool.start()
            ctl.up = True
            second = await pool.start()
            await pool.stop()
            return first, second

        assert run(scenario()) == (False, True)


class TestLoop:

    def test_loop_reaches_desired_size_and_rotates(self):
        ctl = FakeController()

        async def scenario():
            pool = make_pool(ctl, desired_size=4, batch_size=2, reconcile_interval_ms=100)
            await pool.start()
            start_size = len(pool)
            reached = False
            for _ in range(60):
                await asyncio.sleep(0.05)
                if len(pool) == 4:
                    reached = True
                if reached and ctl.removed:
                    break
            rotated = list(ctl.removed)
            await pool.stop()
            return pool, start_size, reached, rotated

        pool, start_size, reached, rotated = run(scenario())
        assert start_size == 2
        assert reached
        # the oldest batch went first
        assert rotated[:2] == ctl.added[:2]
        assert pool._task is None
        assert sorted(ctl.removed) == sorted(ctl.added)

    def test_stop_during_scheduled_pass_drains_its_additions(self):
        ctl = FakeController()
        gate = threading.Event()

        async def scenario():
            pool = make_pool(ctl, desired_size=3, batch_size=1, reconcile_interval_ms=100)
            await pool.start()
            ctl.add_gate = gate
            for _ in range(100):
                if pool._pass_lock.locked():
                    break
                await asyncio.sleep(0.01)
            in_pass = pool._pass_lock.locked()
            stopping = asyncio.create_task(pool.stop())
            await asyncio.sleep(0.05)
            gate.set()
            await stopping
            return pool, in_pass

        pool, in_pass = run(scenario())
        assert in_pass
        assert len(ctl.added) == 2
        assert pool._task is None
        assert pool.addresses == []
        assert sorted(ctl.removed) == sorted(ctl.added)
