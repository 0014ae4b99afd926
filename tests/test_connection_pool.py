"""Tests for the SSH connection pool"""

import asyncio

import asyncssh
import pytest

from pbdeploy.core.config_loader import PoolSettings
from pbdeploy.exceptions import (
    AuthenticationError,
    CommandTimeoutError,
    LockdownExpectedError,
    SSHConnectionError,
    SSHError,
)
from pbdeploy.models import AuthMode
from pbdeploy.services import CommandExecutor, ConnectionPool


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def run_pool(settings, connector, operation, clock=None):
    async def main():
        pool = ConnectionPool(settings, connector=connector, clock=clock or FakeClock())
        try:
            return await operation(pool)
        finally:
            await pool.shutdown()

    return asyncio.run(main())


def test_sessions_are_reused_per_identity(connector, pool_settings, setup_target):
    async def operation(pool):
        executor = CommandExecutor(pool)
        await executor.run(setup_target, True, "uptime")
        await executor.run(setup_target, True, "hostname")
        await executor.run(setup_target, False, "whoami")
        return pool.stats()

    stats = run_pool(pool_settings, connector, operation)

    assert [c["username"] for c in connector.calls] == ["root", "pocketbase"]
    assert stats["open"] == 2
    assert stats["created_total"] == 2


def test_privileged_identity_on_locked_target_is_expected_failure(connector, pool_settings, locked_target):
    async def operation(pool):
        with pytest.raises(LockdownExpectedError):
            await pool.acquire(locked_target, True)

    run_pool(pool_settings, connector, operation)
    assert connector.calls == []


def test_refused_connection_is_retried(connector, pool_settings, fresh_target):
    connector.failures = [ConnectionRefusedError("refused")]

    async def operation(pool):
        return await CommandExecutor(pool).run(fresh_target, True, "true")

    result = run_pool(pool_settings, connector, operation)

    assert result.is_success
    assert len(connector.calls) == 2


def test_retries_are_bounded(connector, pool_settings, fresh_target):
    connector.failures = [ConnectionRefusedError("refused")] * 5

    async def operation(pool):
        with pytest.raises(SSHConnectionError) as excinfo:
            await pool.acquire(fresh_target, True)
        return excinfo.value

    error = run_pool(pool_settings, connector, operation)

    assert error.refused
    assert error.retryable
    assert len(connector.calls) == pool_settings.max_retries


def test_rejected_credentials_are_not_retried(connector, pool_settings, fresh_target):
    connector.denied_users = {"root"}

    async def operation(pool):
        with pytest.raises(AuthenticationError) as excinfo:
            await pool.acquire(fresh_target, True)
        return excinfo.value

    error = run_pool(pool_settings, connector, operation)

    assert not error.retryable
    assert len(connector.calls) == 1
    assert "agent" in error.context


def test_key_file_is_tried_after_agent(connector, pool_settings, fresh_target, tmp_path):
    key = tmp_path / "id_ed25519"
    key.write_text("key")
    fresh_target.key_path = str(key)
    connector.failures = [asyncssh.PermissionDenied("agent key not authorized")]

    async def operation(pool):
        return await CommandExecutor(pool).run(fresh_target, True, "true")

    run_pool(pool_settings, connector, operation)

    assert len(connector.calls) == 2
    assert "client_keys" not in connector.calls[0]
    assert connector.calls[1]["client_keys"] == [str(key)]
    assert connector.calls[1]["agent_path"] is None


def test_key_file_mode_skips_agent(connector, pool_settings, fresh_target):
    fresh_target.auth_mode = AuthMode.KEY_FILE
    fresh_target.key_path = "/keys/deploy"

    async def operation(pool):
        await pool.acquire(fresh_target, True)

    run_pool(pool_settings, connector, operation)

    assert connector.calls[0]["client_keys"] == ["/keys/deploy"]


def test_host_keys_are_not_checked_unless_strict(connector, fresh_target):
    async def operation(pool):
        handle = await pool.acquire(fresh_target, True)
        await pool.release(handle)

    run_pool(PoolSettings(), connector, operation)
    assert connector.calls[0]["known_hosts"] is None

    connector.calls.clear()
    run_pool(PoolSettings(strict_host_keys=True), connector, operation)
    assert "known_hosts" not in connector.calls[0]


def test_transport_failure_condemns_session(connector, remote, pool_settings, setup_target):
    remote.drop_connection_on = "^reboot-now$"

    async def operation(pool):
        executor = CommandExecutor(pool)
        await executor.run(setup_target, True, "true")
        with pytest.raises(SSHConnectionError):
            await executor.run(setup_target, True, "reboot-now")
        await executor.run(setup_target, True, "true")
        return pool.condemned_total

    condemned = run_pool(pool_settings, connector, operation)

    assert condemned == 1
    assert len(connector.calls) == 2
    assert connector.connections[0].closed


def test_timeout_keeps_session_reusable(connector, pool_settings, setup_target):
    async def operation(pool):
        executor = CommandExecutor(pool)
        await executor.run(setup_target, True, "true")
        connector.connections[0].run_delay = 1
        with pytest.raises(CommandTimeoutError):
            await executor.run(setup_target, True, "sleep 60", timeout=0.05)
        pooled = pool.get(setup_target.connection_key(True))
        return pooled

    pooled = run_pool(pool_settings, connector, operation)

    assert pooled is not None
    assert pooled.is_reusable
    assert len(connector.calls) == 1


def test_one_caller_at_a_time_per_session(connector, pool_settings, setup_target):
    active = []
    peak = []

    async def operation(pool):
        async def use():
            handle = await pool.acquire(setup_target, True)
            active.append(handle)
            peak.append(len(active))
            await asyncio.sleep(0.01)
            active.remove(handle)
            await pool.release(handle)

        await asyncio.gather(use(), use(), use())

    run_pool(pool_settings, connector, operation)

    assert max(peak) == 1
    assert len(connector.calls) == 1


def test_idle_session_is_evicted_at_capacity(connector, setup_target):
    settings = PoolSettings(max_connections=1, max_retries=1, retry_delay=0)

    async def operation(pool):
        handle = await pool.acquire(setup_target, True)
        await pool.release(handle)
        handle = await pool.acquire(setup_target, False)
        await pool.release(handle)
        return pool.stats()

    stats = run_pool(settings, connector, operation)

    assert stats["open"] == 1
    assert stats["evicted_total"] == 1
    assert connector.connections[0].closed


def test_capacity_waits_for_release(connector, setup_target):
    settings = PoolSettings(max_connections=1, max_retries=1, retry_delay=0)
    order = []

    async def operation(pool):
        first = await pool.acquire(setup_target, True)

        async def second():
            handle = await pool.acquire(setup_target, False)
            order.append("second acquired")
            await pool.release(handle)

        waiter = asyncio.ensure_future(second())
        await asyncio.sleep(0.01)
        order.append("releasing first")
        await pool.release(first)
        await waiter

    run_pool(settings, connector, operation)

    assert order == ["releasing first", "second acquired"]


def test_shutdown_wakes_callers_waiting_for_capacity(connector, setup_target):
    settings = PoolSettings(max_connections=1, max_retries=1, retry_delay=0)

    async def operation(pool):
        await pool.acquire(setup_target, True)
        waiter = asyncio.ensure_future(pool.acquire(setup_target, False))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        await pool.shutdown()
        with pytest.raises(SSHError, match="shut down"):
            await asyncio.wait_for(waiter, timeout=1)

    run_pool(settings, connector, operation)

    assert [c["username"] for c in connector.calls] == ["root"]


def test_health_check_condemns_after_threshold(connector, remote, pool_settings, setup_target):
    remote.fail("^true$")

    async def operation(pool):
        handle = await pool.acquire(setup_target, True)
        await pool.release(handle)
        reports = [await pool.health_check() for _ in range(pool_settings.health_failure_threshold)]
        return reports, pool.get(setup_target.connection_key(True))

    reports, pooled = run_pool(pool_settings, connector, operation)

    assert reports[0]["condemned"] == []
    assert reports[-1]["condemned"] == ["203.0.113.10:22:root"]
    assert pooled is None


def test_health_check_skips_checked_out_sessions(connector, pool_settings, setup_target):
    async def operation(pool):
        handle = await pool.acquire(setup_target, True)
        report = await pool.health_check()
        await pool.release(handle)
        return report

    report = run_pool(pool_settings, connector, operation)
    assert report["skipped"] == 1
    assert report["checked"] == 0


def test_session_past_age_ceiling_is_replaced(connector, pool_settings, setup_target):
    clock = FakeClock()

    async def operation(pool):
        handle = await pool.acquire(setup_target, True)
        await pool.release(handle)
        clock.now += pool_settings.max_lifetime + 1
        handle = await pool.acquire(setup_target, True)
        await pool.release(handle)

    run_pool(pool_settings, connector, operation, clock=clock)

    assert len(connector.calls) == 2
    assert connector.connections[0].closed


def test_cleanup_closes_idle_sessions(connector, pool_settings, setup_target):
    clock = FakeClock()

    async def operation(pool):
        handle = await pool.acquire(setup_target, True)
        await pool.release(handle)
        clock.now += pool_settings.max_idle_time + 1
        return await pool.cleanup_idle()

    evicted = run_pool(pool_settings, connector, operation, clock=clock)

    assert evicted == ["203.0.113.10:22:root"]


def test_evict_closes_idle_session(connector, pool_settings, setup_target):
    async def operation(pool):
        handle = await pool.acquire(setup_target, True)
        await pool.release(handle)
        closed = await pool.evict(setup_target.connection_key(True))
        again = await pool.evict(setup_target.connection_key(True))
        return closed, again

    assert run_pool(pool_settings, connector, operation) == (True, False)


def test_shutdown_is_idempotent_and_final(connector, pool_settings, setup_target):
    async def operation(pool):
        pool.start()
        handle = await pool.acquire(setup_target, True)
        await pool.release(handle)
        await pool.shutdown()
        await pool.shutdown()
        with pytest.raises(SSHError):
            await pool.acquire(setup_target, True)
        return pool.stats()

    stats = run_pool(pool_settings, connector, operation)

    assert stats["open"] == 0
    assert connector.connections[0].closed
