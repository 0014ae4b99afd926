"""SSH connection pool built on asyncssh."""

import asyncio
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import asyncssh

from pbdeploy.constants import (
    HEALTH_CHECK_COMMAND,
    HEALTH_CHECK_TIMEOUT,
    SSH_AUTH_SOCK_ENV,
)
from pbdeploy.core.config_loader import PoolSettings
from pbdeploy.exceptions import (
    AuthenticationError,
    ConfigurationError,
    LockdownExpectedError,
    SSHConnectionError,
    SSHError,
)
from pbdeploy.logger import DeployLogger
from pbdeploy.models.connection import PooledConnection
from pbdeploy.models.server import AuthMode, ConnectionKey, ServerTarget

Connector = Callable[..., Awaitable[Any]]


@dataclass
class ConnectionHandle:
    """A checked-out pooled connection. Return it with ConnectionPool.release()."""

    pooled: PooledConnection
    target: ServerTarget
    released: bool = False

    @property
    def connection(self) -> Any:
        return self.pooled.connection

    @property
    def key(self) -> ConnectionKey:
        return self.pooled.key


class ConnectionPool:
    """
    Keyed pool of authenticated SSH sessions.

    One session per (host, port, username). A per-key lock is held for the
    whole checkout, so a session is never shared by two callers. Opening a
    session reserves one of max_connections slots; when all slots are taken
    the least recently used idle session is closed, otherwise acquisition
    waits for a release.
    """

    def __init__(
        self,
        settings: Optional[PoolSettings] = None,
        connector: Optional[Connector] = None,
        logger: Optional[DeployLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the pool.

        Args:
            settings: Pool limits and timers
            connector: Coroutine opening a session (default: asyncssh.connect)
            logger: Optional DeployLogger for pool events
            clock: Monotonic clock used for idle and age bookkeeping
        """
        self.settings = settings or PoolSettings()
        self._connector = connector or asyncssh.connect
        self.logger = logger
        self._clock = clock

        self._connections: Dict[ConnectionKey, PooledConnection] = {}
        self._key_locks: Dict[ConnectionKey, asyncio.Lock] = {}
        self._capacity = asyncio.Condition()
        self._open_slots = 0
        self._monitor_task: Optional[asyncio.Task] = None
        self._last_cleanup = clock()
        self._closed = False

        self.created_total = 0
        self.condemned_total = 0
        self.evicted_total = 0

    async def __aenter__(self) -> "ConnectionPool":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False

    def _log(self, message: str, level: str = "DEBUG") -> None:
        if self.logger:
            self.logger.log(message, level)

    # Acquisition

    async def acquire(self, target: ServerTarget, as_privileged: bool) -> ConnectionHandle:
        """
        Check out a session for target as the privileged or unprivileged identity.

        Raises:
            LockdownExpectedError: privileged identity on a locked target
            AuthenticationError: every credential was rejected
            SSHConnectionError: host unreachable after bounded retries
        """
        if self._closed:
            raise SSHError("Connection pool is shut down")

        key = target.connection_key(as_privileged)
        if as_privileged and target.security_locked:
            raise LockdownExpectedError(target.host, key.username)

        lock = self._key_locks.setdefault(key, asyncio.Lock())
        await lock.acquire()
        try:
            pooled = self._connections.get(key)
            if pooled is not None and not self._reusable(pooled):
                await self._discard(pooled, "not reusable")
                pooled = None

            if pooled is None:
                pooled = await self._open(target, key)

            pooled.checkout(self._clock())
            return ConnectionHandle(pooled=pooled, target=target)
        except BaseException:
            lock.release()
            raise

    async def release(self, handle: ConnectionHandle, broken: bool = False) -> None:
        """
        Return a checked-out session.

        Args:
            handle: Handle from acquire()
            broken: The transport failed; condemn and close the session
        """
        if handle.released:
            return
        handle.released = True
        pooled = handle.pooled

        try:
            if broken:
                pooled.condemn()
                self.condemned_total += 1
                await self._discard(pooled, "transport failure")
            elif pooled.is_condemned:
                await self._discard(pooled, "condemned while in use")
            else:
                pooled.checkin(self._clock())
        finally:
            self._key_locks[pooled.key].release()

        async with self._capacity:
            self._capacity.notify_all()

    @asynccontextmanager
    async def connection(self, target: ServerTarget, as_privileged: bool):
        """Acquire/release around a block; transport errors condemn the session."""
        handle = await self.acquire(target, as_privileged)
        broken = False
        try:
            yield handle
        except (OSError, asyncssh.Error):
            broken = True
            raise
        finally:
            await self.release(handle, broken=broken)

    def _reusable(self, pooled: PooledConnection) -> bool:
        if not pooled.is_reusable:
            return False
        return pooled.age(self._clock()) < self.settings.max_lifetime

    # Opening sessions

    async def _open(self, target: ServerTarget, key: ConnectionKey) -> PooledConnection:
        await self._reserve_slot()
        try:
            connection = await self._connect_with_retry(target, key.username)
        except BaseException:
            await self._release_slot()
            raise

        now = self._clock()
        pooled = PooledConnection(key=key, connection=connection, created_at=now, last_used=now)
        self._connections[key] = pooled
        self.created_total += 1
        self._log(f"Opened SSH session {key}")
        return pooled

    async def _reserve_slot(self) -> None:
        victims: List[PooledConnection] = []
        async with self._capacity:
            while not self._closed and self._open_slots >= self.settings.max_connections:
                victim = self._idle_victim()
                if victim is not None:
                    self._forget(victim)
                    self._open_slots -= 1
                    victims.append(victim)
                    continue
                await self._capacity.wait()
            closed = self._closed
            if not closed:
                self._open_slots += 1

        for victim in victims:
            self.evicted_total += 1
            self._log(f"Evicted idle session {victim.key} to make room")
            await self._close_transport(victim)

        if closed:
            raise SSHError("Connection pool is shut down")

    async def _release_slot(self) -> None:
        async with self._capacity:
            self._open_slots -= 1
            self._capacity.notify_all()

    def _idle_victim(self) -> Optional[PooledConnection]:
        idle = [
            pooled
            for key, pooled in self._connections.items()
            if pooled.is_reusable and not self._key_locks[key].locked()
        ]
        if not idle:
            return None
        return min(idle, key=lambda pooled: pooled.last_used)

    async def _connect_with_retry(self, target: ServerTarget, username: str) -> Any:
        """
        Connect with bounded retries and linear backoff.

        Only transient connection failures are retried; rejected credentials
        fail immediately.
        """
        attempts = max(1, self.settings.max_retries)
        last_error: Optional[SSHConnectionError] = None

        for attempt in range(1, attempts + 1):
            try:
                return await self._authenticate(target, username)
            except SSHConnectionError as e:
                last_error = e
                if attempt == attempts:
                    break
                delay = self.settings.retry_delay * attempt
                self._log(
                    f"Connection attempt {attempt}/{attempts} to {target.host}:{target.port} failed, retrying in {delay}s",
                    "WARNING",
                )
                await asyncio.sleep(delay)

        raise last_error

    def _auth_methods(self, target: ServerTarget) -> List[Tuple[str, Dict[str, Any]]]:
        methods: List[Tuple[str, Dict[str, Any]]] = []

        if target.auth_mode == AuthMode.AGENT:
            agent_path = os.environ.get(SSH_AUTH_SOCK_ENV)
            methods.append(("agent", {"agent_path": agent_path} if agent_path else {}))

        if target.key_path:
            key_path = os.path.expanduser(target.key_path)
            methods.append(("key_file", {"client_keys": [key_path], "agent_path": None}))

        if not methods:
            raise ConfigurationError(
                f"No SSH authentication method configured for {target.name}",
                "Use agent authentication or set a private key path",
            )
        return methods

    async def _authenticate(self, target: ServerTarget, username: str) -> Any:
        denied: List[str] = []

        for label, options in self._auth_methods(target):
            try:
                return await self._dial(target, username, options)
            except asyncssh.PermissionDenied as e:
                self._log(f"{label} authentication rejected for {username}@{target.host}", "WARNING")
                denied.append(f"{label}: {e.reason}")

        raise AuthenticationError(
            f"Authentication failed for {username}@{target.host}",
            "; ".join(denied),
        )

    async def _dial(self, target: ServerTarget, username: str, options: Dict[str, Any]) -> Any:
        connect_options = dict(options)
        connect_options["keepalive_interval"] = self.settings.keepalive_interval
        if not self.settings.strict_host_keys:
            connect_options["known_hosts"] = None

        context = f"Host: {target.host}:{target.port}, User: {username}"
        try:
            return await asyncio.wait_for(
                self._connector(
                    target.host,
                    port=target.port,
                    username=username,
                    **connect_options,
                ),
                timeout=self.settings.connect_timeout,
            )
        except asyncssh.PermissionDenied:
            raise
        except asyncssh.HostKeyNotVerifiable as e:
            raise SSHError("Host key verification failed", f"{context}, {e.reason}")
        except asyncio.TimeoutError:
            raise SSHConnectionError(
                f"Connection timed out after {self.settings.connect_timeout}s", context
            )
        except ConnectionRefusedError as e:
            raise SSHConnectionError(f"Connection refused by {target.host}", f"{context}, {e}", refused=True)
        except (OSError, asyncssh.Error) as e:
            raise SSHConnectionError(f"Cannot connect to {target.host}", f"{context}, {e}")

    # Eviction

    def _forget(self, pooled: PooledConnection) -> None:
        if self._connections.get(pooled.key) is pooled:
            del self._connections[pooled.key]

    async def _close_transport(self, pooled: PooledConnection) -> None:
        try:
            pooled.connection.close()
            await pooled.connection.wait_closed()
        except (OSError, asyncssh.Error) as e:
            self._log(f"Error closing session {pooled.key}: {e}", "WARNING")

    async def _discard(self, pooled: PooledConnection, reason: str) -> None:
        if self._connections.get(pooled.key) is not pooled:
            return
        pooled.condemn()
        self._forget(pooled)
        self._log(f"Closing session {pooled.key} ({reason})")
        await self._close_transport(pooled)
        await self._release_slot()

    async def _probe(self, pooled: PooledConnection) -> bool:
        try:
            result = await asyncio.wait_for(
                pooled.connection.run(HEALTH_CHECK_COMMAND, check=False),
                timeout=HEALTH_CHECK_TIMEOUT,
            )
        except (asyncio.TimeoutError, OSError, asyncssh.Error):
            return False
        return result.exit_status == 0

    async def health_check(self) -> Dict[str, Any]:
        """
        Probe every idle session once.

        Sessions past the age ceiling are evicted without probing; a session
        failing health_failure_threshold consecutive probes is condemned.
        Sessions currently checked out are skipped.

        Returns:
            Report with checked/healthy/skipped counts and condemned/evicted keys
        """
        report: Dict[str, Any] = {
            "checked": 0,
            "healthy": 0,
            "skipped": 0,
            "condemned": [],
            "evicted": [],
        }

        for key, pooled in list(self._connections.items()):
            lock = self._key_locks[key]
            if lock.locked():
                report["skipped"] += 1
                continue

            async with lock:
                if self._connections.get(key) is not pooled:
                    continue

                if pooled.age(self._clock()) >= self.settings.max_lifetime:
                    self.evicted_total += 1
                    await self._discard(pooled, "age ceiling reached")
                    report["evicted"].append(str(key))
                    continue

                healthy = await self._probe(pooled)
                report["checked"] += 1
                if pooled.record_health(healthy, self.settings.health_failure_threshold):
                    self.condemned_total += 1
                    await self._discard(pooled, "failed health checks")
                    report["condemned"].append(str(key))
                elif healthy:
                    report["healthy"] += 1
                else:
                    self._log(
                        f"Health check failed for {key} ({pooled.consecutive_failures} consecutive)",
                        "WARNING",
                    )

        return report

    async def evict(self, key: ConnectionKey) -> bool:
        """Close the session for key once it is idle. Returns True if one was closed."""
        pooled = self._connections.get(key)
        if pooled is None:
            return False
        async with self._key_locks[key]:
            if self._connections.get(key) is not pooled:
                return False
            self.evicted_total += 1
            await self._discard(pooled, "evicted")
            return True

    async def cleanup_idle(self) -> List[str]:
        """Close sessions idle longer than max_idle_time."""
        evicted = []
        now = self._clock()
        for key, pooled in list(self._connections.items()):
            lock = self._key_locks[key]
            if lock.locked() or pooled.idle_for(now) < self.settings.max_idle_time:
                continue
            async with lock:
                if self._connections.get(key) is pooled:
                    self.evicted_total += 1
                    await self._discard(pooled, "idle timeout")
                    evicted.append(str(key))
        self._last_cleanup = self._clock()
        return evicted

    # Lifecycle

    def start(self) -> None:
        """Start the background health monitor. Needs a running event loop."""
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.get_running_loop().create_task(self._monitor())

    async def _monitor(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_check_interval)
            try:
                await self.health_check()
                if self._clock() - self._last_cleanup >= self.settings.cleanup_interval:
                    await self.cleanup_idle()
            except SSHError as e:
                self._log(f"Pool maintenance failed: {e}", "ERROR")

    async def shutdown(self) -> None:
        """Stop the monitor and close every session. Safe to call twice."""
        self._closed = True
        async with self._capacity:
            # Waiters for a free slot see _closed and give up
            self._capacity.notify_all()

        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

        for pooled in list(self._connections.values()):
            self._forget(pooled)
            pooled.condemn()
            await self._close_transport(pooled)
        self._open_slots = 0

    def stats(self) -> Dict[str, Any]:
        in_use = sum(1 for key in self._connections if self._key_locks[key].locked())
        return {
            "open": len(self._connections),
            "in_use": in_use,
            "idle": len(self._connections) - in_use,
            "max": self.settings.max_connections,
            "created_total": self.created_total,
            "condemned_total": self.condemned_total,
            "evicted_total": self.evicted_total,
        }

    def get(self, key: ConnectionKey) -> Optional[PooledConnection]:
        return self._connections.get(key)
