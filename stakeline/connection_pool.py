"""RPC endpoint pool with sticky fallback routing and exponential backoff."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import aiohttp
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment

from stakeline.errors import ConfigurationError, is_network_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_DELAY_SECONDS = 0.25
DEFAULT_MAX_DELAY_SECONDS = 30.0
HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class EndpointDescriptor:
    """One RPC URL at one commitment level."""
    url: str
    commitment: str = "confirmed"
    name: str = ""
    timeout_ms: int = 30000

    @property
    def label(self) -> str:
        host = self.name or self.url
        return f"{host}@{self.commitment}"


@dataclass
class PoolCursor:
    last_successful_index: int = 0


@dataclass
class PoolConnection:
    index: int
    descriptor: EndpointDescriptor
    client: Any
    failures: int = 0
    last_error: Optional[str] = None
    last_failure_at: Optional[float] = None


def _default_client_factory(descriptor: EndpointDescriptor) -> AsyncClient:
    return AsyncClient(
        descriptor.url,
        commitment=Commitment(descriptor.commitment),
        timeout=descriptor.timeout_ms / 1000,
    )


class ConnectionPool:
    """
    Ordered pool of endpoint x commitment connections.

    ``execute`` runs an operation against the connections starting at the
    last one that succeeded, wrapping around. Transient network failures
    move on to the next connection; anything else is rethrown immediately.
    When a whole pass fails the pass is repeated after an exponential
    backoff, up to ``max_retries`` passes in total.

    The connection list is fixed at construction. The last-successful
    cursor is a routing hint only, so concurrent callers may race on it
    without harm.
    """

    def __init__(
        self,
        endpoints: Sequence[EndpointDescriptor],
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
        client_factory: Optional[Callable[[EndpointDescriptor], Any]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if not endpoints:
            raise ConfigurationError("ConnectionPool needs at least one endpoint")
        if max_retries < 1:
            raise ConfigurationError(f"max_retries must be >= 1, got {max_retries}")

        factory = client_factory or _default_client_factory
        self._connections: Tuple[PoolConnection, ...] = tuple(
            PoolConnection(index=i, descriptor=descriptor, client=factory(descriptor))
            for i, descriptor in enumerate(endpoints)
        )
        self._cursor = PoolCursor()
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_config(cls, rpc_config, **kwargs) -> "ConnectionPool":
        """Build a pool from an ``RpcConfig``."""
        kwargs.setdefault("max_retries", rpc_config.max_retries)
        kwargs.setdefault("initial_delay", rpc_config.initial_delay_ms / 1000)
        return cls(rpc_config.descriptors(), **kwargs)

    def __len__(self) -> int:
        return len(self._connections)

    @property
    def connections(self) -> Tuple[PoolConnection, ...]:
        return self._connections

    @property
    def last_successful_index(self) -> int:
        return self._cursor.last_successful_index

    def get_connection(self) -> Any:
        """Client of the last connection that succeeded."""
        return self._connections[self._cursor.last_successful_index].client

    def backoff_delay(self, attempt: int, initial_delay: Optional[float] = None) -> float:
        """Delay before the pass following failed pass ``attempt`` (0-based)."""
        base = self.initial_delay if initial_delay is None else initial_delay
        return min(self.max_delay, base * (2 ** attempt))

    async def execute(
        self,
        operation: Callable[[Any], Awaitable[T]],
        *,
        max_retries: Optional[int] = None,
        initial_delay: Optional[float] = None,
        label: str = "rpc",
    ) -> T:
        """Run ``operation(client)`` with fallback across the pool.

        Raises the last transient error once every pass has failed, or the
        first non-transient error as soon as it is seen.
        """
        passes = self.max_retries if max_retries is None else max_retries
        if passes < 1:
            raise ConfigurationError(f"max_retries must be >= 1, got {passes}")
        count = len(self._connections)
        last_error: Optional[BaseException] = None

        for attempt in range(passes):
            start = self._cursor.last_successful_index
            for offset in range(count):
                index = (start + offset) % count
                connection = self._connections[index]
                try:
                    result = await operation(connection.client)
                except Exception as exc:
                    if not is_network_error(exc):
                        raise
                    last_error = exc
                    connection.failures += 1
                    connection.last_error = str(exc)
                    connection.last_failure_at = time.time()
                    logger.warning(
                        f"{label} failed on {connection.descriptor.label} "
                        f"(pass {attempt + 1}/{passes}): {exc}"
                    )
                    continue

                connection.failures = 0
                if index != self._cursor.last_successful_index:
                    logger.info(f"{label} now routed to {connection.descriptor.label}")
                self._cursor.last_successful_index = index
                return result

            if attempt < passes - 1:
                delay = self.backoff_delay(attempt, initial_delay)
                logger.info(
                    f"All {count} connections failed for {label}, "
                    f"retrying in {delay:.2f}s (pass {attempt + 2}/{passes})"
                )
                await self._sleep(delay)

        logger.error(f"{label} failed on every connection after {passes} passes: {last_error}")
        raise last_error

    async def _probe_health(
        self, session: aiohttp.ClientSession, descriptor: EndpointDescriptor
    ) -> Tuple[bool, Optional[str]]:
        payload = {"jsonrpc": "2.0", "id": 1, "method": "getHealth"}
        try:
            async with session.post(descriptor.url, json=payload) as resp:
                if resp.status != 200:
                    return False, f"HTTP {resp.status}"
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return False, str(exc) or type(exc).__name__
        if data.get("result") == "ok":
            return True, None
        error = data.get("error") or {}
        return False, error.get("message", "unhealthy")

    async def health_report(self, timeout_seconds: float = HEALTH_CHECK_TIMEOUT_SECONDS) -> Dict[str, Any]:
        """Probe each distinct URL with getHealth and summarise pool state."""
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        unique: Dict[str, EndpointDescriptor] = {}
        for connection in self._connections:
            unique.setdefault(connection.descriptor.url, connection.descriptor)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            results = await asyncio.gather(
                *(self._probe_health(session, descriptor) for descriptor in unique.values())
            )
        health = dict(zip(unique.keys(), results))

        statuses: List[Dict[str, Any]] = []
        for connection in self._connections:
            healthy, reason = health[connection.descriptor.url]
            statuses.append({
                **self._status_entry(connection),
                "healthy": healthy,
                "health_error": reason,
            })

        return {
            "endpoints": statuses,
            "total": len(statuses),
            "healthy": sum(1 for s in statuses if s["healthy"]),
            "last_successful_index": self._cursor.last_successful_index,
        }

    def _status_entry(self, connection: PoolConnection) -> Dict[str, Any]:
        url = connection.descriptor.url
        return {
            "index": connection.index,
            "name": connection.descriptor.name,
            "url": url[:50] + "..." if len(url) > 50 else url,
            "commitment": connection.descriptor.commitment,
            "failures": connection.failures,
            "last_error": connection.last_error,
        }

    def status(self) -> Dict[str, Any]:
        """Failure counters without touching the network."""
        return {
            "endpoints": [self._status_entry(c) for c in self._connections],
            "total": len(self._connections),
            "last_successful_index": self._cursor.last_successful_index,
        }

    async def close(self) -> None:
        for connection in self._connections:
            close = getattr(connection.client, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as exc:
                logger.debug(f"Error closing {connection.descriptor.label}: {exc}")

    async def __aenter__(self) -> "ConnectionPool":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
