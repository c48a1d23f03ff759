"""Failover-aware pool of upstream JSON-RPC endpoints."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar, Union
from urllib.parse import urlsplit, urlunsplit

import aiohttp

import constants

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RpcError(Exception):
    """Base class for upstream RPC failures."""


class RpcCallError(RpcError):
    """The node answered with a JSON-RPC error payload (e.g. execution reverted)."""

    def __init__(self, method: str, error: Any) -> None:
        self.method = method
        self.code = error.get('code') if isinstance(error, dict) else None
        detail = error.get('message', error) if isinstance(error, dict) else error
        super().__init__(f"{method}: {detail}")


class NoHealthyEndpointsError(RpcError):
    """No candidate endpoint passed the liveness probe."""


class EndpointPoolExhausted(RpcError):
    """A full rotation through the pool failed to produce a working endpoint."""


TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError)


@dataclass(frozen=True)
class TimedOut:
    """Result of a bounded operation that did not finish in time."""
    operation: str
    timeout: float


async def run_bounded(awaitable: Awaitable[T], timeout: float, operation: str = 'call') -> Union[T, TimedOut]:
    """Await ``awaitable`` for at most ``timeout`` seconds, returning ``TimedOut`` instead of raising."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        return TimedOut(operation, timeout)


def redact_url(url: str) -> str:
    """Hides API keys embedded in provider URLs."""
    parsed = urlsplit(url)
    segments = ['***' if len(segment) >= 20 else segment for segment in parsed.path.split('/')]
    return urlunsplit(parsed._replace(path='/'.join(segments), query=''))


@dataclass
class Endpoint:
    url: str
    healthy: bool = True
    consecutive_failures: int = 0
    last_block: Optional[int] = None
    latency: Optional[float] = None

    @property
    def display_url(self) -> str:
        return redact_url(self.url)

    def mark_success(self, block: Optional[int] = None) -> None:
        self.healthy = True
        self.consecutive_failures = 0
        if block is not None:
            self.last_block = block

    def mark_failure(self) -> None:
        self.healthy = False
        self.consecutive_failures += 1


class EndpointPool:
    """Owns the upstream RPC endpoints, the active index and the retry policy."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        chain_id: int = constants.NETWORK_CHAIN_ID,
        target_size: int = constants.ENDPOINT_POOL_TARGET_SIZE,
        probe_concurrency: int = constants.ENDPOINT_PROBE_CONCURRENCY,
        probe_timeout: float = constants.ENDPOINT_PROBE_TIMEOUT,
        call_timeout: float = constants.RPC_CALL_TIMEOUT,
        backoff_base: float = constants.RPC_BACKOFF_BASE,
        backoff_max: float = constants.RPC_BACKOFF_MAX,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session = session
        self._chain_id = chain_id
        self._target_size = max(1, target_size)
        self._probe_concurrency = max(1, probe_concurrency)
        self._probe_timeout = probe_timeout
        self._call_timeout = call_timeout
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._sleep = sleep
        self._endpoints: List[Endpoint] = []
        self._index = 0
        self.failovers = 0
        self._rotate_lock = asyncio.Lock()
        self._id_lock = asyncio.Lock()
        self._next_request_id = 1

    @property
    def endpoints(self) -> List[Endpoint]:
        return list(self._endpoints)

    @property
    def active_index(self) -> int:
        return self._index

    @property
    def size(self) -> int:
        return len(self._endpoints)

    async def initialize(self, candidates: Iterable[str]) -> List[Endpoint]:
        """Probes candidates concurrently and keeps the first ``target_size`` that answer."""
        unique = list(dict.fromkeys(url.strip() for url in candidates if url and url.strip()))
        if not unique:
            raise NoHealthyEndpointsError("No RPC endpoint candidates configured")

        semaphore = asyncio.Semaphore(self._probe_concurrency)
        accepted: List[Endpoint] = []

        async def probe_limited(url: str) -> Optional[Endpoint]:
            async with semaphore:
                if len(accepted) >= self._target_size:
                    return None
                return await self._probe(url)

        tasks = [asyncio.ensure_future(probe_limited(url)) for url in unique]
        try:
            for next_done in asyncio.as_completed(tasks):
                endpoint = await next_done
                if endpoint is None:
                    continue
                accepted.append(endpoint)
                if len(accepted) >= self._target_size:
                    break
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if not accepted:
            raise NoHealthyEndpointsError(
                f"None of {len(unique)} RPC candidates answered for chain id {self._chain_id}"
            )

        position = {url: idx for idx, url in enumerate(unique)}
        accepted.sort(key=lambda endpoint: position[endpoint.url])
        self._endpoints = accepted
        self._index = 0
        logger.info(
            "Endpoint pool ready with %d/%d endpoints, active %s (%.0f ms)",
            len(accepted), len(unique), accepted[0].display_url, (accepted[0].latency or 0) * 1000,
        )
        return list(accepted)

    def current(self) -> Endpoint:
        if not self._endpoints:
            raise NoHealthyEndpointsError("Endpoint pool is empty")
        return self._endpoints[self._index]

    async def rotate(self, expected: Optional[Endpoint] = None) -> Endpoint:
        """Advances to the next endpoint that passes re-validation.

        When ``expected`` is given and another caller has already rotated away
        from it, the current endpoint is returned unchanged.
        """
        async with self._rotate_lock:
            active = self.current()
            if expected is not None and active is not expected:
                return active

            size = len(self._endpoints)
            for _ in range(size):
                self._index = (self._index + 1) % size
                self.failovers += 1
                candidate = self._endpoints[self._index]
                if await self._validate(candidate):
                    logger.warning(
                        "RPC failover #%d: now using %s", self.failovers, candidate.display_url
                    )
                    return candidate
                logger.warning("RPC endpoint %s failed re-validation", candidate.display_url)

            raise EndpointPoolExhausted(f"All {size} RPC endpoints failed re-validation")

    async def call(self, method: str, params: Optional[list] = None) -> Any:
        """Issues one JSON-RPC call, rotating and backing off on transport failures."""
        params = params or []
        attempts = max(len(self._endpoints), 1)
        last_failure = 'no attempt made'

        for attempt in range(attempts):
            endpoint = self.current()
            try:
                outcome = await run_bounded(
                    self._post(endpoint.url, method, params), self._call_timeout, method
                )
            except RpcCallError:
                endpoint.mark_success()
                raise
            except TRANSPORT_ERRORS as exc:
                last_failure = f"{type(exc).__name__}: {exc}"
            else:
                if not isinstance(outcome, TimedOut):
                    endpoint.mark_success()
                    return outcome
                last_failure = f"timed out after {outcome.timeout:.1f}s"

            endpoint.mark_failure()
            logger.warning(
                "%s failed on %s (attempt %d/%d): %s",
                method, endpoint.display_url, attempt + 1, attempts, last_failure,
            )
            if attempt == attempts - 1:
                break
            await self.rotate(expected=endpoint)
            await self._sleep(min(self._backoff_max, self._backoff_base * (2 ** attempt)))

        raise EndpointPoolExhausted(f"{method} failed on every endpoint: {last_failure}")

    async def eth_call(self, to: str, data: str, block: str = 'latest') -> Optional[str]:
        return await self.call('eth_call', [{'to': to, 'data': data}, block])

    async def block_number(self) -> int:
        result = await self.call('eth_blockNumber', [])
        block = int(result, 16)
        self.current().last_block = block
        return block

    async def gas_price_gwei(self) -> float:
        result = await self.call('eth_gasPrice', [])
        return int(result, 16) / 1e9

    def snapshot(self) -> Dict[str, Any]:
        active = self._endpoints[self._index] if self._endpoints else None
        return {
            'active': active.display_url if active else None,
            'size': len(self._endpoints),
            'healthy': sum(1 for endpoint in self._endpoints if endpoint.healthy),
            'failovers': self.failovers,
            'last_block': active.last_block if active else None,
            'latency_ms': round(active.latency * 1000) if active and active.latency is not None else None,
        }

    async def _probe(self, url: str) -> Optional[Endpoint]:
        started = time.monotonic()
        outcome = await run_bounded(self._probe_calls(url), self._probe_timeout, f"probe {url}")
        if isinstance(outcome, TimedOut):
            logger.info("RPC candidate %s timed out after %.1fs", redact_url(url), outcome.timeout)
            return None
        if outcome is None:
            return None
        outcome.latency = time.monotonic() - started
        return outcome

    async def _probe_calls(self, url: str) -> Optional[Endpoint]:
        try:
            chain_id = int(await self._post(url, 'eth_chainId', []), 16)
            if chain_id != self._chain_id:
                logger.info(
                    "RPC candidate %s reports chain id %d, expected %d",
                    redact_url(url), chain_id, self._chain_id,
                )
                return None
            block = int(await self._post(url, 'eth_blockNumber', []), 16)
        except (RpcError, TypeError, *TRANSPORT_ERRORS) as exc:
            logger.info("RPC candidate %s rejected: %s", redact_url(url), exc)
            return None
        return Endpoint(url=url, last_block=block)

    async def _validate(self, endpoint: Endpoint) -> bool:
        started = time.monotonic()
        try:
            outcome = await run_bounded(
                self._post(endpoint.url, 'eth_blockNumber', []), self._probe_timeout, 'eth_blockNumber'
            )
            if isinstance(outcome, TimedOut):
                endpoint.mark_failure()
                return False
            endpoint.mark_success(int(outcome, 16))
            endpoint.latency = time.monotonic() - started
            return True
        except (RpcError, TypeError, *TRANSPORT_ERRORS) as exc:
            logger.debug("Validation of %s failed: %s", endpoint.display_url, exc)
            endpoint.mark_failure()
            return False

    async def _post(self, url: str, method: str, params: list) -> Any:
        request_id = await self._get_request_id()
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": request_id,
        }
        timeout = aiohttp.ClientTimeout(total=self._call_timeout)
        async with self._session.post(url, json=payload, timeout=timeout) as response:
            response.raise_for_status()
            data = await response.json()
        if data.get('error'):
            raise RpcCallError(method, data['error'])
        return data.get('result')

    async def _get_request_id(self) -> int:
        async with self._id_lock:
            request_id = self._next_request_id
            self._next_request_id += 1
        return request_id
