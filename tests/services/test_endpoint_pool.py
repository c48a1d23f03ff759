import asyncio
from unittest.mock import AsyncMock

import aiohttp
import pytest

from services.endpoint_pool import (
    EndpointPool,
    EndpointPoolExhausted,
    NoHealthyEndpointsError,
    RpcCallError,
    TimedOut,
    redact_url,
    run_bounded,
)


class FakeResponse:
    def __init__(self, payload):
        self._payload = payload
        self.status = 200

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def raise_for_status(self):
        return None

    async def json(self):
        return self._payload


class FakeSession:
    """Routes JSON-RPC posts to per-URL handlers."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def post(self, url, json, timeout):
        self.calls.append((url, json['method']))
        handler = self.routes[url]
        return FakeResponse(handler(json['method'], json['params']))


def node(chain_id=137, block=100, alive=None, failing_methods=(), rpc_errors=None):
    """Builds a fake node handler; ``alive`` is a one-key dict toggled by tests."""
    rpc_errors = rpc_errors or {}

    def handler(method, params):
        if alive is not None and not alive['up']:
            raise aiohttp.ClientConnectionError("connection refused")
        if method in failing_methods:
            raise aiohttp.ClientConnectionError("connection reset")
        if method in rpc_errors:
            return {'jsonrpc': '2.0', 'id': 1, 'error': rpc_errors[method]}
        results = {
            'eth_chainId': hex(chain_id),
            'eth_blockNumber': hex(block),
            'eth_gasPrice': hex(35 * 10 ** 9),
        }
        return {'jsonrpc': '2.0', 'id': 1, 'result': results.get(method)}

    return handler


def make_pool(session, **kwargs):
    kwargs.setdefault('sleep', AsyncMock())
    return EndpointPool(session, **kwargs)


@pytest.mark.asyncio
async def test_initialize_accepts_only_matching_live_endpoints():
    dead = {'up': False}
    session = FakeSession({
        'http://a': node(),
        'http://wrong-chain': node(chain_id=1),
        'http://dead': node(alive=dead),
        'http://b': node(block=200),
    })
    pool = make_pool(session)

    endpoints = await pool.initialize(['http://a', 'http://wrong-chain', 'http://dead', 'http://b', 'http://a'])

    assert [endpoint.url for endpoint in endpoints] == ['http://a', 'http://b']
    assert pool.current().url == 'http://a'
    assert endpoints[1].last_block == 200


@pytest.mark.asyncio
async def test_initialize_stops_at_target_size():
    urls = [f'http://node-{idx}' for idx in range(4)]
    session = FakeSession({url: node() for url in urls})
    pool = make_pool(session, target_size=2)

    await pool.initialize(urls)

    assert pool.size == 2


@pytest.mark.asyncio
async def test_initialize_fails_when_no_candidate_answers():
    session = FakeSession({'http://dead': node(alive={'up': False})})
    pool = make_pool(session)

    with pytest.raises(NoHealthyEndpointsError):
        await pool.initialize(['http://dead'])

    with pytest.raises(NoHealthyEndpointsError):
        await pool.initialize([])


def test_current_on_empty_pool_raises():
    pool = make_pool(FakeSession({}))
    with pytest.raises(NoHealthyEndpointsError):
        pool.current()


@pytest.mark.asyncio
async def test_rotate_advances_and_wraps_around():
    urls = ['http://a', 'http://b', 'http://c']
    pool = make_pool(FakeSession({url: node() for url in urls}))
    await pool.initialize(urls)
    assert pool.active_index == 0

    await pool.rotate()
    assert pool.active_index == 1
    await pool.rotate()
    assert pool.active_index == 2
    await pool.rotate()
    assert pool.active_index == 0
    assert pool.failovers == 3


@pytest.mark.asyncio
async def test_rotating_pool_size_times_returns_to_start():
    urls = [f'http://node-{idx}' for idx in range(5)]
    pool = make_pool(FakeSession({url: node() for url in urls}))
    await pool.initialize(urls)
    start = pool.current()

    for _ in range(pool.size):
        await pool.rotate()

    assert pool.current() is start


@pytest.mark.asyncio
async def test_rotate_cascades_past_failed_endpoint():
    b_state = {'up': True}
    pool = make_pool(FakeSession({
        'http://a': node(),
        'http://b': node(alive=b_state),
        'http://c': node(),
    }))
    await pool.initialize(['http://a', 'http://b', 'http://c'])
    b_state['up'] = False

    endpoint = await pool.rotate()

    assert endpoint.url == 'http://c'
    b = pool.endpoints[1]
    assert b.healthy is False
    assert b.consecutive_failures == 1
    assert pool.failovers == 2


@pytest.mark.asyncio
async def test_rotate_raises_when_every_endpoint_fails():
    states = [{'up': True}, {'up': True}]
    pool = make_pool(FakeSession({
        'http://a': node(alive=states[0]),
        'http://b': node(alive=states[1]),
    }))
    await pool.initialize(['http://a', 'http://b'])
    for state in states:
        state['up'] = False

    with pytest.raises(EndpointPoolExhausted):
        await pool.rotate()


@pytest.mark.asyncio
async def test_rotate_skips_when_another_caller_already_rotated():
    pool = make_pool(FakeSession({'http://a': node(), 'http://b': node()}))
    await pool.initialize(['http://a', 'http://b'])
    stale = pool.current()
    await pool.rotate()

    endpoint = await pool.rotate(expected=stale)

    assert endpoint.url == 'http://b'
    assert pool.failovers == 1


@pytest.mark.asyncio
async def test_snapshot_reports_active_endpoint_latency():
    pool = make_pool(FakeSession({'http://a': node(), 'http://b': node(block=150)}))
    assert pool.snapshot()['latency_ms'] is None

    endpoints = await pool.initialize(['http://a', 'http://b'])
    assert all(endpoint.latency is not None and endpoint.latency >= 0 for endpoint in endpoints)

    await pool.rotate()
    snapshot = pool.snapshot()
    assert snapshot['active'] == 'http://b'
    assert snapshot['last_block'] == 150
    assert isinstance(snapshot['latency_ms'], int)
    assert snapshot['latency_ms'] >= 0


@pytest.mark.asyncio
async def test_call_fails_over_on_transport_error():
    sleep = AsyncMock()
    session = FakeSession({
        'http://a': node(failing_methods=('eth_gasPrice',)),
        'http://b': node(),
    })
    pool = EndpointPool(session, sleep=sleep, backoff_base=0.5)
    await pool.initialize(['http://a', 'http://b'])

    gas = await pool.gas_price_gwei()

    assert gas == pytest.approx(35.0)
    assert pool.current().url == 'http://b'
    assert pool.failovers == 1
    assert pool.endpoints[0].consecutive_failures == 1
    sleep.assert_awaited_once_with(0.5)


@pytest.mark.asyncio
async def test_call_does_not_rotate_on_json_rpc_error():
    session = FakeSession({
        'http://a': node(rpc_errors={'eth_call': {'code': -32000, 'message': 'execution reverted'}}),
        'http://b': node(),
    })
    pool = make_pool(session)
    await pool.initialize(['http://a', 'http://b'])

    with pytest.raises(RpcCallError) as excinfo:
        await pool.eth_call('0x' + '1' * 40, '0x0902f1ac')

    assert excinfo.value.code == -32000
    assert pool.current().url == 'http://a'
    assert pool.failovers == 0


@pytest.mark.asyncio
async def test_call_exhausts_after_full_rotation():
    states = [{'up': True}, {'up': True}]
    pool = make_pool(FakeSession({
        'http://a': node(alive=states[0]),
        'http://b': node(alive=states[1]),
    }))
    await pool.initialize(['http://a', 'http://b'])
    for state in states:
        state['up'] = False

    with pytest.raises(EndpointPoolExhausted):
        await pool.block_number()


@pytest.mark.asyncio
async def test_run_bounded_returns_typed_timeout():
    outcome = await run_bounded(asyncio.sleep(1), 0.01, 'slow')

    assert isinstance(outcome, TimedOut)
    assert outcome.operation == 'slow'


@pytest.mark.asyncio
async def test_run_bounded_passes_result_through():
    async def answer():
        return 42

    assert await run_bounded(answer(), 1.0) == 42


def test_redact_url_hides_api_keys():
    redacted = redact_url('https://polygon-mainnet.g.alchemy.com/v2/abcdefghijklmnopqrstuvwxyz123456')
    assert 'abcdefghijklmnopqrstuvwxyz' not in redacted
    assert redacted.startswith('https://polygon-mainnet.g.alchemy.com/v2/')
