import asyncio

import pytest
import pytest_asyncio
from aiorpcx import RPCError

from bcmrx.resolver.pool import (
    BackendUnavailableError, ConnectionPool, ConnectionState, PoolClosedError,
)

from tests.util import FakeElectrumServer, unused_port


@pytest_asyncio.fixture
async def server():
    server = FakeElectrumServer()
    await server.start()
    yield server
    await server.stop()


def make_pool(server, **kwargs):
    kwargs.setdefault('size', 3)
    kwargs.setdefault('timeout', 2.0)
    kwargs.setdefault('retry_delay', 0.01)
    return ConnectionPool('127.0.0.1', server.port, **kwargs)


async def wait_for_live(pool, count, timeout=2.0):
    async def poll():
        while pool.live_count != count:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_open_handshakes_each_connection(server):
    async with make_pool(server) as pool:
        assert pool.live_count == 3
        assert all(conn.state is ConnectionState.IDLE for conn in pool.connections)
        assert pool.server_version == ['FakeElectrum 1.0', '1.4']
    handshakes = [r for r in server.requests if r['method'] == 'server.version']
    assert len(handshakes) == 3
    assert handshakes[0]['params'][1] == '1.4'


@pytest.mark.asyncio
async def test_call_returns_result(server):
    async with make_pool(server) as pool:
        assert await pool.call('echo', ['a', 1]) == ['a', 1]
        assert await pool.call('echo') == []
        assert pool.request_count == 2
    ids = [r['id'] for r in server.requests if r['method'] == 'echo']
    assert ids == sorted(ids) and len(set(ids)) == 2
    assert all(r['jsonrpc'] == '2.0' for r in server.requests)


@pytest.mark.asyncio
async def test_concurrent_calls_are_bounded_by_pool_size(server):
    async with make_pool(server, size=3) as pool:
        results = await asyncio.gather(*(pool.call('sleep', [0.05]) for _ in range(10)))
        assert results == [0.05] * 10
        assert all(conn.state is ConnectionState.IDLE for conn in pool.connections)
        assert not pool.queue and not pool.pending
    assert server.max_in_flight_per_connection == 1
    assert 1 < server.max_in_flight <= 3


@pytest.mark.asyncio
async def test_queue_is_fifo(server):
    async with make_pool(server, size=1) as pool:
        await asyncio.gather(*(pool.call('echo', [n]) for n in range(5)))
    echoed = [r['params'][0] for r in server.requests if r['method'] == 'echo']
    assert echoed == list(range(5))


@pytest.mark.asyncio
async def test_timeout_excludes_time_queued(server):
    async with make_pool(server, size=1, timeout=0.5) as pool:
        results = await asyncio.gather(*(pool.call('sleep', [0.3]) for _ in range(3)))
        assert results == [0.3] * 3
    assert server.connections == 1


@pytest.mark.asyncio
async def test_queue_timeout(server):
    async with make_pool(server, size=1, timeout=1.0, queue_timeout=0.1) as pool:
        busy = asyncio.ensure_future(pool.call('sleep', [0.3]))
        await asyncio.sleep(0.02)
        with pytest.raises(asyncio.TimeoutError):
            await pool.call('echo', [1])
        assert not pool.queue
        assert await busy == 0.3
    assert server.connections == 1
    assert [r['method'] for r in server.requests].count('echo') == 0


@pytest.mark.asyncio
async def test_error_response(server):
    async with make_pool(server) as pool:
        with pytest.raises(RPCError) as e:
            await pool.call('fail')
        assert e.value.code == 2
        assert 'bad request' in e.value.message
        # The connection is usable afterwards
        assert await pool.call('echo', [1]) == [1]


@pytest.mark.asyncio
async def test_notifications_are_ignored(server):
    async with make_pool(server, size=1) as pool:
        assert await pool.call('notify_first') == 'after notification'
        assert await pool.call('echo', [2]) == [2]


@pytest.mark.asyncio
@pytest.mark.parametrize('method', ['garbage', 'bad_error'])
async def test_malformed_response_fails_request(server, method):
    async with make_pool(server, size=1) as pool:
        with pytest.raises(RPCError) as e:
            await pool.call(method)
        assert 'malformed response' in e.value.message
        assert await pool.call('echo', [3]) == [3]


@pytest.mark.asyncio
async def test_timeout_drops_and_reconnects(server):
    async with make_pool(server, size=1, timeout=0.3) as pool:
        with pytest.raises(asyncio.TimeoutError):
            await pool.call('hang')
        assert not pool.pending
        assert await pool.call('echo', [4]) == [4]
        await wait_for_live(pool, 1)
    assert server.connections == 2


@pytest.mark.asyncio
async def test_dropped_connection_requeues_and_reconnects(server):
    async with make_pool(server, size=2) as pool:
        assert await pool.call('drop_once') == 'ok'
        await wait_for_live(pool, 2)
    assert server.connections == 3
    assert [r['method'] for r in server.requests].count('drop_once') == 2


@pytest.mark.asyncio
async def test_send_failure_is_retried(server, monkeypatch):
    async with make_pool(server, size=1, timeout=0.5) as pool:
        conn = pool.connections[0]
        send = conn.send
        failures = []

        def flaky_send(request):
            if not failures:
                failures.append(request.method)
                raise OSError('send buffer unavailable')
            send(request)

        monkeypatch.setattr(conn, 'send', flaky_send)
        assert await asyncio.wait_for(pool.call('echo', [8]), 0.2) == [8]
        assert failures == ['echo']
    assert server.connections == 1


@pytest.mark.asyncio
async def test_close_with_pending_work(server):
    pool = make_pool(server, size=1, timeout=5.0)
    await pool.open()
    in_flight = asyncio.ensure_future(pool.call('sleep', [10]))
    queued = asyncio.ensure_future(pool.call('echo', [5]))
    await asyncio.sleep(0.05)
    assert len(pool.queue) == 1

    await pool.close()
    for task in (in_flight, queued):
        with pytest.raises(PoolClosedError):
            await task
    assert pool.live_count == 0
    assert not pool.tasks

    await pool.close()
    with pytest.raises(PoolClosedError):
        await pool.call('echo', [6])


@pytest.mark.asyncio
async def test_cancelled_call_leaves_the_queue(server):
    async with make_pool(server, size=1, timeout=1.0) as pool:
        blocker = asyncio.ensure_future(pool.call('sleep', [0.3]))
        await asyncio.sleep(0.05)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(pool.call('echo', [7]), 0.05)
        assert not pool.queue
        assert len(pool.pending) == 1
        assert await blocker == 0.3
    assert [r['method'] for r in server.requests].count('echo') == 0


@pytest.mark.asyncio
async def test_unreachable_backend_is_fatal():
    pool = ConnectionPool('127.0.0.1', unused_port(), size=2, timeout=1.0)
    with pytest.raises(BackendUnavailableError):
        await pool.open()
    assert pool.live_count == 0


def test_pool_size_must_be_positive():
    with pytest.raises(ValueError):
        ConnectionPool('127.0.0.1', 50001, size=0)
