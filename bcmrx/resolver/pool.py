# Copyright (c) 2016-2020, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''A pool of persistent JSON-RPC connections to an Electrum server.

Each connection speaks newline-framed JSON-RPC 2.0 through an aiorpcX
JSONRPCConnection, which allocates request ids and pairs responses with
requests.  Each connection carries at most one request at a time;
requests that find no idle connection wait in a single FIFO queue.  All
pool state is only touched from the event loop, so no locks are needed.
'''

import asyncio
from collections import deque
from enum import Enum

import attr
from aiorpcx import (
    JSONRPCConnection, JSONRPCv2, NewlineFramer, ProtocolError, RPCError,
    TaskGroup, sleep,
)
from aiorpcx import Request as RPCRequest

import bcmrx
from bcmrx.lib.util import class_logger


class PoolClosedError(Exception):
    '''Raised for calls made on, or outstanding when closing, a closed pool.'''


class BackendUnavailableError(Exception):
    '''Raised when no connection to the server could be opened.'''


class ConnectionState(Enum):
    CONNECTING = 'connecting'
    IDLE = 'idle'
    BUSY = 'busy'
    CLOSED = 'closed'


@attr.s(slots=True, eq=False)
class Request:
    method = attr.ib()
    params = attr.ib()
    future = attr.ib()
    # Handle of the queue-wait or response timer currently running
    timer = attr.ib(default=None)


def malformed(error: ProtocolError):
    return RPCError(error.code, f'malformed response: {error.message}')


class FramerProtocol(asyncio.Protocol):
    '''Feeds the bytes of one transport into a framer.'''

    def __init__(self, framer):
        self.framer = framer

    def data_received(self, data):
        self.framer.received_bytes(data)

    def connection_lost(self, exc):
        self.framer.fail(exc or ConnectionResetError('connection closed by server'))


class Connection:
    '''One persistent connection of the pool.'''

    def __init__(self, pool, number):
        self.logger = class_logger(__name__, self.__class__.__name__)
        self.pool = pool
        self.number = number
        self.state = ConnectionState.CLOSED
        self.transport = None
        self.framer = None
        self.rpc = None
        # The pool request in flight, and the future aiorpcX resolves with
        # its response, if BUSY
        self.request = None
        self.response = None
        self.receive_task = None

    def __str__(self):
        return f'connection {self.number}'

    async def connect(self):
        '''Open the connection and perform the version handshake.'''
        self.state = ConnectionState.CONNECTING
        pool = self.pool
        loop = asyncio.get_running_loop()
        framer = NewlineFramer(max_size=pool.MAX_MESSAGE_SIZE)
        try:
            self.transport, _protocol = await asyncio.wait_for(
                loop.create_connection(lambda: FramerProtocol(framer),
                                       pool.host, pool.port, ssl=pool.ssl),
                pool.timeout)
            self.framer = framer
            self.rpc = JSONRPCConnection(JSONRPCv2)
            server_version = await asyncio.wait_for(self._handshake(), pool.timeout)
        except BaseException:
            self.close()
            raise

        self.request = None
        self.response = None
        self.state = ConnectionState.IDLE
        pool.server_version = server_version
        self.receive_task = pool.spawn(self._receive_loop())
        self.logger.debug(f'{self} open to server {server_version}')

    async def _handshake(self):
        pool = self.pool
        message, response = self.rpc.send_request(RPCRequest(
            'server.version', [pool.client_name, pool.protocol_version]))
        self.transport.write(self.framer.frame(message))
        while not response.done():
            self.rpc.receive_message(await self.framer.receive_message())
        return response.result()

    async def _receive_loop(self):
        try:
            while True:
                message = await self.framer.receive_message()
                self.pool.on_message(self, message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.info(f'{self} lost: {e!r}')
        self.pool.connection_lost(self)

    def send(self, request):
        if self.is_broken():
            raise ConnectionResetError(f'{self} is not open')
        message, response = self.rpc.send_request(
            RPCRequest(request.method, request.params))
        self.transport.write(self.framer.frame(message))
        self.request = request
        self.response = response
        self.state = ConnectionState.BUSY

    def is_broken(self):
        return self.transport is None or self.transport.is_closing()

    def close(self):
        self.state = ConnectionState.CLOSED
        self.request = None
        self.response = None
        if self.receive_task is not None:
            if self.receive_task is not asyncio.current_task():
                self.receive_task.cancel()
            self.receive_task = None
        if self.transport is not None:
            self.transport.close()
            self.transport = None
        if self.rpc is not None:
            self.rpc.cancel_pending_requests()
            self.rpc = None
        self.framer = None


class ConnectionPool:
    '''A fixed-size pool of connections to an Electrum server.

    timeout bounds each RPC from the moment it is sent; queue_timeout
    bounds the wait for an idle connection before that.  Use open() before
    making calls, and close() when done; alternatively use the pool as an
    async context manager.
    '''

    MAX_MESSAGE_SIZE = 64 * 1024 * 1024
    PROTOCOL_VERSION = '1.4'

    def __init__(self, host, port, *, size=5, ssl=None, timeout=10.0,
                 queue_timeout=120.0, retry_delay=1.0, max_retry_delay=30.0,
                 client_name=None):
        if size < 1:
            raise ValueError(f'pool size must be positive, not {size}')
        self.logger = class_logger(__name__, self.__class__.__name__)
        self.host = host
        self.port = port
        self.ssl = ssl
        self.size = size
        self.timeout = timeout
        self.queue_timeout = queue_timeout
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.client_name = client_name or bcmrx.version
        self.protocol_version = self.PROTOCOL_VERSION
        # The server.version result of the latest handshake
        self.server_version = None

        self.connections = [Connection(self, n) for n in range(size)]
        self.queue = deque()
        # Every call still awaiting its result
        self.pending = set()
        self.tasks = set()
        self.closing = False
        self.request_count = 0

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.close()

    @property
    def live_count(self):
        return sum(conn.state in (ConnectionState.IDLE, ConnectionState.BUSY)
                   for conn in self.connections)

    def spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def open(self):
        '''Open all connections.  Those that fail are retried in the
        background; if none can be opened raise BackendUnavailableError.'''
        self.closing = False

        async def try_connect(conn):
            try:
                await conn.connect()
                return True
            except Exception as e:
                self.logger.warning(f'failed to open {conn} to '
                                    f'{self.host}:{self.port}: {e!r}')
                return False

        async with TaskGroup() as group:
            tasks = [await group.spawn(try_connect(conn))
                     for conn in self.connections]

        opened = sum(task.result() for task in tasks)
        if not opened:
            await self.close()
            raise BackendUnavailableError(
                f'cannot connect to Electrum server {self.host}:{self.port}')
        for conn, task in zip(self.connections, tasks):
            if not task.result():
                self.spawn(self._reconnect(conn))
        self.logger.info(f'opened {opened:,d} of {self.size:,d} connections '
                         f'to {self.host}:{self.port}')

    async def close(self):
        '''Tear down all connections.  Outstanding calls fail with
        PoolClosedError.  Safe to call more than once.'''
        if self.closing:
            return
        self.closing = True
        for conn in self.connections:
            conn.close()
        for request in self.pending:
            self._fail(request, PoolClosedError('pool closed'))
        self.pending.clear()
        self.queue.clear()

        tasks = list(self.tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.debug('pool closed')

    async def call(self, method, params=()):
        '''Send a request and return its result.

        Raises RPCError if the server returns an error, and
        asyncio.TimeoutError if no connection frees up within queue_timeout
        or no response arrives within timeout of sending.
        '''
        if self.closing:
            raise PoolClosedError('pool closed')
        loop = asyncio.get_running_loop()
        request = Request(method, list(params), loop.create_future())
        self.pending.add(request)
        self.request_count += 1
        self._enqueue(request)
        self._drain()
        try:
            return await request.future
        finally:
            self._abandon(request)

    def _start_timer(self, request, delay, callback, *args):
        self._cancel_timer(request)
        request.timer = asyncio.get_running_loop().call_later(delay, callback, *args)

    def _cancel_timer(self, request):
        if request.timer is not None:
            request.timer.cancel()
            request.timer = None

    def _fail(self, request, exception):
        self._cancel_timer(request)
        if not request.future.done():
            request.future.set_exception(exception)

    def _enqueue(self, request, *, front=False):
        if front:
            self.queue.appendleft(request)
        else:
            self.queue.append(request)
        self._start_timer(request, self.queue_timeout, self._queue_expired, request)

    def _queue_expired(self, request):
        request.timer = None
        try:
            self.queue.remove(request)
        except ValueError:
            return
        self.pending.discard(request)
        self._fail(request, asyncio.TimeoutError(
            f'{request.method} waited over {self.queue_timeout}s for a connection'))

    def _response_expired(self, conn, request):
        request.timer = None
        if conn.request is not request:
            return
        self.logger.warning(f'{conn} gave no response to {request.method} '
                            f'within {self.timeout}s; reconnecting')
        self.pending.discard(request)
        self._fail(request, asyncio.TimeoutError(
            f'no response to {request.method} within {self.timeout}s'))
        self.connection_lost(conn)

    def _abandon(self, request):
        '''Forget a call whose caller has stopped waiting.'''
        if request not in self.pending:
            return
        self.pending.discard(request)
        try:
            self.queue.remove(request)
        except ValueError:
            # In flight; its response timer still guards the connection
            return
        self._cancel_timer(request)

    def _idle_connection(self):
        for conn in self.connections:
            if conn.state is ConnectionState.IDLE:
                return conn
        return None

    def _drain(self):
        '''Send queued requests in FIFO order while idle connections
        remain.'''
        while self.queue and not self.closing:
            conn = self._idle_connection()
            if conn is None:
                return
            request = self.queue.popleft()
            try:
                conn.send(request)
            except ProtocolError as e:
                # The request itself cannot be encoded
                self.pending.discard(request)
                self._fail(request, RPCError(e.code, e.message))
                continue
            except Exception as e:
                self.logger.warning(f'error sending {request.method} on '
                                    f'{conn}: {e!r}')
                conn.request = None
                self._enqueue(request)
                if conn.is_broken():
                    self.connection_lost(conn)
                else:
                    conn.state = ConnectionState.IDLE
                    # Retry on the next loop iteration
                    asyncio.get_running_loop().call_soon(self._drain)
                    return
            else:
                self._start_timer(request, self.timeout, self._response_expired,
                                  conn, request)

    def on_message(self, conn, message):
        '''Handle a message received on a connection.'''
        try:
            items = conn.rpc.receive_message(message)
        except ProtocolError as e:
            self.logger.warning(f'bad message on {conn}: {e.message}')
            if conn.request is not None:
                conn.rpc.cancel_pending_requests()
                self._complete(conn, error=malformed(e))
            return

        for item in items:
            # Subscription notifications
            self.logger.debug(f'ignoring {item!r} on {conn}')

        response = conn.response
        if response is not None and response.done():
            error = response.exception()
            if isinstance(error, ProtocolError):
                error = malformed(error)
            if error is None:
                self._complete(conn, result=response.result())
            else:
                self._complete(conn, error=error)

    def _complete(self, conn, *, result=None, error=None):
        request = conn.request
        conn.request = None
        conn.response = None
        conn.state = ConnectionState.IDLE
        if request is not None:
            self._cancel_timer(request)
            self.pending.discard(request)
            if error is not None:
                self._fail(request, error)
            elif not request.future.done():
                request.future.set_result(result)
        self._drain()

    def connection_lost(self, conn):
        '''Called when a connection drops.  A request in flight on it goes
        back to the front of the queue, and reconnection begins.'''
        if conn.state is ConnectionState.CLOSED:
            return
        request = conn.request
        conn.close()
        if self.closing:
            return
        if request is not None and request in self.pending:
            self._enqueue(request, front=True)
        self.spawn(self._reconnect(conn))
        self._drain()

    async def _reconnect(self, conn):
        delay = self.retry_delay
        while not self.closing:
            await sleep(delay)
            try:
                await conn.connect()
            except Exception as e:
                self.logger.info(f'reconnecting {conn} failed: {e!r}')
                delay = min(delay * 2, self.max_retry_delay)
            else:
                self.logger.info(f'{conn} reconnected')
                self._drain()
                return
