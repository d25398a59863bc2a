'''Helpers shared by the tests.'''

import asyncio
import json
import socket

from aiorpcx import RPCError

from bcmrx.lib.hash import script_hash
from bcmrx.lib.script import BCMR_PREFIX
from bcmrx.lib.tx import CandidateOutput, SpendStatus


def unused_port():
    '''A localhost port nothing is listening on.'''
    with socket.socket() as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


def txid(prefix, n):
    '''A 64 hex char txid like "aa000...01".'''
    return f'{prefix:0<2}' + '0' * 60 + f'{n:02x}'


def push(data):
    if len(data) < 0x4c:
        return bytes((len(data), )) + data
    if len(data) < 256:
        return bytes((0x4c, len(data))) + data
    return bytes((0x4d, )) + len(data).to_bytes(2, 'little') + data


def bcmr_script(content_hash=bytes(range(32)), *uris):
    return BCMR_PREFIX + content_hash + b''.join(
        push(uri.encode() if isinstance(uri, str) else uri) for uri in uris)


def candidate(tx_hash, output_index=1, height=800_000, uris=('example.org/bcmr.json', ),
              first=True):
    return CandidateOutput(tx_hash, output_index, bcmr_script(bytes(32), *uris),
                           height, first)


class FakeLedger:
    '''A spend checker over an in-memory map of txid -> spender of output 0.'''

    def __init__(self):
        self.spenders = {}
        self.failing = set()
        self.unknown = set()
        self.queries = 0
        self.in_flight = 0
        self.max_in_flight = 0

    def chain(self, *txids):
        for tx_hash, spender in zip(txids, txids[1:]):
            self.spenders[tx_hash] = spender

    async def spend_status(self, tx_hash, idx):
        assert idx == 0
        self.queries += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if tx_hash in self.failing:
                raise ConnectionResetError(f'lost connection checking {tx_hash}')
            if tx_hash in self.unknown:
                return SpendStatus.unknown()
            spender = self.spenders.get(tx_hash)
            if spender is None:
                return SpendStatus.unspent()
            return SpendStatus.spent(spender)
        finally:
            self.in_flight -= 1


class Clock:
    '''A settable millisecond clock.'''

    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now


class MemoryElectrum:
    '''Answers blockchain.transaction.get and get_history from memory.

    Has the call() coroutine and attributes of a ConnectionPool so it can
    stand in for one, and can also back a FakeElectrumServer.
    '''

    client_name = 'test client'
    protocol_version = '1.4'
    server_version = ['Fulcrum 1.9.8', '1.4']

    def __init__(self, height=850123):
        self.height = height
        self.txs = {}
        self.histories = {}
        self.calls = []
        self.errors = {}

    def add_tx(self, tx_hash, inputs, scripts, height=100):
        self.txs[tx_hash] = {
            'txid': tx_hash,
            'vin': [{'txid': prev, 'vout': idx, 'sequence': 0} for prev, idx in inputs],
            'vout': [{'n': n, 'value': 0.0001, 'scriptPubKey': {'hex': script.hex()}}
                     for n, script in enumerate(scripts)],
        }
        spent_scripts = [bytes.fromhex(self.txs[prev]['vout'][idx]['scriptPubKey']['hex'])
                         for prev, idx in inputs]
        for script in list(scripts) + spent_scripts:
            history = self.histories.setdefault(script_hash(script), [])
            if tx_hash not in [item['tx_hash'] for item in history]:
                history.append({'tx_hash': tx_hash, 'height': height})

    async def call(self, method, params=()):
        self.calls.append((method, list(params)))
        await asyncio.sleep(0)
        if method in self.errors:
            raise self.errors[method]
        if method == 'blockchain.transaction.get':
            tx_hash, verbose = params
            assert verbose is True
            if tx_hash not in self.txs:
                raise RPCError(2, 'No such mempool or blockchain transaction')
            return self.txs[tx_hash]
        if method == 'blockchain.scripthash.get_history':
            return self.histories.get(params[0], [])
        if method == 'blockchain.headers.subscribe':
            return {'height': self.height, 'hex': '00' * 80}
        raise RPCError(-32601, f'unknown method {method}')


class FakeElectrumServer:
    '''A newline-delimited JSON-RPC server on localhost.

    Requests are processed concurrently so that pipelining by a client
    would be visible.  Methods it does not handle itself go to backend.
    '''

    def __init__(self, backend=None):
        self.backend = backend
        self.server = None
        self.port = None
        self.connections = 0
        self.writers = []
        self.requests = []
        self.max_in_flight_per_connection = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.dropped = False

    async def start(self):
        self.server = await asyncio.start_server(self.handle, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self):
        for writer in self.writers:
            writer.close()
        self.server.close()
        await self.server.wait_closed()

    async def handle(self, reader, writer):
        self.connections += 1
        self.writers.append(writer)
        state = {'in_flight': 0}
        tasks = []
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                request = json.loads(line)
                self.requests.append(request)
                tasks.append(asyncio.ensure_future(
                    self.process(request, writer, state)))
        except ConnectionError:
            pass
        finally:
            for task in tasks:
                task.cancel()
            writer.close()

    def respond(self, writer, payload):
        if not writer.is_closing():
            writer.write(json.dumps(payload).encode() + b'\n')

    async def process(self, request, writer, state):
        state['in_flight'] += 1
        self.in_flight += 1
        self.max_in_flight_per_connection = max(self.max_in_flight_per_connection,
                                                state['in_flight'])
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self._process(request, writer)
        finally:
            state['in_flight'] -= 1
            self.in_flight -= 1

    async def _process(self, request, writer):
        method, request_id = request['method'], request['id']
        # Empty params may be omitted
        params = request.get('params', [])
        reply = {'jsonrpc': '2.0', 'id': request_id}
        if method == 'server.version':
            reply['result'] = ['FakeElectrum 1.0', '1.4']
        elif method == 'echo':
            reply['result'] = params
        elif method == 'sleep':
            await asyncio.sleep(params[0])
            reply['result'] = params[0]
        elif method == 'hang':
            await asyncio.sleep(3600)
        elif method == 'fail':
            reply['error'] = {'code': 2, 'message': 'daemon error: bad request'}
        elif method == 'notify_first':
            self.respond(writer, {'jsonrpc': '2.0', 'method': 'blockchain.headers.subscribe',
                                  'params': [{'height': 1}]})
            reply['result'] = 'after notification'
        elif method == 'garbage':
            writer.write(b'this is not json\n')
            return
        elif method == 'bad_error':
            reply['error'] = 'something went wrong'
        elif method == 'drop_once':
            if not self.dropped:
                self.dropped = True
                writer.close()
                return
            reply['result'] = 'ok'
        elif self.backend is not None:
            try:
                reply['result'] = await self.backend.call(method, params)
            except RPCError as e:
                reply['error'] = {'code': e.code, 'message': e.message}
        else:
            reply['error'] = {'code': -32601, 'message': f'unknown method {method}'}
        self.respond(writer, reply)
