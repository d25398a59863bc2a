# Copyright (c) 2016-2017, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''Transaction-related classes and functions.

Electrum servers return transactions and histories as decoded JSON.
These are checked and converted to the classes below on receipt, so
the rest of the code never looks at raw response dictionaries.
'''

from dataclasses import dataclass
from enum import Enum
from typing import Sequence, Optional

from bcmrx.lib.hash import HASH_HEX_LEN
from bcmrx.lib.util import is_hex_str


def _check_txid(txid, what):
    if not is_hex_str(txid, HASH_HEX_LEN):
        raise ValueError(f'{what} is not a transaction hash: {txid!r}')
    return txid


@dataclass
class CandidateOutput:
    '''A BCMR announcement output as reported by the candidate source.'''
    __slots__ = ('txid', 'output_index', 'locking_script', 'block_height',
                 'is_first_output_in_tx')
    txid: str
    output_index: int
    locking_script: bytes
    block_height: int            # 0 if unconfirmed
    is_first_output_in_tx: bool


@dataclass
class TxInput:
    '''Class representing a decoded transaction input.'''
    __slots__ = 'prev_txid', 'prev_idx'
    prev_txid: Optional[str]     # None for a coinbase input
    prev_idx: Optional[int]

    def __str__(self):
        return f'Input({self.prev_txid}, {self.prev_idx})'

    def spends(self, txid, idx):
        return self.prev_txid == txid and self.prev_idx == idx


@dataclass
class TxOutput:
    '''Class representing a decoded transaction output.'''
    __slots__ = 'n', 'pk_script'
    n: int
    pk_script: bytes


@dataclass
class VerboseTx:
    '''A transaction as returned by blockchain.transaction.get in verbose
    mode.'''
    __slots__ = 'txid', 'inputs', 'outputs'
    txid: str
    inputs: Sequence[TxInput]
    outputs: Sequence[TxOutput]

    @classmethod
    def from_json(cls, result):
        '''Build from a decoded verbose transaction.  Raises ValueError if
        the result does not have the expected shape.'''
        if not isinstance(result, dict):
            raise ValueError(f'verbose transaction is not an object: {result!r}')
        try:
            txid = _check_txid(result['txid'], 'txid')
            inputs = [cls._read_input(vin) for vin in result['vin']]
            outputs = [cls._read_output(n, vout)
                       for n, vout in enumerate(result['vout'])]
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f'malformed verbose transaction: {e!r}') from None
        return cls(txid, inputs, outputs)

    @staticmethod
    def _read_input(vin):
        if 'coinbase' in vin:
            return TxInput(None, None)
        prev_idx = vin['vout']
        if not isinstance(prev_idx, int):
            raise ValueError(f'input vout is not an integer: {prev_idx!r}')
        return TxInput(_check_txid(vin['txid'], 'input txid'), prev_idx)

    @staticmethod
    def _read_output(n, vout):
        n = vout.get('n', n)
        script_hex = vout['scriptPubKey']['hex']
        if not is_hex_str(script_hex):
            raise ValueError(f'output {n} script is not hex')
        return TxOutput(n, bytes.fromhex(script_hex))

    def output(self, idx) -> Optional[TxOutput]:
        for txout in self.outputs:
            if txout.n == idx:
                return txout
        return None


@dataclass
class HistoryItem:
    '''One entry of a blockchain.scripthash.get_history result.'''
    __slots__ = 'tx_hash', 'height'
    tx_hash: str
    height: int     # 0 or -1 for mempool transactions


def history_from_json(result):
    '''Convert a get_history result to a list of HistoryItem objects,
    preserving the server's order.'''
    if not isinstance(result, list):
        raise ValueError(f'history is not a list: {result!r}')
    items = []
    for item in result:
        try:
            tx_hash = _check_txid(item['tx_hash'], 'history tx_hash')
            height = item['height']
        except (KeyError, TypeError) as e:
            raise ValueError(f'malformed history item: {e!r}') from None
        if not isinstance(height, int):
            raise ValueError(f'history height is not an integer: {height!r}')
        items.append(HistoryItem(tx_hash, height))
    return items


class SpendState(Enum):
    SPENT = 'spent'
    UNSPENT = 'unspent'
    UNKNOWN = 'unknown'


@dataclass(frozen=True)
class SpendStatus:
    '''The spend status of an outpoint.

    UNKNOWN means the status could not be determined; it must not be
    confused with a confirmed UNSPENT.
    '''
    state: SpendState
    spender_txid: Optional[str] = None

    @classmethod
    def spent(cls, spender_txid):
        return cls(SpendState.SPENT, spender_txid)

    @classmethod
    def unspent(cls):
        return cls(SpendState.UNSPENT)

    @classmethod
    def unknown(cls):
        return cls(SpendState.UNKNOWN)

    @property
    def is_spent(self):
        return self.state is SpendState.SPENT
