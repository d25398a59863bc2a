# Copyright (c) 2016-2020, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''Spend queries against an Electrum protocol server (e.g. Fulcrum).'''


from typing import List, Optional

import attr

from bcmrx.lib.hash import script_hash
from bcmrx.lib.tx import HistoryItem, SpendStatus, VerboseTx, history_from_json
from bcmrx.lib.util import class_logger


@attr.s(slots=True, frozen=True)
class ServerInfo:
    version = attr.ib()
    protocol_version = attr.ib()
    block_height = attr.ib()


class ElectrumClient:
    '''Answers "is this output spent, and by what?" using the methods of
    the Electrum protocol.

    Electrum servers cannot look up the spender of an outpoint directly.
    Instead the history of the output's locking script is fetched, and
    the transactions after the one creating the output are checked for
    an input spending it.
    '''

    def __init__(self, pool):
        self.logger = class_logger(__name__, self.__class__.__name__)
        self.pool = pool

    async def get_transaction(self, txid) -> VerboseTx:
        result = await self.pool.call('blockchain.transaction.get', [txid, True])
        return VerboseTx.from_json(result)

    async def get_history(self, scripthash) -> List[HistoryItem]:
        result = await self.pool.call('blockchain.scripthash.get_history',
                                      [scripthash])
        return history_from_json(result)

    async def server_info(self) -> ServerInfo:
        # server.version may only be sent once per session, so use the
        # result of the pool's handshake
        server_version = self.pool.server_version
        header = await self.pool.call('blockchain.headers.subscribe')
        if isinstance(server_version, list) and len(server_version) >= 2:
            version, protocol_version = server_version[0], server_version[1]
        else:
            version, protocol_version = server_version, 'unknown'
        height = header.get('height', 0) if isinstance(header, dict) else 0
        return ServerInfo(version, protocol_version, height)

    async def _spend_status(self, txid, idx):
        tx = await self.get_transaction(txid)
        txout = tx.output(idx)
        if txout is None:
            raise ValueError(f'output {idx} does not exist in transaction {txid}')

        history = await self.get_history(script_hash(txout.pk_script))
        for pos, item in enumerate(history):
            if item.tx_hash == txid:
                break
        else:
            # Unconfirmed or not yet indexed
            self.logger.debug(f'{txid} not in history of its output {idx}')
            return SpendStatus.unknown()

        # History is in chain order so the spender can only come later
        for item in history[pos + 1:]:
            candidate = await self.get_transaction(item.tx_hash)
            if any(txin.spends(txid, idx) for txin in candidate.inputs):
                return SpendStatus.spent(item.tx_hash)
        return SpendStatus.unspent()

    async def spend_status(self, txid, idx) -> SpendStatus:
        '''Return the spend status of output idx of txid.

        Never raises: on any error a warning is logged and the status is
        UNKNOWN.
        '''
        try:
            return await self._spend_status(txid, idx)
        except Exception as e:
            self.logger.warning(f'could not check spend status of '
                                f'{txid}:{idx}: {e!r}')
            return SpendStatus.unknown()

    async def is_output_spent(self, txid, idx) -> Optional[str]:
        '''Return the spending txid, or None if unspent or unknown.'''
        status = await self.spend_status(txid, idx)
        return status.spender_txid if status.is_spent else None
