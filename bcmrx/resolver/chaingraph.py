# Copyright (c) 2016-2020, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''Candidate BCMR announcements from a Chaingraph GraphQL endpoint.'''


import asyncio
from typing import List

import aiohttp

from bcmrx.lib.script import BCMR_PREFIX_HEX
from bcmrx.lib.tx import CandidateOutput
from bcmrx.lib.util import class_logger, strip_hex_prefix


class ChaingraphError(Exception):
    '''Raised when Chaingraph cannot be queried or returns errors.'''


BCMR_QUERY = '''
  query SearchOutputsByLockingBytecodePrefix {
    search_output_prefix(
      args: { locking_bytecode_prefix_hex: "%s" }
    ) {
      locking_bytecode
      output_index
      transaction_hash
      transaction {
        block_inclusions {
          block {
            hash
            height
          }
        }
      }
    }
  }
''' % BCMR_PREFIX_HEX


class ChaingraphSource:
    '''Fetches every output whose locking bytecode starts with the BCMR
    prefix.

    Chaingraph returns hashes with a PostgreSQL \\x prefix and numbers as
    strings; both are normalised here.
    '''

    def __init__(self, url, *, timeout=120.0):
        self.logger = class_logger(__name__, self.__class__.__name__)
        self.url = url
        self.timeout = timeout

    async def _query(self, query):
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json={'query': query}) as resp:
                    if resp.status != 200:
                        raise ChaingraphError(f'Chaingraph request failed: '
                                              f'HTTP {resp.status}')
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ChaingraphError(f'Chaingraph request failed: {e!r}') from e

        if not isinstance(data, dict):
            raise ChaingraphError('Chaingraph response is not an object')
        if data.get('errors'):
            raise ChaingraphError(f'GraphQL errors: {data["errors"]}')
        return data.get('data') or {}

    async def candidates(self) -> List[CandidateOutput]:
        '''Return the BCMR candidate outputs.'''
        data = await self._query(BCMR_QUERY)
        outputs = data.get('search_output_prefix') or []
        candidates = self.candidates_from_outputs(outputs)
        first = sum(candidate.is_first_output_in_tx for candidate in candidates)
        self.logger.info(f'fetched {len(candidates):,d} BCMR outputs in '
                         f'{first:,d} transactions')
        return candidates

    def candidates_from_outputs(self, outputs) -> List[CandidateOutput]:
        '''Convert Chaingraph output objects to candidates.  Malformed
        outputs are skipped with a warning.'''
        candidates = []
        for output in outputs:
            try:
                candidates.append(self._candidate(output))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f'skipping malformed Chaingraph output: {e!r}')

        first_index = {}
        for candidate in candidates:
            index = first_index.get(candidate.txid)
            if index is None or candidate.output_index < index:
                first_index[candidate.txid] = candidate.output_index
        for candidate in candidates:
            candidate.is_first_output_in_tx = (
                first_index[candidate.txid] == candidate.output_index)
        return candidates

    @staticmethod
    def _candidate(output):
        txid = strip_hex_prefix(output['transaction_hash']).lower()
        script = bytes.fromhex(strip_hex_prefix(output['locking_bytecode']))
        output_index = int(str(output['output_index']))
        inclusions = (output.get('transaction') or {}).get('block_inclusions') or []
        if inclusions:
            block_height = int(str(inclusions[0]['block']['height']))
        else:
            block_height = 0
        return CandidateOutput(txid, output_index, script, block_height, False)
