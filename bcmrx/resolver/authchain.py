# Copyright (c) 2016-2020, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''Authchain resolution.

An authchain starts at its authbase transaction and is extended each
time output 0 of its latest transaction is spent.  The authhead is the
first transaction along the chain whose output 0 is unspent.

Given a cache entry from an earlier run resolution does as little work
as possible:

  perfect  the cached chain is inactive, which is permanent; no queries
  good     the cached authhead is still unspent; one query
  partial  the cached authhead was spent; walk on from its spender
  miss     no cache entry; walk the whole chain from the authbase
'''

from enum import Enum
from typing import Optional

import attr

from bcmrx.lib.util import class_logger, now_millis
from bcmrx.resolver.cache import AuthchainCacheEntry


class HitType(Enum):
    PERFECT = 'perfect'
    GOOD = 'good'
    PARTIAL = 'partial'
    MISS = 'miss'


@attr.s(slots=True, frozen=True)
class Resolution:
    entry = attr.ib()           # type: AuthchainCacheEntry
    queries_used = attr.ib()
    hit_type = attr.ib()        # type: HitType
    # True if the walk was cut short by an exception
    faulted = attr.ib(default=False)


class AuthchainResolver:
    '''Resolves authchains using a spend checker, which must provide a
    coroutine spend_status(txid, idx) returning a SpendStatus.

    A walk gives up once the chain reaches max_chain_length transactions
    and reports the chain inactive, as it also does if the walk raises.
    An UNKNOWN spend status ends a walk as if the output were unspent; the
    chain is then reported active and will be checked again next run.
    '''

    DEFAULT_MAX_CHAIN_LENGTH = 1000

    def __init__(self, spend_checker, *, max_chain_length=DEFAULT_MAX_CHAIN_LENGTH,
                 clock=now_millis):
        if max_chain_length < 1:
            raise ValueError(f'max_chain_length must be positive, '
                             f'not {max_chain_length}')
        self.logger = class_logger(__name__, self.__class__.__name__)
        self.spend_checker = spend_checker
        self.max_chain_length = max_chain_length
        self.clock = clock

    async def resolve(self, authbase, cached: Optional[AuthchainCacheEntry] = None):
        '''Resolve the authchain starting at authbase and return a
        Resolution.'''
        if cached is None:
            return await self._walk(authbase, authbase, 1, 0, HitType.MISS)
        if not cached.is_active:
            return Resolution(cached, 0, HitType.PERFECT)
        return await self._check_authhead(authbase, cached)

    async def _check_authhead(self, authbase, cached):
        try:
            status = await self.spend_checker.spend_status(cached.authhead, 0)
        except Exception as e:
            self.logger.warning(f'checking authhead {cached.authhead} of '
                                f'{authbase} failed: {e!r}')
            entry = attr.evolve(cached, is_active=False,
                                last_checked_timestamp=self.clock())
            return Resolution(entry, 1, HitType.PARTIAL, faulted=True)

        if not status.is_spent:
            entry = attr.evolve(cached, last_checked_timestamp=self.clock())
            return Resolution(entry, 1, HitType.GOOD)
        return await self._walk(authbase, status.spender_txid,
                                cached.chain_length + 1, 1, HitType.PARTIAL)

    async def _walk(self, authbase, txid, chain_length, queries_used, hit_type):
        '''Follow spends of output 0 from txid, which is at position
        chain_length in the chain.'''
        spend_status = self.spend_checker.spend_status
        try:
            while chain_length < self.max_chain_length:
                status = await spend_status(txid, 0)
                queries_used += 1
                if not status.is_spent:
                    return self._resolution(authbase, txid, chain_length, True,
                                            queries_used, hit_type)
                txid = status.spender_txid
                chain_length += 1
        except Exception as e:
            self.logger.warning(f'authchain walk of {authbase} failed at '
                                f'{txid} (length {chain_length:,d}): {e!r}')
            return self._resolution(authbase, txid, chain_length, False,
                                    queries_used, hit_type, faulted=True)

        self.logger.warning(f'authchain of {authbase} exceeded maximum length '
                            f'of {self.max_chain_length:,d}')
        return self._resolution(authbase, txid, chain_length, False,
                                queries_used, hit_type)

    def _resolution(self, authbase, authhead, chain_length, is_active,
                    queries_used, hit_type, faulted=False):
        entry = AuthchainCacheEntry(
            authbase=authbase,
            authhead=authhead,
            chain_length=chain_length,
            is_active=is_active,
            last_checked_timestamp=self.clock(),
        )
        return Resolution(entry, queries_used, hit_type, faulted)
