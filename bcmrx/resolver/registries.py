# Copyright (c) 2016-2020, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''Resolve every BCMR registry's authchain in concurrent batches.'''


import time
from collections import Counter
from typing import List, Optional

import attr
from aiorpcx import TaskGroup

from bcmrx.lib.script import parse_bcmr_script
from bcmrx.lib.util import chunks, class_logger
from bcmrx.resolver.authchain import AuthchainResolver, HitType, Resolution
from bcmrx.resolver.cache import AuthchainCache, AuthchainCacheFile


@attr.s(slots=True, frozen=True)
class ResolvedRegistry:
    authbase = attr.ib()
    authhead = attr.ib()
    block_height = attr.ib()
    hash = attr.ib()
    uris = attr.ib(converter=tuple)
    is_burned = attr.ib()
    authchain_length = attr.ib()
    is_authhead_unspent = attr.ib()

    @property
    def token_id(self):
        return self.authbase

    @property
    def is_valid(self):
        return bool(self.uris)

    def to_json(self):
        return {
            'authbase': self.authbase,
            'authhead': self.authhead,
            'tokenId': self.token_id,
            'blockHeight': self.block_height,
            'hash': self.hash,
            'uris': list(self.uris),
            'isBurned': self.is_burned,
            'isValid': self.is_valid,
            'authchainLength': self.authchain_length,
            'isAuthheadUnspent': self.is_authhead_unspent,
        }


@attr.s(slots=True)
class ResolutionStats:
    '''Running totals over a resolution run.'''
    hits = attr.ib(factory=Counter)
    queries = attr.ib(default=0)
    resolved = attr.ib(default=0)
    faulted = attr.ib(default=0)

    def add(self, resolution: Resolution):
        self.hits[resolution.hit_type] += 1
        self.queries += resolution.queries_used
        self.resolved += 1
        if resolution.faulted:
            self.faulted += 1

    @property
    def cache_hits(self):
        return self.resolved - self.hits[HitType.MISS]

    @property
    def hit_rate(self):
        return self.cache_hits / self.resolved if self.resolved else 0.0

    def estimated_queries_saved(self, baseline_per_registry=2):
        '''Estimated queries saved against a cold cache, assuming an
        average authchain length of 2.'''
        return self.resolved * baseline_per_registry - self.queries


class RegistryResolver:
    '''Drives an AuthchainResolver over the candidate outputs.

    Candidates are resolved in batches of concurrency at a time.  A fresh
    cache is filled as candidates resolve and written out only after all
    of them are done, so an exception part way through leaves the cache
    file as it was.
    '''

    MIN_CONCURRENCY = 1
    MAX_CONCURRENCY = 200
    PROGRESS_INTERVAL = 100

    def __init__(self, resolver: AuthchainResolver, *, cache: Optional[AuthchainCache] = None,
                 cache_file: Optional[AuthchainCacheFile] = None,
                 concurrency=50, verbose=False):
        if not self.MIN_CONCURRENCY <= concurrency <= self.MAX_CONCURRENCY:
            raise ValueError(f'concurrency must be between {self.MIN_CONCURRENCY} '
                             f'and {self.MAX_CONCURRENCY}, not {concurrency}')
        self.logger = class_logger(__name__, self.__class__.__name__)
        self.resolver = resolver
        self.old_cache = cache if cache is not None else AuthchainCache()
        self.cache_file = cache_file
        self.concurrency = concurrency
        self.verbose = verbose
        self.new_cache = AuthchainCache()
        self.stats = ResolutionStats()

    def parse_candidates(self, candidates):
        '''Return (candidate, announcement) pairs for the first BCMR output
        of each transaction, skipping unparseable scripts.'''
        pairs = []
        seen = set()
        for candidate in candidates:
            if not candidate.is_first_output_in_tx or candidate.txid in seen:
                continue
            seen.add(candidate.txid)
            announcement = parse_bcmr_script(candidate.locking_script)
            if announcement is None:
                self.logger.warning(f'ignoring unparseable BCMR output '
                                    f'{candidate.txid}:{candidate.output_index}')
                continue
            pairs.append((candidate, announcement))
        return pairs

    async def _resolve_one(self, candidate, announcement):
        cached = self.old_cache.get(candidate.txid)
        resolution = await self.resolver.resolve(candidate.txid, cached)
        registry = ResolvedRegistry(
            authbase=candidate.txid,
            authhead=resolution.entry.authhead,
            block_height=candidate.block_height,
            hash=announcement.hash,
            uris=announcement.uris,
            # An announcement at output 0 burns the identity output itself
            is_burned=candidate.output_index == 0,
            authchain_length=resolution.entry.chain_length,
            is_authhead_unspent=resolution.entry.is_active,
        )
        return registry, resolution

    def _store(self, resolution):
        entry = resolution.entry
        if resolution.faulted:
            # A fault is not evidence the chain became inactive
            previous = self.old_cache.get(entry.authbase)
            if previous is not None:
                self.new_cache.put(previous)
            return
        self.new_cache.put(entry)

    def _log_resolution(self, registry, resolution, total):
        queries = resolution.queries_used
        desc = {
            HitType.PERFECT: 'perfect hit (0 queries)',
            HitType.GOOD: 'good hit (1 query)',
            HitType.PARTIAL: f'partial hit ({queries:,d} queries)',
            HitType.MISS: f'miss ({queries:,d} queries)',
        }[resolution.hit_type]
        self.logger.info(f'[{self.stats.resolved:,d}/{total:,d}] '
                         f'{registry.authbase[:8]}... {desc}')

    async def resolve_all(self, candidates) -> List[ResolvedRegistry]:
        '''Resolve the candidates and return the registries, newest first.'''
        pairs = self.parse_candidates(candidates)
        total = len(pairs)
        self.logger.info(f'resolving authchains for {total:,d} registries '
                         f'(concurrency: {self.concurrency})...')
        start = time.monotonic()
        registries = []
        next_progress = self.PROGRESS_INTERVAL

        for batch in chunks(pairs, self.concurrency):
            async with TaskGroup() as group:
                tasks = [await group.spawn(self._resolve_one(candidate, announcement))
                         for candidate, announcement in batch]

            for task in tasks:
                registry, resolution = task.result()
                self.stats.add(resolution)
                self._store(resolution)
                registries.append(registry)
                if self.verbose:
                    self._log_resolution(registry, resolution, total)

            done = self.stats.resolved
            if done >= next_progress or done == total:
                elapsed = time.monotonic() - start
                rate = done / elapsed if elapsed else 0.0
                self.logger.info(f'resolving authchains... {done:,d}/{total:,d} '
                                 f'({elapsed:.1f}s, {rate:.1f} reg/s)')
                while next_progress <= done:
                    next_progress += self.PROGRESS_INTERVAL

        elapsed = time.monotonic() - start
        self.logger.info(f'authchain resolution complete in {elapsed:.2f}s')
        self.log_stats()

        if self.cache_file is not None:
            await self.cache_file.save(self.new_cache)
            self.logger.info(f'cache saved to {self.cache_file.path}')

        registries.sort(key=lambda registry: registry.block_height, reverse=True)
        return registries

    def log_stats(self):
        stats = self.stats
        hits = stats.hits
        resolved = stats.resolved
        self.logger.info(f'perfect hits: {hits[HitType.PERFECT]:,d} (0 queries each)')
        self.logger.info(f'good hits: {hits[HitType.GOOD]:,d} (1 query each)')
        self.logger.info(f'partial hits: {hits[HitType.PARTIAL]:,d} '
                         f'(continued from cache)')
        self.logger.info(f'misses: {hits[HitType.MISS]:,d} (full authchain walk)')
        self.logger.info(f'cached: {stats.cache_hits:,d}/{resolved:,d} '
                         f'({stats.hit_rate * 100:.1f}%)')
        if stats.faulted:
            self.logger.warning(f'{stats.faulted:,d} resolutions failed and '
                                f'were not cached as inactive')
        average = stats.queries / resolved if resolved else 0.0
        self.logger.info(f'spend queries: {stats.queries:,d} '
                         f'(average {average:.2f} per registry)')
        if stats.cache_hits:
            saved = stats.estimated_queries_saved()
            baseline = resolved * 2
            self.logger.info(f'estimated queries saved: {saved:,d} '
                             f'(~{saved / baseline * 100:.1f}% reduction)')
