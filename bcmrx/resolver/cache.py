# Copyright (c) 2016-2020, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''The authchain cache.

Maps an authbase txid to the last known state of its authchain.  An
inactive entry is permanent: once the authhead's output 0 is spent it
stays spent, so inactive entries never need checking again.  Active
entries need one spend query to confirm they are still current.

The cache file is only ever replaced whole, so what is on disk is always
a complete snapshot from a successful run.
'''

import json
import os
from typing import Dict, Optional

import attr
from aiorpcx import run_in_thread

from bcmrx.lib.hash import HASH_HEX_LEN
from bcmrx.lib.util import class_logger, is_hex_str


CACHE_VERSION = 1


class CacheFormatError(Exception):
    '''Raised when a cache file's contents are not a usable cache.'''


def _is_txid(value):
    return is_hex_str(value, HASH_HEX_LEN)


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


@attr.s(slots=True, frozen=True)
class AuthchainCacheEntry:
    authbase = attr.ib()
    authhead = attr.ib()
    chain_length = attr.ib()
    is_active = attr.ib()
    last_checked_timestamp = attr.ib()   # Unix milliseconds

    @chain_length.validator
    def _check_chain_length(self, attribute, value):
        if not _is_int(value) or value < 1:
            raise ValueError(f'chain length must be a positive integer, '
                             f'not {value!r}')

    def to_json(self):
        return {
            'authbase': self.authbase,
            'authhead': self.authhead,
            'chainLength': self.chain_length,
            'isActive': self.is_active,
            'lastCheckedTimestamp': self.last_checked_timestamp,
        }

    @classmethod
    def from_json(cls, item):
        if not isinstance(item, dict):
            raise CacheFormatError(f'entry is not an object: {item!r}')
        try:
            authbase = item['authbase']
            authhead = item['authhead']
            chain_length = item['chainLength']
            is_active = item['isActive']
            timestamp = item['lastCheckedTimestamp']
        except KeyError as e:
            raise CacheFormatError(f'entry lacks {e}') from None
        if not (_is_txid(authbase) and _is_txid(authhead)):
            raise CacheFormatError('entry authbase or authhead is not a txid')
        if not isinstance(is_active, bool):
            raise CacheFormatError('entry isActive is not a boolean')
        if not _is_int(timestamp):
            raise CacheFormatError('entry lastCheckedTimestamp is not an integer')
        try:
            return cls(authbase, authhead, chain_length, is_active, timestamp)
        except ValueError as e:
            raise CacheFormatError(str(e)) from None


@attr.s(slots=True, frozen=True)
class CacheStats:
    total_entries = attr.ib()
    active_entries = attr.ib()
    inactive_entries = attr.ib()
    oldest_timestamp = attr.ib()    # None if empty
    newest_timestamp = attr.ib()


class AuthchainCache:
    '''In-memory authchain cache keyed by authbase.

    Each resolution writes only its own authbase's entry, so concurrent
    resolutions of different registries never touch the same key.
    '''

    def __init__(self, version=CACHE_VERSION, entries=None):
        self.version = version
        self.entries = entries if entries is not None else {}  # type: Dict[str, AuthchainCacheEntry]

    def __len__(self):
        return len(self.entries)

    def __contains__(self, authbase):
        return authbase in self.entries

    def get(self, authbase) -> Optional[AuthchainCacheEntry]:
        return self.entries.get(authbase)

    def put(self, entry: AuthchainCacheEntry):
        self.entries[entry.authbase] = entry

    def stats(self):
        entries = self.entries.values()
        active = sum(entry.is_active for entry in entries)
        timestamps = [entry.last_checked_timestamp for entry in entries]
        return CacheStats(
            total_entries=len(self.entries),
            active_entries=active,
            inactive_entries=len(self.entries) - active,
            oldest_timestamp=min(timestamps, default=None),
            newest_timestamp=max(timestamps, default=None),
        )

    def to_json(self):
        return {
            'version': self.version,
            'entries': {authbase: entry.to_json()
                        for authbase, entry in self.entries.items()},
        }

    @classmethod
    def from_json(cls, data):
        '''Return a (cache, dropped) pair built from decoded file contents.

        Raises CacheFormatError if the version or entries are unusable.
        Individual malformed entries are dropped and counted.
        '''
        if not isinstance(data, dict):
            raise CacheFormatError('cache is not a JSON object')
        version = data.get('version')
        if not _is_int(version):
            raise CacheFormatError('invalid cache version')
        if version != CACHE_VERSION:
            raise CacheFormatError(f'unsupported cache version {version}')
        items = data.get('entries')
        if not isinstance(items, dict):
            raise CacheFormatError('invalid cache entries')

        cache = cls(version)
        dropped = 0
        for authbase, item in items.items():
            try:
                entry = AuthchainCacheEntry.from_json(item)
            except CacheFormatError:
                dropped += 1
                continue
            if entry.authbase != authbase:
                dropped += 1
                continue
            cache.put(entry)
        return cache, dropped


class AuthchainCacheFile:
    '''Loads and saves an AuthchainCache as a JSON file.

    Methods prefixed fs_ do blocking file I/O; the others run them in a
    thread.
    '''

    def __init__(self, path):
        self.logger = class_logger(__name__, self.__class__.__name__)
        self.path = path

    def fs_load(self) -> AuthchainCache:
        '''Return the cache on disk, or an empty cache if the file is
        missing, unreadable or not a valid cache.'''
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return AuthchainCache()
        except (OSError, ValueError) as e:
            self.logger.warning(f'failed to load cache {self.path}: {e}; '
                                f'starting with an empty cache')
            return AuthchainCache()

        try:
            cache, dropped = AuthchainCache.from_json(data)
        except CacheFormatError as e:
            self.logger.warning(f'{e} in {self.path}; starting with an empty cache')
            return AuthchainCache()
        if dropped:
            self.logger.warning(f'dropped {dropped:,d} malformed cache entries '
                                f'from {self.path}')
        return cache

    def fs_save(self, cache: AuthchainCache):
        '''Atomically replace the cache file with the given cache.'''
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f'{self.path}.tmp'
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(cache.to_json(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except Exception as e:
            self.logger.error(f'failed to save cache {self.path}: {e}')
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise

    async def load(self) -> AuthchainCache:
        return await run_in_thread(self.fs_load)

    async def save(self, cache: AuthchainCache):
        await run_in_thread(self.fs_save, cache)
