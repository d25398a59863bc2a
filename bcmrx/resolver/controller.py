# Copyright (c) 2016-2020, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''Top-level resolution run and the command-line entry point.'''


import asyncio
import json
import logging
import os
import ssl
import sys
import time

from aiorpcx import run_in_thread

import bcmrx
from bcmrx.lib.util import CompactLogFormatter, class_logger, formatted_time, now_millis
from bcmrx.resolver.authchain import AuthchainResolver
from bcmrx.resolver.cache import AuthchainCache, AuthchainCacheFile
from bcmrx.resolver.chaingraph import ChaingraphSource
from bcmrx.resolver.electrum import ElectrumClient
from bcmrx.resolver.env import Env
from bcmrx.resolver.pool import ConnectionPool
from bcmrx.resolver.registries import RegistryResolver


class Controller:
    '''Runs one resolution: connect to the Electrum server, load the cache,
    fetch candidates, resolve them and write the registry list.

    Failing to reach the Electrum server is fatal, and happens before the
    cache is touched.
    '''

    def __init__(self, env: Env):
        self.logger = class_logger(__name__, self.__class__.__name__)
        self.env = env

    def connection_pool(self):
        env = self.env
        ssl_context = ssl.create_default_context() if env.fulcrum_ssl else None
        return ConnectionPool(env.fulcrum_host, env.fulcrum_port, size=env.pool_size,
                              ssl=ssl_context, timeout=env.request_timeout,
                              queue_timeout=env.queue_timeout)

    async def load_cache(self):
        '''Return a (cache, cache_file) pair; cache_file is None if caching
        is disabled.'''
        env = self.env
        if not env.use_cache:
            self.logger.info('authchain cache disabled')
            return AuthchainCache(), None

        cache_file = AuthchainCacheFile(env.cache_path)
        cache = await cache_file.load()
        stats = cache.stats()
        if stats.total_entries:
            now = now_millis()
            oldest = (now - stats.oldest_timestamp) / 3_600_000
            newest = (now - stats.newest_timestamp) / 3_600_000
            self.logger.info(f'loaded authchain cache from {env.cache_path}: '
                             f'{stats.total_entries:,d} entries '
                             f'({stats.active_entries:,d} active, '
                             f'{stats.inactive_entries:,d} inactive)')
            self.logger.info(f'cache age: oldest {oldest:.1f}h, newest {newest:.1f}h')
        else:
            self.logger.info(f'building new authchain cache at {env.cache_path}')
        return cache, cache_file

    def fs_write_registries(self, registries):
        path = self.env.output_path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f'{path}.tmp'
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump([registry.to_json() for registry in registries], f, indent=2)
        os.replace(tmp_path, path)

    async def run(self):
        env = self.env
        start = time.monotonic()
        async with self.connection_pool() as pool:
            client = ElectrumClient(pool)
            info = await client.server_info()
            self.logger.info(f'Electrum server {info.version} protocol '
                             f'{info.protocol_version} at height {info.block_height:,d}')

            cache, cache_file = await self.load_cache()
            candidates = await ChaingraphSource(env.chaingraph_url).candidates()
            resolver = AuthchainResolver(client, max_chain_length=env.max_authchain_length)
            registries = await RegistryResolver(
                resolver, cache=cache, cache_file=cache_file,
                concurrency=env.concurrency, verbose=env.verbose,
            ).resolve_all(candidates)
            self.logger.info(f'{pool.request_count:,d} requests sent to the '
                             f'Electrum server')

        await run_in_thread(self.fs_write_registries, registries)
        active = sum(registry.is_authhead_unspent for registry in registries)
        self.logger.info(f'wrote {len(registries):,d} registries ({active:,d} '
                         f'active) to {env.output_path}')
        self.logger.info(f'run took {formatted_time(time.monotonic() - start)}')
        return registries


def main():
    '''Set up logging and run the resolver.'''
    log_fmt = Env.default('LOG_FORMAT', '%(levelname)s:%(name)s:%(message)s')
    log_level = Env.default('LOG_LEVEL', 'INFO')
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CompactLogFormatter(log_fmt))
    logger = logging.getLogger()
    logger.addHandler(handler)
    logger.setLevel(log_level)

    logging.info(f'{bcmrx.version} starting')
    try:
        env = Env()
        asyncio.run(Controller(env).run())
    except Exception:
        logging.exception(f'{bcmrx.version} terminated abnormally')
        sys.exit(1)
    logging.info(f'{bcmrx.version} terminated normally')


if __name__ == '__main__':
    main()
