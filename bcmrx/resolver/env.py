# Copyright (c) 2016-2020, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''Class for handling environment configuration and defaults.'''


from os import environ
from urllib.parse import urlsplit

from bcmrx.lib.util import class_logger


class EnvBase:
    '''Wraps environment configuration.'''

    class Error(Exception):
        pass

    def __init__(self):
        self.logger = class_logger(__name__, self.__class__.__name__)

    @classmethod
    def default(cls, envvar, default):
        return environ.get(envvar, default)

    @classmethod
    def boolean(cls, envvar, default):
        default = 'Yes' if default else ''
        return bool(cls.default(envvar, default).strip())

    @classmethod
    def required(cls, envvar):
        value = environ.get(envvar)
        if value is None:
            raise cls.Error(f'required envvar {envvar} not set')
        return value

    @classmethod
    def integer(cls, envvar, default):
        value = environ.get(envvar)
        if value is None:
            return default
        try:
            return int(value)
        except Exception:
            raise cls.Error(f'cannot convert envvar {envvar} value {value} '
                            f'to an integer')

    @classmethod
    def custom(cls, envvar, default, parse):
        value = environ.get(envvar)
        if value is None:
            return default
        try:
            return parse(value)
        except Exception as e:
            raise cls.Error(f'cannot parse envvar {envvar} value {value}') from e


class Env(EnvBase):
    '''The resolver's configuration, read from the environment.'''

    MIN_CONCURRENCY = 1
    MAX_CONCURRENCY = 200
    DEFAULT_CACHE_PATH = './bcmr-registries/.authchain-cache.json'

    def __init__(self):
        super().__init__()
        self.chaingraph_url = self.required('CHAINGRAPH_URL')
        self.fulcrum_url = self.required('FULCRUM_URL')
        self.fulcrum_host, self.fulcrum_port, self.fulcrum_ssl = \
            self.parse_fulcrum_url(self.fulcrum_url)
        self.pool_size = self.integer('POOL_SIZE', 5)
        self.request_timeout = self.custom('REQUEST_TIMEOUT', 10.0, float)
        self.queue_timeout = self.custom('QUEUE_TIMEOUT', 120.0, float)
        self.concurrency = self.integer('CONCURRENCY', 50)
        self.max_authchain_length = self.integer('MAX_AUTHCHAIN_LENGTH', 1000)
        self.use_cache = self.boolean('USE_CACHE', True)
        self.cache_path = self.default('CACHE_PATH', self.DEFAULT_CACHE_PATH)
        self.output_path = self.default('OUTPUT_PATH', 'bcmr-registries.json')
        self.verbose = self.boolean('VERBOSE', False)

        if self.pool_size < 1:
            raise self.Error(f'POOL_SIZE must be positive, not {self.pool_size}')
        if self.request_timeout <= 0:
            raise self.Error('REQUEST_TIMEOUT must be positive')
        if self.queue_timeout <= 0:
            raise self.Error('QUEUE_TIMEOUT must be positive')
        if not self.MIN_CONCURRENCY <= self.concurrency <= self.MAX_CONCURRENCY:
            raise self.Error(f'CONCURRENCY must be between {self.MIN_CONCURRENCY} '
                             f'and {self.MAX_CONCURRENCY}, not {self.concurrency}')
        if self.max_authchain_length < 1:
            raise self.Error('MAX_AUTHCHAIN_LENGTH must be positive')

    @classmethod
    def parse_fulcrum_url(cls, url):
        '''Return a (host, port, use_ssl) triple for a tcp:// or ssl:// URL.'''
        parts = urlsplit(url)
        if parts.scheme not in ('tcp', 'ssl'):
            raise cls.Error(f'FULCRUM_URL must be tcp://host:port or '
                            f'ssl://host:port, not {url}')
        try:
            port = parts.port
        except ValueError:
            port = None
        if not parts.hostname or port is None:
            raise cls.Error(f'FULCRUM_URL {url} lacks a host or port')
        return parts.hostname, port, parts.scheme == 'ssl'
