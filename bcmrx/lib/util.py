# Copyright (c) 2016-2020, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''Miscellaneous utility classes and functions.'''


import logging
import time
from string import hexdigits
from struct import Struct


class CompactLogFormatter(logging.Formatter):
    '''Shortens the level name to a single letter.'''

    def format(self, record):
        record.levelname = record.levelname[0]
        return super().format(record)


def class_logger(path, classname):
    '''Return a hierarchical logger for a class.'''
    return logging.getLogger(path).getChild(classname)


def chunks(items, size):
    '''Break up items, an iterable, into chunks of length size.'''
    for i in range(0, len(items), size):
        yield items[i: i + size]


def formatted_time(t, sep=' '):
    '''Return a number of seconds as a string in days, hours, mins and
    maybe secs.'''
    t = int(t)
    fmts = (('{:d}d', 86400), ('{:02d}h', 3600), ('{:02d}m', 60))
    parts = []
    for fmt, n in fmts:
        val = t // n
        if parts or val:
            parts.append(fmt.format(val))
        t %= n
    if len(parts) < 3:
        parts.append(f'{t:02d}s')
    return sep.join(parts)


def now_millis():
    '''Current wall-clock time as integer Unix milliseconds.'''
    return int(time.time() * 1000)


def strip_hex_prefix(hex_str):
    '''Strip a PostgreSQL (\\x) or 0x prefix from a hex string.'''
    if hex_str.startswith('\\x') or hex_str.startswith('0x'):
        return hex_str[2:]
    return hex_str


def is_hex_str(text, length=None):
    '''Return True if text is a lowercase or uppercase hex string, optionally
    of the given length.'''
    if not isinstance(text, str):
        return False
    if length is not None and len(text) != length:
        return False
    return len(text) % 2 == 0 and all(c in hexdigits for c in text)


struct_le_H = Struct('<H')
struct_le_I = Struct('<I')
unpack_le_uint16_from = struct_le_H.unpack_from
unpack_le_uint32_from = struct_le_I.unpack_from
