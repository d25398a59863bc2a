# Copyright (c) 2016-2020, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''BCMR announcement script parsing.'''


from dataclasses import dataclass
from typing import List, Optional

from bcmrx.lib.util import unpack_le_uint16_from, unpack_le_uint32_from


class OpCodes:
    OP_PUSHDATA1 = 0x4c
    OP_PUSHDATA2 = 0x4d
    OP_PUSHDATA4 = 0x4e
    OP_RETURN = 0x6a


BCMR_TAG = b'BCMR'
# OP_RETURN <push 4> "BCMR" <push 32>
BCMR_PREFIX = bytes((OpCodes.OP_RETURN, len(BCMR_TAG))) + BCMR_TAG + bytes((32, ))
BCMR_PREFIX_HEX = BCMR_PREFIX.hex()


class ScriptError(Exception):
    '''Exception used for script errors.'''


@dataclass
class BCMRAnnouncement:
    '''The content hash and URIs published by a BCMR output.'''
    __slots__ = 'hash', 'uris'
    hash: str
    uris: List[str]


class PushDataReader:
    '''Reads successive push-data items from a script.

    Parsing stops at the first opcode that is not a push, or at a push
    that runs past the end of the script.
    '''

    def __init__(self, script, start=0):
        self.script = script
        self.script_length = len(script)
        self.cursor = start

    def read_pushes(self):
        pushes = []
        while self.cursor < self.script_length:
            try:
                data = self._read_push()
            except ScriptError:
                break
            if data is None:
                break
            pushes.append(data)
        return pushes

    def _read_push(self) -> Optional[bytes]:
        op = self._read_byte()
        if 0x01 <= op < OpCodes.OP_PUSHDATA1:
            dlen = op
        elif op == OpCodes.OP_PUSHDATA1:
            dlen = self._read_byte()
        elif op == OpCodes.OP_PUSHDATA2:
            dlen, = unpack_le_uint16_from(self._read_nbytes(2))
        elif op == OpCodes.OP_PUSHDATA4:
            dlen, = unpack_le_uint32_from(self._read_nbytes(4))
        else:
            return None
        if self.cursor + dlen > self.script_length:
            return None
        return self._read_nbytes(dlen)

    def _read_byte(self):
        if self.cursor >= self.script_length:
            raise ScriptError(f'truncated script at position {self.cursor}')
        cursor = self.cursor
        self.cursor += 1
        return self.script[cursor]

    def _read_nbytes(self, n):
        cursor = self.cursor
        self.cursor = end = cursor + n
        if self.script_length < end:
            raise ScriptError(
                f'trying to read {n} bytes at position {cursor}, but only '
                f'{self.script_length - cursor} bytes available'
            )
        return self.script[cursor:end]


def is_bcmr_script(script):
    return script.startswith(BCMR_PREFIX) and len(script) >= len(BCMR_PREFIX) + 32


def parse_bcmr_script(script) -> Optional[BCMRAnnouncement]:
    '''Parse a BCMR OP_RETURN locking script.

    Returns None if the script is not a BCMR announcement.  URI pushes
    that are empty after stripping or are not valid UTF-8 are skipped.
    '''
    if not is_bcmr_script(script):
        return None
    start = len(BCMR_PREFIX)
    content_hash = script[start:start + 32].hex()
    pushes = PushDataReader(script, start + 32).read_pushes()

    uris = []
    for push in pushes:
        try:
            uri = push.decode('utf-8').strip()
        except UnicodeDecodeError:
            continue
        if uri:
            uris.append(uri)
    return BCMRAnnouncement(content_hash, uris)
