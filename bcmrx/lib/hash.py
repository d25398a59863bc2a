# Copyright (c) 2016-2020, Neil Booth
# Copyright (c) 2017, the ElectrumX authors
#
# All rights reserved.
#
# See the file "LICENCE" for information about the copyright
# and warranty status of this software.

'''Cryptograph hash functions and related classes.'''


import hashlib


_sha256 = hashlib.sha256

HASH_HEX_LEN = 64


def sha256(x):
    '''Simple wrapper of hashlib sha256.'''
    return _sha256(x).digest()


def hash_to_hex_str(x):
    '''Convert a big-endian binary hash to displayed hex string.

    Display form of a binary hash is reversed and converted to hex.
    '''
    return bytes(reversed(x)).hex()


def script_hash(script):
    '''Return the Electrum scripthash of a locking script as a hex string.

    This is the sha256 of the script, byte-reversed, which is how Electrum
    servers key their address histories.
    '''
    return hash_to_hex_str(sha256(script))
