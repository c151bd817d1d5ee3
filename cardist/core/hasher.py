"""
:mod:`cardist.core.hasher` -- Structural hashing
================================================

Every content address in cardist is a blake2b-256 digest, formatted
with base58. Documents are not hashed by serializing them; instead
values are hashed *structurally* so that the digest of a mapping or a
set never depends on iteration order:

* bytes and strings hash their (UTF-8) bytes, tagged with their kind;
* integers hash as little-endian 64-bit values, booleans as one byte;
* lists and tuples hash the concatenation of their element digests,
  so order matters;
* sets hash the XOR of their element digests;
* dicts hash the XOR of ``H(H(key) + H(value))`` over their items;
* "structs" (see :func:`hash_struct`) hash a type tag followed by the
  XOR of ``H(field_name + H(value))`` over the fields whose value is
  not a zero value.

Since XOR is commutative, neither map iteration order nor field
declaration order influence the result, while adding a non-empty field
always does.

Objects may take part by implementing ``get_structural_hash()``,
returning a raw 32 byte digest.
"""

import hashlib
import binascii
import functools
import struct

import base58

from .common import SignatureError

DIGEST_SIZE = 32

hash_type = functools.partial(hashlib.blake2b, digest_size=DIGEST_SIZE)

_ZERO = b'\0' * DIGEST_SIZE


def blake2b_digest(data):
    return hash_type(data).digest()


def xor_digests(a, b):
    return bytes(x ^ y for x, y in zip(a, b))


def is_zero_value(x):
    if x is None or x is False:
        return True
    if isinstance(x, (int, float)) and not isinstance(x, bool):
        return x == 0
    if isinstance(x, (bytes, str, list, tuple, dict, set, frozenset)):
        return len(x) == 0
    return False


def hash_value(x):
    """Returns the raw structural digest of `x`"""
    if isinstance(x, bytes):
        return blake2b_digest(b'B' + x)
    elif isinstance(x, str):
        return blake2b_digest(b'B' + x.encode('UTF-8'))
    elif x is True or x is False:
        return blake2b_digest(b'T' if x else b'F')
    elif isinstance(x, int):
        return blake2b_digest(b'I' + struct.pack('<q', x))
    elif isinstance(x, (list, tuple)):
        h = hash_type(b'L')
        for child in x:
            h.update(hash_value(child))
        return h.digest()
    elif isinstance(x, (set, frozenset)):
        acc = _ZERO
        for child in x:
            acc = xor_digests(acc, hash_value(child))
        return blake2b_digest(b'S' + acc)
    elif isinstance(x, dict):
        acc = _ZERO
        for key, value in x.items():
            acc = xor_digests(acc, blake2b_digest(hash_value(key) + hash_value(value)))
        return blake2b_digest(b'D' + acc)
    elif x is None:
        return blake2b_digest(b'N')
    elif hasattr(x, 'get_structural_hash'):
        return x.get_structural_hash()
    elif isinstance(x, float):
        raise TypeError("floating-point number not allowed in hashed values")
    else:
        raise TypeError('cannot hash value of type %r' % type(x))


def hash_struct(tag, fields):
    """
    Hashes a struct-like aggregate.

    Parameters
    ----------
    tag : str
        Type tag, e.g. ``'signature'``. Distinguishes aggregates with
        the same fields.

    fields : dict
        Field name to value. Fields holding a zero value (``None``,
        ``''``, ``0``, ``False``, empty container) are skipped, so
        that absent and empty are the same but present and absent are
        not.

    Returns
    -------
    The raw 32 byte digest.
    """
    acc = _ZERO
    for name, value in fields.items():
        if is_zero_value(value):
            continue
        acc = xor_digests(acc, blake2b_digest(name.encode('UTF-8') + hash_value(value)))
    return blake2b_digest(b'O' + tag.encode('UTF-8') + b':' + acc)


def format_digest(digest):
    """The cardist standard format for digests: base58 of the raw bytes.

    `digest` may be raw bytes or anything with a `digest` method
    (e.g. a :mod:`hashlib` object).
    """
    if hasattr(digest, 'digest'):
        digest = digest.digest()
    return base58.b58encode(digest).decode('ascii')


def b58decode(s):
    try:
        return base58.b58decode(s)
    except ValueError as e:
        raise SignatureError('invalid base58 value %r: %s' % (s, e))


#
# Sums
#

SUM_TYPES = ('b2', 'sha256', 'etag')

def decode_sum(value):
    """Splits a sum as given by a recipe into ``(sum_type, sum_value)``.

    A plain string is a sum of the datum itself (type ``'self'``), a
    pair gives type and value explicitly.
    """
    if isinstance(value, str):
        return 'self', value
    if isinstance(value, (tuple, list)) and len(value) == 2 and \
            all(isinstance(x, str) for x in value):
        return value[0], value[1]
    raise SignatureError('sum must be a string or a (type, value) pair, got %r' % (value,))


def normalize_etag(value):
    value = value.strip()
    if value.startswith('W/'):
        value = value[2:]
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        value = value[1:-1]
    return value


def sum_bytes(sum_type, sum_value):
    """Returns the bytes that a sum stands for, as entered into signatures"""
    if sum_type == 'etag':
        if len(sum_value) < 2:
            raise SignatureError('etag sum too short: %r' % sum_value)
        return ('"%s"' % normalize_etag(sum_value)).encode('UTF-8')
    elif sum_type == 'sha256':
        try:
            return binascii.unhexlify(sum_value)
        except (binascii.Error, ValueError):
            raise SignatureError('sha256 sum is not hex: %r' % sum_value)
    elif sum_type in ('b2', 'self', 'dir'):
        return b58decode(sum_value)
    else:
        raise SignatureError('unknown sum type: %s' % sum_type)


def make_sum_hasher(sum_type):
    """Returns a fresh hashlib object for `sum_type`, or ``None`` for etags"""
    if sum_type in ('b2', 'self'):
        return hash_type()
    elif sum_type == 'sha256':
        return hashlib.sha256()
    elif sum_type == 'etag':
        return None
    else:
        raise SignatureError('unknown sum type: %s' % sum_type)


class HashingWriteStream(object):
    """
    Utility for hashing and writing to a stream at the same time.
    The `stream` may be `None` for convenience.

    """
    def __init__(self, hasher, stream):
        self.hasher = hasher
        self.stream = stream

    def write(self, x):
        self.hasher.update(x)
        if self.stream is not None:
            self.stream.write(x)
        return len(x)

    def flush(self):
        if self.stream is not None:
            self.stream.flush()

    def digest(self):
        return self.hasher.digest()


class HashingReadStream(object):
    """
    Utility for reading from a stream and hashing at the same time.
    """
    def __init__(self, hasher, stream):
        self.stream = stream
        self.hasher = hasher

    def read(self, *args):
        buf = self.stream.read(*args)
        self.hasher.update(buf)
        return buf

    def digest(self):
        return self.hasher.digest()
