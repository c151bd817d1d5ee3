import hashlib

import pytest

from .. import hasher
from ..common import SignatureError
from .utils import assert_raises


def test_hash_value_floats_fail():
    with assert_raises(TypeError):
        hasher.hash_value([1, {'a': {'b': 3.4}}])


def test_hash_value_kinds_differ():
    digests = set(hasher.hash_value(x) for x in
                  [b'1', '1', 1, True, [1], set([1]), {1: 1}, None, [], set(), {}])
    # bytes and str hash the same, empty list/set/dict differ by tag
    assert len(digests) == 10
    assert hasher.hash_value(b'abc') == hasher.hash_value('abc')


def test_dict_order_independent():
    a = {}
    a['x'] = 1
    a['y'] = [1, 2]
    b = {}
    b['y'] = [1, 2]
    b['x'] = 1
    assert hasher.hash_value(a) == hasher.hash_value(b)
    assert hasher.hash_value({'x': 1}) != hasher.hash_value({'x': 2})
    # swapping keys and values is a different dict
    assert hasher.hash_value({'a': 'b'}) != hasher.hash_value({'b': 'a'})


def test_list_order_matters():
    assert hasher.hash_value([1, 2]) != hasher.hash_value([2, 1])
    assert hasher.hash_value(set([1, 2])) == hasher.hash_value(set([2, 1]))


def test_hash_struct():
    fields = {'Name': 'zlib', 'Version': '1.2'}
    reversed_fields = {'Version': '1.2', 'Name': 'zlib'}
    assert hasher.hash_struct('sig', fields) == hasher.hash_struct('sig', reversed_fields)
    # zero values are the same as absent fields
    with_empty = dict(fields, Deps=frozenset(), Post=None)
    assert hasher.hash_struct('sig', fields) == hasher.hash_struct('sig', with_empty)
    # ...but a present value is not
    assert hasher.hash_struct('sig', fields) != \
        hasher.hash_struct('sig', dict(fields, Post='x'))
    assert hasher.hash_struct('sig', fields) != hasher.hash_struct('other', fields)


def test_structural_hash_protocol():
    class Thing(object):
        def get_structural_hash(self):
            return b'\1' * 32

    assert hasher.hash_value([Thing()]) == hasher.hash_value([Thing()])
    with assert_raises(TypeError):
        hasher.hash_value(object())


def test_format_digest():
    h = hasher.hash_type(b'hello')
    s = hasher.format_digest(h)
    assert s == hasher.format_digest(h.digest())
    assert hasher.b58decode(s) == h.digest()
    assert len(h.digest()) == 32
    with assert_raises(SignatureError):
        hasher.b58decode('0OIl')


def test_decode_sum():
    assert hasher.decode_sum('abc') == ('self', 'abc')
    assert hasher.decode_sum(('sha256', 'ab')) == ('sha256', 'ab')
    with assert_raises(SignatureError):
        hasher.decode_sum(3)


@pytest.mark.parametrize('etag, expected', [
    ('"abc"', 'abc'),
    ('W/"abc"', 'abc'),
    (' abc ', 'abc'),
])
def test_normalize_etag(etag, expected):
    assert hasher.normalize_etag(etag) == expected


def test_sum_bytes():
    digest = hashlib.sha256(b'x').digest()
    assert hasher.sum_bytes('sha256', hashlib.sha256(b'x').hexdigest()) == digest
    assert hasher.sum_bytes('etag', 'W/"12"') == b'"12"'
    b2 = hasher.format_digest(hasher.hash_type(b'x'))
    assert hasher.sum_bytes('b2', b2) == hasher.hash_type(b'x').digest()
    with assert_raises(SignatureError):
        hasher.sum_bytes('sha256', 'not hex')
    with assert_raises(SignatureError):
        hasher.sum_bytes('md5', 'abc')


def test_hashing_streams():
    class Sink(object):
        def __init__(self):
            self.chunks = []

        def write(self, x):
            self.chunks.append(x)

    sink = Sink()
    w = hasher.HashingWriteStream(hasher.hash_type(), sink)
    w.write(b'foo')
    w.write(b'bar')
    assert b''.join(sink.chunks) == b'foobar'
    assert w.digest() == hasher.hash_type(b'foobar').digest()
