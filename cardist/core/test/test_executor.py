import os
import json
import tarfile
import threading
from os.path import join as pjoin

import pytest

from ..executor import RunContext, RunMode, HashMode, join_quote
from ..common import (CommandFailedError, OperationCancelledError, InvalidOperationError,
                      SumMismatchError, NoSuchAttributeError)
from ..hasher import hash_type, format_digest
from ...util.logger_fixtures import log_capture
from .utils import temp_dir, dump, cat, assert_raises, which, logger


class Sink(object):
    # "hashes" by collecting the data
    def __init__(self):
        self.chunks = []

    def update(self, x):
        self.chunks.append(x)

    def getvalue(self):
        return b''.join(self.chunks)


def hash_phase(phase):
    sink = Sink()
    phase(RunContext.for_hashing(sink))
    return sink.getvalue()


def make_ctx(d, log=logger, cancel=None):
    prefix = pjoin(d, 'prefix')
    os.mkdir(prefix)
    return RunContext(RunMode(log, cancel), top=d, build=d, prefix=prefix)


needs_bash = pytest.mark.skipif(which('bash') is None, reason='bash not available')


#
# Hash mode
#

def test_hash_encoding():
    def phase(ctx):
        ctx.system('make', '-j2')

    expected = (b'"system"\n"dir"\n""\n' + json.dumps('"make" "-j2"').encode('UTF-8') +
                b'\n\n')
    assert hash_phase(phase) == expected


def test_hash_mode_value_lines():
    class Sink(object):
        data = b''

        def update(self, b):
            self.data += b

    sink = Sink()
    HashMode(sink).add('op', 3, True, None)
    assert sink.data == b'"op"\n3\ntrue\nnull\n\n'


def test_hash_mode_placeholders():
    def phase(ctx):
        ctx.system('./configure', '--prefix=' + ctx.prefix)

    assert b'$prefix' in hash_phase(phase)


def test_hash_quoting_distinguishes_arguments():
    def one(ctx):
        ctx.system('a b')

    def two(ctx):
        ctx.system('a', 'b')

    assert hash_phase(one) != hash_phase(two)
    assert join_quote(['a b']) != join_quote(['a', 'b'])


def test_hash_mode_has_no_side_effects():
    with temp_dir() as d:
        def phase(ctx):
            ctx.write_file(pjoin(d, 'x'), 'data')
            ctx.mkdir(pjoin(d, 'dir'))
            ctx.system('false')
            ctx.download('http://example.invalid/x.tar.gz', 'x.tar.gz')
            ctx.rm_rf(d)

        hash_phase(phase)
        assert sorted(os.listdir(d)) == []


def test_hash_mode_deterministic():
    def phase(ctx):
        ctx.set_env('CC', 'gcc')
        ctx.inreplace('Makefile', '/usr/local', ctx.prefix)
        ctx.install_files('bin', 'build/*')
        ctx.link(['bin/tool'], 'libexec')
        ctx.download('https://example.com/a.tar.gz', 'a.tar.gz', sum=('b2', 'abc'))

    h1 = hash_type()
    phase(RunContext.for_hashing(h1))
    h2 = hash_type()
    phase(RunContext.for_hashing(h2))
    assert format_digest(h1) == format_digest(h2)


def test_hash_download_sum_matters():
    def one(ctx):
        ctx.download('https://example.com/a.tar.gz', 'a.tar.gz', sum=('b2', 'abc'))

    def two(ctx):
        ctx.download('https://example.com/a.tar.gz', 'a.tar.gz', sum=('b2', 'abd'))

    assert hash_phase(one) != hash_phase(two)


def test_hash_chdir_includes_inner_block():
    def one(ctx):
        ctx.chdir('src', lambda: ctx.system('make'))

    def two(ctx):
        ctx.chdir('src', lambda: ctx.system('make', 'check'))

    h = hash_phase(one)
    assert b'"chdir"' in h and b'"end-chdir"' in h
    assert h != hash_phase(two)


def test_attr_contract():
    ctx = RunContext.for_hashing(Sink())
    assert ctx.attr('prefix') == '$prefix'
    assert ctx.attr('build') == '$build'
    assert callable(ctx.attr('system'))
    with assert_raises(NoSuchAttributeError):
        ctx.attr('__class__')


#
# Run mode
#

def test_system_output_is_logged():
    if which('echo') is None:
        pytest.skip('echo not available')
    with temp_dir() as d:
        with log_capture() as log:
            ctx = make_ctx(d, log)
            ctx.system('echo', 'hello world')
        log.assertLogged('^INFO:hello world$')


def test_system_failure():
    if which('false') is None:
        pytest.skip('false not available')
    with temp_dir() as d:
        ctx = make_ctx(d)
        with assert_raises(CommandFailedError) as e:
            ctx.system('false')
        assert e.exc_val.returncode == 1


def test_system_unknown_program():
    with temp_dir() as d:
        ctx = make_ctx(d)
        with assert_raises(InvalidOperationError):
            ctx.system('no-such-program-hopefully')


@needs_bash
def test_shell():
    with temp_dir() as d:
        ctx = make_ctx(d)
        ctx.set_env('GREETING', 'hi')
        ctx.shell('echo "$GREETING" > out.txt\necho done >> out.txt\n')
        assert cat(pjoin(d, 'out.txt')) == 'hi\ndone\n'


def test_chdir_restores_on_error():
    with temp_dir() as d:
        os.mkdir(pjoin(d, 'sub'))
        ctx = make_ctx(d)

        def inner():
            assert ctx.build == pjoin(d, 'sub')
            raise ValueError('boom')

        with assert_raises(ValueError):
            ctx.chdir('sub', inner)
        assert ctx.build == d
        assert ctx.chdir('sub', lambda: ctx.build) == pjoin(d, 'sub')


def test_text_edits():
    with temp_dir() as d:
        dump(pjoin(d, 'Makefile'), 'PREFIX=/usr/local\nCC=cc\n')
        ctx = make_ctx(d)
        ctx.inreplace('Makefile', '/usr/local', ctx.prefix)
        ctx.inreplace_re('Makefile', r'CC=\w+', 'CC=gcc')
        assert cat(pjoin(d, 'Makefile')) == 'PREFIX=%s\nCC=gcc\n' % ctx.prefix
        with assert_raises(InvalidOperationError):
            ctx.inreplace('../Makefile', 'a', 'b')


def test_files():
    with temp_dir() as d:
        ctx = make_ctx(d)
        ctx.write_file('share/doc/README', 'read me')
        assert cat(pjoin(ctx.prefix, 'share', 'doc', 'README')) == 'read me'

        dump(pjoin(d, 'build', 'tool'), '#!/bin/sh\n')
        dump(pjoin(d, 'build', 'other'), '#!/bin/sh\n')
        ctx.install_files(pjoin(ctx.prefix, 'bin'), 'build/*')
        assert sorted(os.listdir(pjoin(ctx.prefix, 'bin'))) == ['other', 'tool']

        ctx.link([pjoin(ctx.prefix, 'bin', 'tool')], 'libexec')
        assert os.readlink(pjoin(ctx.prefix, 'libexec', 'tool')) == \
            pjoin(ctx.prefix, 'bin', 'tool')

        ctx.mkdir('scratch/a')
        assert os.path.isdir(pjoin(d, 'scratch', 'a'))
        ctx.rm_rf('scratch')
        assert not os.path.exists(pjoin(d, 'scratch'))
        ctx.rm_f('build/other')
        assert not os.path.exists(pjoin(d, 'build', 'other'))


def test_env_operations():
    with temp_dir() as d:
        ctx = make_ctx(d)
        assert ctx.env['PATH'] == '/bin:/usr/bin'
        ctx.prepend_env('PATH', '/opt/bin')
        ctx.append_env('PATH', '/usr/local/bin')
        assert ctx.env['PATH'] == '/opt/bin:/bin:/usr/bin:/usr/local/bin'
        ctx.append_env('CFLAGS', '-O2')
        ctx.set_env('CC', 'gcc')
        assert ctx.env['CFLAGS'] == '-O2'
        assert ctx.env['CC'] == 'gcc'


def test_set_root_descends_single_dir():
    with temp_dir() as d:
        dump(pjoin(d, 'src', 'zlib-1.2.11', 'configure'), '')
        dump(pjoin(d, 'src', '.hidden'), '')
        ctx = make_ctx(d)
        ctx.set_root('src')
        assert ctx.build == pjoin(d, 'src', 'zlib-1.2.11')


def test_cancel():
    with temp_dir() as d:
        cancel = threading.Event()
        ctx = make_ctx(d, cancel=cancel)
        ctx.write_file('a', 'x')
        cancel.set()
        with assert_raises(OperationCancelledError):
            ctx.write_file('b', 'y')
        assert not os.path.exists(pjoin(ctx.prefix, 'b'))


def test_download_and_unpack():
    with temp_dir() as d:
        dump(pjoin(d, 'pkg', 'hello.c'), 'int main() { return 0; }\n')
        archive = pjoin(d, 'hello.tar.gz')
        with tarfile.open(archive, 'w:gz') as tf:
            tf.add(pjoin(d, 'pkg'), arcname='hello-1.0')
        with open(archive, 'rb') as f:
            sum = format_digest(hash_type(f.read()))

        ctx = make_ctx(d)
        ctx.download(archive, 'dl/hello.tar.gz', sum=('b2', sum))
        ctx.unpack('dl/hello.tar.gz')
        assert os.path.exists(pjoin(d, 'dl', 'hello-1.0', 'hello.c'))

        with assert_raises(SumMismatchError):
            ctx.download(archive, 'dl/bad.tar.gz', sum=('b2', format_digest(hash_type(b''))))
        assert not os.path.exists(pjoin(d, 'dl', 'bad.tar.gz'))
