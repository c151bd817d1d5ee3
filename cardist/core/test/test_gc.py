import os
from os.path import join as pjoin

from ..gc import Collector
from ..common import PARENT_LINK
from .utils import temp_dir, dump, make_store_entry, logger


def make_data_dir(d):
    store = pjoin(d, 'store')
    make_store_entry(store, 'A-libc-1', files={'lib/libc.so': 'c' * 100})
    make_store_entry(store, 'B-zlib-1', files={'lib/libz.so': 'z' * 10},
                     runtime_deps=['A-libc-1'])
    make_store_entry(store, 'C-gcc-1', files={'bin/gcc': 'g' * 1000},
                     runtime_deps=['A-libc-1'])
    make_store_entry(store, 'D-python-3', files={'bin/python': 'p'},
                     runtime_deps=['B-zlib-1'])
    make_store_entry(store, 'E-unused-1', files={'x': 'e'})
    os.makedirs(pjoin(d, 'roots'))
    return store


def test_empty():
    with temp_dir() as d:
        c = Collector(d, logger)
        assert c.mark() == []
        assert c.sweep() == []


def test_profile_root():
    with temp_dir() as d:
        store = make_data_dir(d)
        profile = pjoin(d, 'profiles', 'default')
        os.makedirs(pjoin(profile, 'bin'))
        os.symlink(pjoin(store, 'D-python-3', 'bin', 'python'), pjoin(profile, 'bin', 'python'))
        os.symlink(pjoin(d, 'profiles', 'default'), pjoin(d, 'roots', 'default'))

        c = Collector(d, logger)
        marked = c.mark()
        assert marked == ['A-libc-1', 'B-zlib-1', 'D-python-3']
        assert c.sweep_unmarked(marked) == ['C-gcc-1', 'E-unused-1']


def test_direct_and_relative_roots():
    with temp_dir() as d:
        store = make_data_dir(d)
        os.symlink(pjoin(store, 'C-gcc-1'), pjoin(d, 'roots', 'gcc'))
        os.makedirs(pjoin(d, 'roots', 'env', 'lib'))
        os.symlink('../../../store/E-unused-1/x', pjoin(d, 'roots', 'env', 'lib', 'x'))
        # a dangling link into a removed entry is harmless
        os.symlink(pjoin(store, 'F-gone-1', 'y'), pjoin(d, 'roots', 'env', 'y'))

        c = Collector(d, logger)
        assert c.mark() == ['A-libc-1', 'C-gcc-1', 'E-unused-1', 'F-gone-1']
        assert c.sweep() == ['B-zlib-1', 'D-python-3']


def test_sweep_and_remove():
    with temp_dir() as d:
        store = make_data_dir(d)
        os.symlink(pjoin(store, 'B-zlib-1'), pjoin(d, 'roots', 'zlib'))
        dump(pjoin(store, 'C-gcc-1.json'), '{}')
        os.symlink('/elsewhere', pjoin(store, PARENT_LINK))

        c = Collector(d, logger)
        marked = c.mark()
        assert c.disk_usage(['C-gcc-1']) > 1000
        result = c.sweep_and_remove(marked)
        assert result.removed == ['C-gcc-1', 'D-python-3', 'E-unused-1']
        assert result.bytes > 1000
        assert result.entries >= 6
        assert sorted(os.listdir(store)) == sorted([PARENT_LINK, 'A-libc-1', 'B-zlib-1'])

        # idempotent
        assert c.sweep_and_remove(c.mark()).removed == []


def test_add_and_remove_roots():
    with temp_dir() as d:
        store = make_data_dir(d)
        c = Collector(d, logger)
        c.add_root('gcc', pjoin(store, 'C-gcc-1'))
        c.add_root('gcc', pjoin(store, 'B-zlib-1'))
        assert c.roots() == {'gcc': pjoin(store, 'B-zlib-1')}
        assert c.mark() == ['A-libc-1', 'B-zlib-1']
        c.remove_root('gcc')
        assert c.roots() == {}
        assert c.mark() == []
