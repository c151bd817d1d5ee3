import os
from os.path import join as pjoin

from .utils import temp_dir, dump, cat, assert_raises
from .. import fileutils


def test_freeze_and_thaw():
    with temp_dir() as d:
        dump(pjoin(d, 'pkg', 'bin', 'tool'), 'x', mode=0o755)
        dump(pjoin(d, 'pkg', 'share', 'doc'), 'y', mode=0o644)
        os.symlink('tool', pjoin(d, 'pkg', 'bin', 'link'))
        fileutils.freeze_tree(pjoin(d, 'pkg'))
        assert os.stat(pjoin(d, 'pkg', 'bin', 'tool')).st_mode & 0o777 == 0o555
        assert os.stat(pjoin(d, 'pkg', 'share', 'doc')).st_mode & 0o777 == 0o444
        assert os.stat(pjoin(d, 'pkg', 'share')).st_mode & 0o777 == 0o555
        fileutils.thaw_tree(pjoin(d, 'pkg'))
        assert os.stat(pjoin(d, 'pkg', 'share', 'doc')).st_mode & 0o777 == 0o644
        fileutils.freeze_tree(pjoin(d, 'pkg'))
        fileutils.rmtree_write_protected(pjoin(d, 'pkg'))
        assert os.listdir(d) == []


def test_allow_writes():
    with temp_dir() as d:
        os.mkdir(pjoin(d, 'ro'))
        os.chmod(pjoin(d, 'ro'), 0o555)
        with fileutils.allow_writes(pjoin(d, 'ro')):
            dump(pjoin(d, 'ro', 'f'), 'x')
        assert os.stat(pjoin(d, 'ro')).st_mode & 0o777 == 0o555


def test_fresh_dir():
    with temp_dir() as d:
        dump(pjoin(d, 'build', 'leftover'), 'x')
        fileutils.fresh_dir(pjoin(d, 'build'))
        assert os.listdir(pjoin(d, 'build')) == []


def test_atomic_symlink():
    with temp_dir() as d:
        fileutils.atomic_symlink('a', pjoin(d, 'link'))
        fileutils.atomic_symlink('b', pjoin(d, 'link'))
        assert os.readlink(pjoin(d, 'link')) == 'b'
        assert os.listdir(d) == ['link']


def test_counting():
    with temp_dir() as d:
        dump(pjoin(d, 'x', 'a'), '12345')
        dump(pjoin(d, 'x', 'sub', 'b'), '123')
        os.symlink('a', pjoin(d, 'x', 'l'))
        assert fileutils.disk_usage(pjoin(d, 'x')) == (4, 8)
        assert fileutils.remove_tree_counting(pjoin(d, 'x')) == (4, 8)
        assert not os.path.exists(pjoin(d, 'x'))


def test_install_files():
    with temp_dir() as d:
        dump(pjoin(d, 'src', 'a.h'), 'a')
        dump(pjoin(d, 'src', 'b.h'), 'b')
        dump(pjoin(d, 'src', 'sub', 'c.h'), 'c')
        created = fileutils.install_files(pjoin(d, 'src', '*.h'), pjoin(d, 'inc'))
        assert created == [pjoin(d, 'inc', 'a.h'), pjoin(d, 'inc', 'b.h')]
        fileutils.install_files(pjoin(d, 'src', 'sub'), pjoin(d, 'out', 'sub'), mode_or=0o111)
        assert cat(pjoin(d, 'out', 'sub', 'c.h')) == 'c'
        assert os.stat(pjoin(d, 'out', 'sub', 'c.h')).st_mode & 0o111 == 0o111
        fileutils.install_files(pjoin(d, 'src', 'a.h'), pjoin(d, 'linked.h'), link=True)
        assert os.readlink(pjoin(d, 'linked.h')) == pjoin(d, 'src', 'a.h')
        with assert_raises(OSError):
            fileutils.install_files(pjoin(d, 'src', '*.c'), pjoin(d, 'inc'))
