import os
import errno
import glob
import shutil
import stat
from os.path import join as pjoin
from contextlib import contextmanager


@contextmanager
def allow_writes(path):
    modified = False
    if not os.path.islink(path):
        old_mode = os.stat(path).st_mode
        os.chmod(path, old_mode | 0o222)
        modified = True
    try:
        yield
    finally:
        if modified:
            os.chmod(path, old_mode)


def silent_makedirs(path):
    """like os.makedirs, but does not raise error in the event that the directory already exists"""
    try:
        os.makedirs(path)
    except OSError:
        if not os.path.isdir(path):
            raise


def silent_unlink(path):
    """like os.unlink but does not raise error if the file does not exist"""
    try:
        os.unlink(path)
    except OSError:
        if os.path.lexists(path):
            raise


def fresh_dir(path):
    """Creates `path`, removing whatever a previous crashed run left there"""
    try:
        os.mkdir(path)
    except OSError as e:
        if e.errno != errno.EEXIST:
            raise
        rmtree_write_protected(path)
        os.mkdir(path)


def atomic_symlink(source, dest):
    """Overwrites a destination symlink atomically without raising error
    if target exists (by first creating link to `source`, then renaming it to `dest`)
    """
    i = 0
    while True:
        try:
            templink = dest + '-%d' % i
            os.symlink(source, templink)
        except OSError as e:
            if e.errno == errno.EEXIST:
                i += 1
            else:
                raise
        else:
            break
    try:
        os.rename(templink, dest)
    except OSError:
        os.unlink(templink)
        raise


def write_protect(path):
    if not os.path.islink(path):
        mode = os.stat(path).st_mode
        os.chmod(path, mode & ~0o222)


def freeze_tree(rootpath):
    """Makes every file and directory under `rootpath` read-only.

    Directories become ``0555``; files keep their executable bits but
    lose all write bits. Symlinks are left alone.
    """
    for dirpath, dirnames, filenames in os.walk(rootpath, topdown=False):
        for fname in filenames:
            write_protect(pjoin(dirpath, fname))
        for dname in dirnames:
            qname = pjoin(dirpath, dname)
            if not os.path.islink(qname):
                os.chmod(qname, 0o555)
    os.chmod(rootpath, 0o555)


def thaw_tree(rootpath):
    """Inverse of :func:`freeze_tree`; adds the owner write bit everywhere"""
    os.chmod(rootpath, os.stat(rootpath).st_mode | 0o200)
    for dirpath, dirnames, filenames in os.walk(rootpath):
        for name in dirnames + filenames:
            qname = pjoin(dirpath, name)
            if not os.path.islink(qname):
                os.chmod(qname, os.stat(qname).st_mode | 0o200)


def rmtree_write_protected(rootpath):
    """
    Like shutil.rmtree, but removes files/directories that are write-protected.
    """
    for dirpath, dirnames, filenames in os.walk(rootpath, followlinks=False, topdown=False):
        os.chmod(dirpath, 0o777)
        for fname in filenames:
            qname = pjoin(dirpath, fname)
            os.unlink(qname)
        for fname in dirnames:
            qname = pjoin(dirpath, fname)
            if os.path.islink(qname):
                os.unlink(qname)
            else:
                os.rmdir(qname)
    if os.path.islink(rootpath):
        os.unlink(rootpath)
    else:
        os.chmod(rootpath, 0o777)
        os.rmdir(rootpath)


def remove_tree_counting(rootpath):
    """Removes `rootpath` like :func:`rmtree_write_protected` and returns
    ``(entries, bytes)`` removed.
    """
    entries = 0
    size = 0
    for dirpath, dirnames, filenames in os.walk(rootpath, followlinks=False):
        os.chmod(dirpath, 0o777)
        for name in dirnames + filenames:
            st = os.lstat(pjoin(dirpath, name))
            entries += 1
            if stat.S_ISREG(st.st_mode):
                size += st.st_size
    rmtree_write_protected(rootpath)
    return entries, size


def disk_usage(rootpath):
    """Returns ``(entries, bytes)`` of regular files and links under `rootpath`"""
    entries = 0
    size = 0
    for dirpath, dirnames, filenames in os.walk(rootpath, followlinks=False):
        for name in dirnames + filenames:
            st = os.lstat(pjoin(dirpath, name))
            entries += 1
            if stat.S_ISREG(st.st_mode):
                size += st.st_size
    return entries, size


def install_files(pattern, dest, link=False, mode_or=0, logger=None):
    """Copies (or symlinks) everything matching the glob `pattern` into `dest`.

    When `pattern` matches a single path, `dest` names the result
    itself; for multiple matches `dest` is a directory receiving each
    match under its basename. Directories are copied recursively,
    symlinks are recreated rather than followed. `mode_or` is or-ed
    into the mode of every copied file and directory.

    Returns the list of created paths.
    """
    matches = sorted(glob.glob(pattern))
    if not matches:
        raise OSError(errno.ENOENT, 'nothing matches %s' % pattern)
    if len(matches) == 1:
        targets = [(matches[0], dest)]
    else:
        silent_makedirs(dest)
        targets = [(m, pjoin(dest, os.path.basename(m))) for m in matches]

    created = []
    for src, dst in targets:
        if logger is not None:
            logger.debug('install %s -> %s' % (src, dst))
        parent = os.path.dirname(dst)
        if parent:
            silent_makedirs(parent)
        if link:
            os.symlink(os.path.abspath(src), dst)
        elif os.path.islink(src):
            os.symlink(os.readlink(src), dst)
        elif os.path.isdir(src):
            shutil.copytree(src, dst, symlinks=True)
            if mode_or:
                _or_mode_tree(dst, mode_or)
        else:
            shutil.copy2(src, dst)
            if mode_or:
                os.chmod(dst, os.stat(dst).st_mode | mode_or)
        created.append(dst)
    return created


def _or_mode_tree(rootpath, mode_or):
    os.chmod(rootpath, os.stat(rootpath).st_mode | mode_or)
    for dirpath, dirnames, filenames in os.walk(rootpath):
        for name in dirnames + filenames:
            qname = pjoin(dirpath, name)
            if not os.path.islink(qname):
                os.chmod(qname, os.stat(qname).st_mode | mode_or)
