"""
:mod:`cardist.core.gc` --- Garbage collection of the store
==========================================================

Layout below the data directory::

    roots/<name>  -> profile dir    (or directly a store entry)
    store/<id>/...
    store/<id>.json

A profile is a tree of symlinks into ``store/<id>``. Marking starts from
the directories in ``roots/``, records every store entry a symlink in
them points into, and adds the ``runtime_deps`` recorded in the
``.pkg-info.json`` of each marked entry, transitively. Every store entry
not marked can be swept. Roots are registered with
:meth:`Collector.add_root`, which replaces an existing root atomically.

Example::

    collector = Collector('/home/me/.cardist', logger)
    result = collector.sweep_and_remove(collector.mark())
    logger.info('removed %d entries, %d bytes' % (result.entries, result.bytes))
"""

import os
from os.path import join as pjoin

from .common import NotFoundError, wrap_os_errors, PARENT_LINK
from .store import read_package_info
from .fileutils import (remove_tree_counting, disk_usage, silent_unlink, silent_makedirs,
                        atomic_symlink)


class SweepResult(object):
    def __init__(self, removed, entries, bytes):
        self.removed = removed
        self.entries = entries
        self.bytes = bytes

    def __repr__(self):
        return '<SweepResult removed=%d entries=%d bytes=%d>' % (
            len(self.removed), self.entries, self.bytes)


class Collector(object):
    """Mark-and-sweep collector for the store below `data_dir`"""

    def __init__(self, data_dir, logger=None):
        self.data_dir = os.path.abspath(data_dir)
        self.logger = logger

    @property
    def store_dir(self):
        return pjoin(self.data_dir, 'store')

    @property
    def roots_dir(self):
        return pjoin(self.data_dir, 'roots')

    def _prefixes(self):
        prefixes = [self.store_dir + os.sep]
        real = os.path.realpath(self.store_dir) + os.sep
        if real not in prefixes:
            prefixes.append(real)
        return prefixes

    def _store_id(self, target, prefixes):
        for prefix in prefixes:
            if target.startswith(prefix):
                return target[len(prefix):].split(os.sep)[0] or None
        return None

    #
    # Roots
    #

    def add_root(self, name, target):
        """Registers `target` (a profile dir or store entry) as the root `name`.

        An existing root of the same name is replaced atomically.
        """
        if os.sep in name or name.startswith('.'):
            raise ValueError('invalid root name: %r' % name)
        silent_makedirs(self.roots_dir)
        with wrap_os_errors('add root', pjoin(self.roots_dir, name)):
            atomic_symlink(os.path.abspath(target), pjoin(self.roots_dir, name))

    def remove_root(self, name):
        silent_unlink(pjoin(self.roots_dir, name))

    def roots(self):
        """Maps the name of each root to its link target"""
        if not os.path.isdir(self.roots_dir):
            return {}
        return dict((name, os.readlink(pjoin(self.roots_dir, name)))
                    for name in sorted(os.listdir(self.roots_dir))
                    if os.path.islink(pjoin(self.roots_dir, name)))

    #
    # Mark
    #

    def mark(self):
        """Returns the sorted IDs reachable from the roots"""
        seen = set()
        if not os.path.isdir(self.roots_dir):
            return []
        prefixes = self._prefixes()
        for name in sorted(os.listdir(self.roots_dir)):
            path = pjoin(self.roots_dir, name)
            if not os.path.isdir(path):
                continue
            with wrap_os_errors('mark', path):
                target = os.path.realpath(path)
                pkg_id = self._store_id(target, prefixes)
                if pkg_id is not None:
                    self._mark_id(pkg_id, seen)
                self._mark_dir(target, seen, prefixes)
        return sorted(seen)

    def _mark_dir(self, dir, seen, prefixes):
        for dirpath, dirnames, filenames in os.walk(dir):
            for name in dirnames + filenames:
                qname = pjoin(dirpath, name)
                if not os.path.islink(qname):
                    continue
                target = os.readlink(qname)
                if not os.path.isabs(target):
                    target = os.path.normpath(pjoin(dirpath, target))
                pkg_id = self._store_id(target, prefixes)
                if pkg_id is not None:
                    self._mark_id(pkg_id, seen)

    def _mark_id(self, pkg_id, seen):
        if pkg_id in seen:
            return
        seen.add(pkg_id)
        try:
            info = read_package_info(pjoin(self.store_dir, pkg_id))
        except NotFoundError:
            if self.logger is not None:
                self.logger.debug('%s has no package info' % pkg_id)
            return
        for dep in info.runtime_deps:
            self._mark_id(dep, seen)

    #
    # Sweep
    #

    def store_ids(self):
        if not os.path.isdir(self.store_dir):
            return []
        result = []
        for name in os.listdir(self.store_dir):
            path = pjoin(self.store_dir, name)
            if name == PARENT_LINK or name.startswith('.') or os.path.islink(path):
                continue
            if os.path.isdir(path):
                result.append(name)
        return sorted(result)

    def sweep_unmarked(self, marked):
        """Store IDs not in `marked`, sorted"""
        marked = set(marked)
        return [pkg_id for pkg_id in self.store_ids() if pkg_id not in marked]

    def sweep(self):
        return self.sweep_unmarked(self.mark())

    def sweep_and_remove(self, marked):
        """Removes every store entry not in `marked`; returns a :class:`SweepResult`"""
        removed = []
        entries = size = 0
        for pkg_id in self.sweep_unmarked(marked):
            path = pjoin(self.store_dir, pkg_id)
            with wrap_os_errors('remove', path):
                n, nbytes = remove_tree_counting(path)
                silent_unlink(path + '.json')
            if self.logger is not None:
                self.logger.info('removed %s' % pkg_id)
            removed.append(pkg_id)
            entries += n
            size += nbytes
        return SweepResult(removed, entries, size)

    def disk_usage(self, ids):
        """Total bytes of the store entries `ids`"""
        total = 0
        for pkg_id in ids:
            path = pjoin(self.store_dir, pkg_id)
            with wrap_os_errors('disk usage', path):
                total += disk_usage(path)[1]
        return total
