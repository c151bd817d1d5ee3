"""
:mod:`cardist.core.store` --- The content-addressed store
=========================================================

A store is a ranked list of directories, each holding one subdirectory
per installed package, named by the package ID::

    store/
        <id>/                  package contents, read-only once complete
            .pkg-info.json     see below
        <id>.json              side-car car info of substituted packages
        _parent -> ../other    optional link to a store layered beneath

Lookup scans the directories in order and the first match wins; new
entries are created under :attr:`Store.default`. A ``_parent`` symlink
lets a store be layered on top of another one without copying;
:meth:`Store.prepend_path` follows the whole chain.

``.pkg-info.json``
------------------

.. code-block:: python

    {
      "id" : "<sig>-zlib-1.2.11",
      "name" : "zlib", "version" : "1.2.11", "repo" : "",
      "declared_deps" : ["<id>", ...],
      "build_deps" : ["<id>", ...],
      "runtime_deps" : ["<id>", ...],   # always a subset of build_deps
      "constraints" : {"os" : "linux"},
      "inputs" : [{"name" : "source", "sum_type" : "b2", "sum" : "...",
                   "path" : "https://..."}]
    }
"""

import os
import json
from os.path import join as pjoin

import jsonschema

from .common import (NotFoundError, StoreIOError, json_formatting_options, wrap_os_errors,
                     PKG_INFO_JSON, PARENT_LINK)
from .fileutils import freeze_tree, allow_writes

pkg_info_schema = {
    "$schema": "http://json-schema.org/draft-04/schema#",
    "title": "package info",
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "version": {"type": "string"},
        "repo": {"type": "string"},
        "declared_deps": {"type": ["array", "null"], "items": {"type": "string"}},
        "runtime_deps": {"type": ["array", "null"], "items": {"type": "string"}},
        "build_deps": {"type": ["array", "null"], "items": {"type": "string"}},
        "constraints": {"type": ["object", "null"],
                        "additionalProperties": {"type": "string"}},
        "inputs": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "sum_type": {"type": "string"},
                    "sum": {"type": "string"},
                    "dir": {"type": "string"},
                    "path": {"type": "string"},
                    "id": {"type": "string"},
                },
                "required": ["name"]
            }
        }
    },
    "required": ["id", "name"]
}


class PackageInfo(object):
    """In-memory form of ``.pkg-info.json``"""

    def __init__(self, id, name, version='', repo='', declared_deps=(), runtime_deps=(),
                 build_deps=(), constraints=None, inputs=()):
        self.id = id
        self.name = name
        self.version = version
        self.repo = repo
        self.declared_deps = list(declared_deps)
        self.runtime_deps = list(runtime_deps)
        self.build_deps = list(build_deps)
        self.constraints = dict(constraints or {})
        self.inputs = [dict(x) for x in inputs]

    def __repr__(self):
        return '<PackageInfo %s>' % self.id

    def __eq__(self, other):
        return isinstance(other, PackageInfo) and self.to_doc() == other.to_doc()

    def __ne__(self, other):
        return not self == other

    def to_doc(self):
        return {
            'id': self.id,
            'name': self.name,
            'version': self.version,
            'repo': self.repo,
            'declared_deps': self.declared_deps,
            'runtime_deps': self.runtime_deps,
            'build_deps': self.build_deps,
            'constraints': self.constraints,
            'inputs': self.inputs,
        }

    @classmethod
    def from_doc(cls, doc):
        jsonschema.validate(doc, pkg_info_schema)
        return cls(doc['id'], doc['name'], doc.get('version', ''), doc.get('repo', ''),
                   doc.get('declared_deps') or (), doc.get('runtime_deps') or (),
                   doc.get('build_deps') or (), doc.get('constraints'),
                   doc.get('inputs') or ())


def read_package_info(pkg_dir):
    """Reads ``.pkg-info.json`` of the package directory `pkg_dir`.

    Raises :class:`~cardist.core.common.NotFoundError` if there is none.
    """
    filename = pjoin(pkg_dir, PKG_INFO_JSON)
    with wrap_os_errors('read package info', filename):
        with open(filename) as f:
            doc = json.load(f)
    try:
        return PackageInfo.from_doc(doc)
    except jsonschema.ValidationError as e:
        raise StoreIOError('parse package info', filename, e.message)


def write_package_info(pkg_dir, info):
    filename = pjoin(pkg_dir, PKG_INFO_JSON)
    with wrap_os_errors('write package info', filename):
        with allow_writes(pkg_dir):
            with open(filename, 'w') as f:
                json.dump(info.to_doc(), f, **json_formatting_options)
                f.write('\n')


class Store(object):
    """
    Ranked list of store directories.

    Parameters
    ----------
    paths : list of str
        Searched in order by :meth:`locate`.

    default : str (optional)
        Where new entries go; defaults to the first path.
    """

    def __init__(self, paths, default=None):
        self.paths = [os.path.abspath(p) for p in paths]
        if default is None and self.paths:
            default = self.paths[0]
        self.default = os.path.abspath(default) if default else None

    def __repr__(self):
        return '<Store %r>' % self.paths

    @classmethod
    def from_dir(cls, path):
        """A store rooted at `path`, including its ``_parent`` chain"""
        store = cls([], default=path)
        store.prepend_path(path)
        return store

    def prepend_path(self, path):
        """Puts `path` and every store reachable through its ``_parent``
        links in front of the current paths.
        """
        path = os.path.abspath(path)
        chain = [path]
        while True:
            parent = pjoin(path, PARENT_LINK)
            if not os.path.lexists(parent):
                break
            if os.path.islink(parent):
                target = os.readlink(parent)
                path = os.path.normpath(pjoin(path, target))
            else:
                path = parent
            if path in chain:
                break
            chain.append(path)
        self.paths = chain + [p for p in self.paths if p not in chain]
        if self.default is None:
            self.default = chain[0]

    def locate(self, pkg_id):
        """Returns the directory of `pkg_id`; raises
        :class:`~cardist.core.common.NotFoundError` if absent.
        """
        for p in self.paths:
            path = pjoin(p, pkg_id)
            if os.path.exists(path):
                return path
        raise NotFoundError('no store entry for id: %s, paths: %r' % (pkg_id, self.paths))

    def find(self, pkg_id):
        """Like :meth:`locate`, but only complete entries (those with
        a ``.pkg-info.json``) count, and ``None`` is returned when absent.
        """
        for p in self.paths:
            path = pjoin(p, pkg_id)
            if os.path.exists(pjoin(path, PKG_INFO_JSON)):
                return path
        return None

    def is_installed(self, pkg_id):
        return self.find(pkg_id) is not None

    def expected_path(self, pkg_id):
        return pjoin(self.default, pkg_id)

    def pivot(self, path):
        """Makes `path` the only and default store directory"""
        path = os.path.abspath(path)
        self.paths = [path]
        self.default = path

    def read_info(self, pkg_id):
        return read_package_info(self.locate(pkg_id))

    def write_info(self, info):
        write_package_info(self.locate(info.id), info)

    def freeze(self, pkg_id):
        """Makes the entry of `pkg_id` read-only"""
        path = self.locate(pkg_id)
        with wrap_os_errors('freeze', path):
            freeze_tree(path)

    def entries(self, include_parents=False):
        """IDs of the entries in the default store directory (or all)"""
        result = set()
        for p in (self.paths if include_parents else [self.default]):
            if not os.path.isdir(p):
                continue
            for name in os.listdir(p):
                if name == PARENT_LINK or name.startswith('.'):
                    continue
                if os.path.isdir(pjoin(p, name)) and not os.path.islink(pjoin(p, name)):
                    result.add(name)
        return sorted(result)


#
# Dependency queries
#

def runtime_dependencies(store, recipe):
    """The dependencies `recipe` uses at runtime.

    For an installed recipe these are its declared dependencies pruned to
    the ``runtime_deps`` recorded in its ``.pkg-info.json``. Otherwise
    all declared dependencies are assumed to be needed, since the real
    set is only known after a build.
    """
    deps = recipe.all_dependencies()
    path = store.find(recipe.id)
    if path is None:
        return deps
    recorded = set(read_package_info(path).runtime_deps)
    return [dep for dep in deps if dep.id in recorded]


def build_dependencies(store, recipe):
    """Declared dependencies of `recipe` plus, transitively, their runtime
    dependencies; de-duplicated by ID in first-seen order.
    """
    result = []
    seen = set()

    def walk(deps):
        for dep in deps:
            if dep.id in seen:
                continue
            seen.add(dep.id)
            result.append(dep)
            walk(runtime_dependencies(store, dep))

    walk(recipe.all_dependencies())
    return result
