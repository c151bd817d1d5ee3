"""
:mod:`cardist.core.recipe` --- Recipes, instances and inputs
============================================================

Recipes are authored elsewhere (by a scripting front-end); this module
only sees them through a small attribute contract. Every value the
core consumes implements ``attr(name)``, which either returns the
attribute or raises :class:`~cardist.core.common.NoSuchAttributeError`.
The closed set of such values is:

:class:`Prototype`
    What the front-end produces: a bag of named attributes. The
    recognised names are listed in :data:`RECIPE_ATTRS`.

:class:`Recipe`
    A prototype bound to a constraint set, with its inputs and
    dependencies extracted, and whose signature and ID can be computed
    (see :mod:`cardist.core.signature`).

:class:`Instance`
    An anonymous content-addressed artifact (a fetched file, a local
    directory, a nested sub-build) that can be used as an input or as a
    dependency.

:class:`~cardist.core.executor.RunContext`
    The context passed to build phases.

Inputs
------

A recipe's ``input`` attribute is a single source (which is then named
``source``) or a dict mapping names to sources. A source is one of
:class:`SourceFile`, :class:`SourceDir` or an :class:`Instance`. Inputs
are ordered by name. Each input resolves lazily, on first signature
request, into an :class:`Instance` whose identity string
``name-version-signature`` enters the recipe signature.

Sessions
--------

:class:`RecipeSession` caches loaded recipes by
``(name, namespace, args, constraints)`` for the duration of one
resolution and detects recursive loads.
"""

import os
import stat
from os.path import join as pjoin

import requests

from .common import (NoSuchAttributeError, SignatureError, DependencyCycleError,
                     UNKNOWN_VERSION)
from .hasher import (hash_type, format_digest, decode_sum, sum_bytes, normalize_etag)
from . import fetch
from . import signature as sig_engine

RECIPE_ATTRS = ('name', 'version', 'description', 'url', 'metadata', 'input', 'install',
                'hook', 'post_install', 'dependencies', 'explicit_dependencies')


def get_attr(value, name, default=None):
    """``value.attr(name)``, with missing attributes mapped to `default`"""
    try:
        result = value.attr(name)
    except NoSuchAttributeError:
        return default
    return default if result is None else result


class Prototype(object):
    """A recipe definition as produced by the scripting front-end"""

    def __init__(self, **attrs):
        unknown = set(attrs) - set(RECIPE_ATTRS)
        if unknown:
            raise ValueError('unknown recipe attributes: %s' % ', '.join(sorted(unknown)))
        self._attrs = attrs

    def attr(self, name):
        try:
            return self._attrs[name]
        except KeyError:
            raise NoSuchAttributeError('recipe has no attribute %s' % name)


class SourceFile(object):
    """A file input: a URL or local path, or an inline payload.

    Parameters
    ----------
    path : str
        URL or local path of the file; for inline data, the path it is
        written to relative to the top build dir.

    sum : str or (type, value) (optional)
        Expected sum of the content. Required for remote files unless
        the server supplies an ETag.

    data : bytes (optional)
        Inline content.

    into : str (optional)
        Place the download at this relative path instead of unpacking
        it.
    """

    kind = 'file'

    def __init__(self, path, sum=None, data=None, into=None, chdir=False):
        self.path = path
        self.data = data
        self.into = into
        self.chdir = chdir
        if sum is not None:
            self.sum_type, self.sum_value = decode_sum(sum)
            if self.sum_type == 'self':
                self.sum_type = 'b2'
        else:
            self.sum_type = self.sum_value = None

    def __repr__(self):
        return '<file %s>' % self.path

    def resolve_sum(self, session=None):
        """Returns ``(sum_type, sum_value)``, computing it when not given"""
        if self.sum_type is not None:
            return self.sum_type, self.sum_value
        if self.data is not None:
            h = hash_type(self.data)
        elif fetch.is_remote(self.path):
            self.sum_type, self.sum_value = _remote_sum(self.path, session)
            return self.sum_type, self.sum_value
        else:
            h = hash_type()
            try:
                with open(self.path, 'rb') as f:
                    for chunk in iter(lambda: f.read(fetch.CHUNK_SIZE), b''):
                        h.update(chunk)
            except IOError as e:
                raise SignatureError('unable to read input %s: %s' % (self.path, e))
        self.sum_type, self.sum_value = 'b2', format_digest(h)
        return self.sum_type, self.sum_value


def _remote_sum(url, session=None):
    if session is None:
        session = requests.Session()
    try:
        resp = session.head(url, allow_redirects=True, timeout=60)
        etag = resp.headers.get('ETag')
        if resp.status_code == 200 and etag and etag.startswith('"'):
            return 'etag', normalize_etag(etag)
        h = hash_type()
        with session.get(url, stream=True, timeout=60) as resp:
            if resp.status_code != 200:
                raise SignatureError('unable to fetch %s (code: %d)' % (url, resp.status_code))
            for chunk in resp.iter_content(fetch.CHUNK_SIZE):
                h.update(chunk)
    except requests.RequestException as e:
        raise SignatureError('unable to fetch %s: %s' % (url, e))
    return 'b2', format_digest(h)


class SourceDir(object):
    """A local directory input"""

    kind = 'dir'

    def __init__(self, path, chdir=False):
        self.path = path
        self.chdir = chdir
        self.sum_type = self.sum_value = None

    def __repr__(self):
        return '<dir %s>' % self.path

    def resolve_sum(self, session=None):
        if self.sum_value is None:
            if not os.path.isdir(self.path):
                raise SignatureError('input directory does not exist: %s' % self.path)
            self.sum_type, self.sum_value = 'dir', format_digest(hash_dir(self.path))
        return self.sum_type, self.sum_value


def hash_dir(path):
    """Returns the raw blake2b digest over the files and dirs under `path`.

    Entries are visited in sorted order; files contribute
    ``"file: <relpath> <perm>\\n"`` followed by their content, dirs
    ``"dir: <relpath>\\n"``. Paths are relative to `path`.
    """
    h = hash_type()
    for dirpath, dirnames, filenames in os.walk(path):
        dirnames.sort()
        rel_dir = os.path.relpath(dirpath, path)
        h.update(('dir: %s\n' % rel_dir).encode('UTF-8'))
        for fname in sorted(filenames):
            qname = pjoin(dirpath, fname)
            st = os.lstat(qname)
            if not stat.S_ISREG(st.st_mode):
                continue
            rel = os.path.normpath(pjoin(rel_dir, fname))
            h.update(('file: %s %o\n' % (rel, stat.S_IMODE(st.st_mode))).encode('UTF-8'))
            with open(qname, 'rb') as f:
                for chunk in iter(lambda: f.read(fetch.CHUNK_SIZE), b''):
                    h.update(chunk)
    return h.digest()


class Instance(object):
    """
    An anonymous content-addressed artifact.

    The signature is either given explicitly or derived from the
    content source, of which there is at most one:

    * `phase`, a build phase callable whose hash-mode digest is the
      signature;
    * `data`, inline bytes whose blake2b digest is the signature;
    * `source_dir`, a local directory, signed by :func:`hash_dir`;
    * `url` with `sum`, a download, signed by :func:`fetch_signature`.

    `phase` and `data` always determine the signature themselves. An
    instance with only a signature has no content of its own.

    Parameters
    ----------
    name : str

    version : str (optional)
        Defaults to the first 8 characters of the signature.

    path : str (optional)
        Where the content is placed, relative to the prefix, when the
        instance is installed.

    dependencies : list of :class:`Recipe` (optional)
    """

    def __init__(self, name, version=None, signature=None, phase=None, data=None, path=None,
                 dependencies=(), source_dir=None, url=None, sum=None):
        sources = [x for x in (phase, data, source_dir, url) if x is not None]
        if len(sources) > 1:
            raise ValueError('at most one of phase, data, source_dir and url may be given')
        if signature is None and not sources:
            raise ValueError('instance %s needs a signature or content' % name)
        if signature is not None and (phase is not None or data is not None):
            raise ValueError('the signature of a phase or data instance is derived')
        self.sum_type = self.sum_value = None
        if url is not None:
            if sum is None:
                raise ValueError('instance %s: a download needs a sum' % name)
            self.sum_type, self.sum_value = decode_sum(sum)
            # validates the sum value
            sum_bytes(self.sum_type, self.sum_value)
            if signature is None:
                signature = fetch_signature(name, self.sum_type, self.sum_value)
        elif source_dir is not None and signature is None:
            if not os.path.isdir(source_dir):
                raise SignatureError('instance directory does not exist: %s' % source_dir)
            signature = format_digest(hash_dir(source_dir))
        self.name = name
        self._version = version
        self._signature = signature
        self.phase = phase
        self.data = data
        self.source_dir = source_dir
        self.url = url
        self.path = path
        self.dependencies = list(dependencies)

    def __repr__(self):
        return '<instance %s-%s>' % (self.name, self.version)

    @property
    def signature(self):
        if self._signature is None:
            self._signature = sig_engine.calc_instance_signature(self)
        return self._signature

    @property
    def version(self):
        if self._version is None:
            return self.signature[:8]
        return self._version

    @property
    def id(self):
        return '%s-%s-%s' % (self.signature, self.name, self.version)

    def identity(self):
        """The string entered into signatures of recipes using this instance"""
        return '%s-%s-%s' % (self.name, self.version, self.signature)

    def attr(self, name):
        if name in ('name', 'version', 'signature', 'id', 'path', 'data', 'url',
                    'dependencies'):
            return getattr(self, name)
        raise NoSuchAttributeError('instance has no attribute %s' % name)


def fetch_signature(name, sum_type, sum_value):
    h = hash_type(('%s\n%s-%s' % (name, sum_type, sum_value)).encode('UTF-8'))
    return format_digest(h)


def file_instance(path, data):
    """Instance for inline file content, named ``fetch-file``"""
    return Instance('fetch-file', data=data, path=path)


def dir_instance(path):
    """Instance holding a copy of the local directory `path`"""
    return Instance(os.path.basename(os.path.normpath(path)) or 'dir', source_dir=path)


def fetch_instance(name, url, sum):
    """Instance for a download of `url` with a known sum"""
    return Instance(name, url=url, sum=sum)


class Input(object):
    """A named datum consumed by a build"""

    def __init__(self, name, source):
        if not isinstance(source, (SourceFile, SourceDir, Instance)):
            raise SignatureError('unsupported input type for %s: %r' % (name, source))
        self.name = name
        self.source = source
        self._instance = None

    def __repr__(self):
        return '<input %s %r>' % (self.name, self.source)

    @property
    def kind(self):
        if isinstance(self.source, Instance):
            return 'instance'
        return self.source.kind

    def resolve(self, session=None):
        """Returns the :class:`Instance` this input stands for"""
        if self._instance is None:
            source = self.source
            if isinstance(source, Instance):
                self._instance = source
            elif isinstance(source, SourceDir):
                sum_type, sum_value = source.resolve_sum(session)
                self._instance = Instance(self.name, version=sum_value[:8],
                                          signature=sum_value, source_dir=source.path)
            else:
                sum_type, sum_value = source.resolve_sum(session)
                self._instance = fetch_instance(self.name, source.path,
                                                (sum_type, sum_value))
        return self._instance

    def to_record(self):
        """The ``inputs`` entry of ``.pkg-info.json``"""
        rec = {'name': self.name}
        if isinstance(self.source, Instance):
            rec['id'] = self.source.id
        else:
            rec['sum_type'] = self.source.sum_type or ''
            rec['sum'] = self.source.sum_value or ''
            if self.kind == 'dir':
                rec['dir'] = self.source.path
            else:
                rec['path'] = self.source.path
        return rec


def extract_inputs(value):
    if value is None:
        return []
    if isinstance(value, dict):
        inputs = [Input(name, source) for name, source in value.items()]
    else:
        inputs = [Input('source', value)]
    inputs.sort(key=lambda i: i.name)
    return inputs


class Recipe(object):
    """
    A buildable package: a :class:`Prototype` under a constraint set.

    Parameters
    ----------
    prototype : object with ``attr(name)``

    constraints : dict (optional)
        e.g. ``{'os': 'linux', 'arch': 'x86_64'}``; part of the signature.

    repo : str (optional)
        Repository the recipe was loaded from (bookkeeping only).

    request_name : str (optional)
        Name under which the recipe was requested (bookkeeping only).
    """

    def __init__(self, prototype, constraints=None, repo='', request_name=None):
        self.prototype = prototype
        self.constraints = dict(constraints or {})
        self.repo = repo
        self.name = get_attr(prototype, 'name', '')
        if not self.name:
            raise SignatureError('recipe has no name')
        self.request_name = request_name or self.name
        self.version = get_attr(prototype, 'version', '') or UNKNOWN_VERSION
        self.description = get_attr(prototype, 'description', '')
        self.url = get_attr(prototype, 'url', '')
        self.metadata = dict(get_attr(prototype, 'metadata', {}))
        self.inputs = extract_inputs(get_attr(prototype, 'input'))
        self.install = get_attr(prototype, 'install')
        self.hook = get_attr(prototype, 'hook')
        self.post_install = get_attr(prototype, 'post_install')
        self.instance = None

        self.dependencies = []
        seen = set()
        for dep in get_attr(prototype, 'dependencies', []):
            dep = as_recipe(dep)
            if id(dep) not in seen:
                seen.add(id(dep))
                self.dependencies.append(dep)
        self.explicit_dependencies = [as_recipe(dep) for dep in
                                      get_attr(prototype, 'explicit_dependencies', [])]
        self._sig = None

    @classmethod
    def for_instance(cls, instance):
        """A recipe installing `instance` (used when an instance is a dependency)"""
        self = cls.__new__(cls)
        self.prototype = instance
        self.constraints = {}
        self.repo = ''
        self.name = self.request_name = instance.name
        self.version = instance.version
        self.description = self.url = ''
        self.metadata = {}
        self.inputs = []
        self.install = instance.phase
        self.hook = self.post_install = None
        self.instance = instance
        self.dependencies = [as_recipe(dep) for dep in instance.dependencies]
        self.explicit_dependencies = []
        self._sig = None
        return self

    def __repr__(self):
        return '<recipe %s-%s>' % (self.name, self.version)

    def all_dependencies(self):
        """Declared dependencies followed by explicit ones, unique by ID"""
        result = []
        ids = set()
        for dep in self.dependencies + self.explicit_dependencies:
            if dep.id not in ids:
                ids.add(dep.id)
                result.append(dep)
        return result

    def signature_and_id(self, in_progress=None):
        """Computes (once) and returns ``(signature, id)``.

        `in_progress` is the set of recipes being signed further up the
        walk, see :func:`cardist.core.signature.calc_signature`.
        """
        if self._sig is None:
            self._sig = sig_engine.calc_signature(self, self.constraints, in_progress)
        return self._sig

    @property
    def signature(self):
        return self.signature_and_id()[0]

    @property
    def id(self):
        return self.signature_and_id()[1]

    def attr(self, name):
        if name in ('id', 'signature'):
            return getattr(self, name)
        if name == 'dependencies':
            return self.all_dependencies()
        if name == 'input':
            return self.inputs
        if name == 'constraints':
            return self.constraints
        return self.prototype.attr(name)


def as_recipe(value):
    if isinstance(value, Recipe):
        return value
    if isinstance(value, Instance):
        return Recipe.for_instance(value)
    raise SignatureError('dependency is neither a recipe nor an instance: %r' % (value,))


_IN_PROGRESS = object()


class RecipeSession(object):
    """
    Cache of loaded recipes, scoped to one resolution.

    Parameters
    ----------
    loader : callable
        ``loader(name, namespace, args, constraints, session)`` returning
        a prototype (an object with ``attr(name)``). Loaders resolve the
        dependencies of the prototype through `session.load`, which is how
        recursive loads are detected.

    logger : Logger
    """

    def __init__(self, loader, logger):
        self.loader = loader
        self.logger = logger
        self._loaded = {}

    @staticmethod
    def cache_key(name, namespace='', args=None, constraints=None):
        return (name, namespace, tuple(sorted((args or {}).items())),
                tuple(sorted((constraints or {}).items())))

    def load(self, name, namespace='', args=None, constraints=None, repo=''):
        key = self.cache_key(name, namespace, args, constraints)
        recipe = self._loaded.get(key)
        if recipe is _IN_PROGRESS:
            raise DependencyCycleError('recursive dependencies detected loading %s' % name,
                                       [name])
        if recipe is not None:
            return recipe
        self.logger.debug('loading recipe %s (namespace %r)' % (name, namespace))
        self._loaded[key] = _IN_PROGRESS
        try:
            prototype = self.loader(name, namespace, dict(args or {}), dict(constraints or {}),
                                    self)
            recipe = Recipe(prototype, constraints, repo=repo, request_name=name)
        except BaseException:
            del self._loaded[key]
            raise
        self._loaded[key] = recipe
        return recipe

    def __len__(self):
        return len(self._loaded)
