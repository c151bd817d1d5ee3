"""
:mod:`cardist.core.resolver` --- From requested recipes to an install plan
==========================================================================

:meth:`Resolver.resolve` turns a list of requested recipes into a
:class:`PackagePlan` in three passes:

Gather
    Walks the dependency graph breadth-first from the requested
    recipes. An installed recipe only pulls in the dependencies recorded
    as runtime dependencies in its ``.pkg-info.json``; a recipe that
    still has to be built pulls in all of its declared dependencies (and
    the store instances among its inputs). The gathered graph is then
    checked depth-first: a package met again while its own dependencies
    are being walked is a cycle and raises
    :class:`~cardist.core.common.DependencyCycleError`.

Substitute
    Every candidate that is not installed is looked up through a
    :class:`CarLookup` by a pool of worker threads. A lookup that raises
    :class:`~cardist.core.common.NotFoundError` (or returns ``None``)
    simply means "build from source"; any other error aborts resolution.

Plan
    Chooses an installer per package. A package with a substitute
    archive gets a :class:`~cardist.core.installer.CarInstaller` and only
    the dependencies the archive declares, which must in turn be
    archives; everything else gets a
    :class:`~cardist.core.installer.ScriptInstaller` and keeps its
    gathered dependencies. The install order is a topological sort of
    the result.
"""

import threading
import collections
import queue
from os.path import join as pjoin

import requests

from .common import (NotFoundError, ResolutionError, DependencyCycleError, RemoteFetchError)
from .recipe import Recipe
from .store import runtime_dependencies
from .car import CarInfo, inspect
from .installer import ScriptInstaller, CarInstaller
from . import fetch

DEFAULT_CONCURRENCY = 20


class CarSubstitute(object):
    """A prebuilt archive that can be installed instead of building.

    Parameters
    ----------
    info : :class:`~cardist.core.car.CarInfo`

    location : str
        URL or local path of the archive.

    sum : str (optional)
        Expected blake2b (base58) of the archive bytes.
    """

    def __init__(self, info, location, sum=None):
        self.info = info
        self.location = location
        self.sum = sum

    def __repr__(self):
        return '<CarSubstitute %s at %s>' % (self.info.id, self.location)

    @property
    def id(self):
        return self.info.id

    def fetch(self, filename, logger=None, cancel=None):
        """Places the archive at `filename`, verifying the sum if known"""
        fetch.download(self.location, filename, 'b2' if self.sum else None, self.sum,
                       logger=logger, cancel=cancel)


class CarLookup(object):
    """Interface of archive lookups.

    Both methods return a :class:`CarSubstitute`, or raise
    :class:`~cardist.core.common.NotFoundError` (or return ``None``)
    when there is no archive. They are called from several threads at
    once.
    """

    def lookup(self, recipe):
        return self.lookup_id(recipe.repo, recipe.id)

    def lookup_id(self, repo, pkg_id):
        raise NotImplementedError()


class DirectoryCarLookup(CarLookup):
    """Archives stored as ``<path>/<id>.car``"""

    def __init__(self, path):
        self.path = path

    def lookup_id(self, repo, pkg_id):
        filename = pjoin(self.path, '%s.car' % pkg_id)
        try:
            f = open(filename, 'rb')
        except FileNotFoundError:
            raise NotFoundError('no archive for %s in %s' % (pkg_id, self.path))
        with f:
            result = inspect(f)
        if not result.valid:
            raise result.error
        return CarSubstitute(result.info, filename)


class HttpCarLookup(CarLookup):
    """Archives published under one or more URL roots.

    ``<root>/<id>.json`` holds the info record and ``<root>/<id>.car``
    the archive; roots are tried in order.
    """

    def __init__(self, roots, session=None):
        self.roots = [r.rstrip('/') for r in roots]
        self.session = session if session is not None else requests.Session()

    def lookup_id(self, repo, pkg_id):
        for root in self.roots:
            url = '%s/%s.json' % (root, pkg_id)
            try:
                resp = self.session.get(url, timeout=60)
            except requests.RequestException as e:
                raise RemoteFetchError('failed to look up %s: %s' % (url, e))
            if resp.status_code == 404:
                continue
            if resp.status_code != 200:
                raise RemoteFetchError('failed to look up %s (code: %d)' % (url, resp.status_code))
            info = CarInfo.from_json(resp.content)
            return CarSubstitute(info, '%s/%s.car' % (root, pkg_id))
        raise NotFoundError('no archive for %s' % pkg_id)


class PackagePlan(object):
    """The result of :meth:`Resolver.resolve`.

    Attributes
    ----------
    package_ids : list of str
        Every package of the plan, in discovery order.

    install_order : list of str
        Dependencies before dependents.

    installers : dict
        ID to installer, for packages that are not installed.

    dependencies : dict
        ID to the (pruned) list of dependency IDs.

    recipes : dict
        ID to :class:`~cardist.core.recipe.Recipe`, for packages that
        are not substituted.

    installed : dict
        ID to whether the package is already in the store.

    install_dirs : dict
        ID to its store directory.
    """

    def __init__(self):
        self.package_ids = []
        self.install_order = []
        self.installers = {}
        self.dependencies = {}
        self.recipes = {}
        self.installed = {}
        self.install_dirs = {}

    def __repr__(self):
        return '<PackagePlan %r>' % self.install_order

    def pending(self):
        """IDs still to be installed, in install order"""
        return [pkg_id for pkg_id in self.install_order if not self.installed[pkg_id]]


def topological_order(ids, dependencies):
    """
    Orders `ids` so that every package comes after its dependencies.

    In-degrees count dependents: the walk starts from packages nothing
    depends on, emits them, and releases their dependencies once no
    unemitted dependent is left. The emission order is reversed at the
    end. Among packages that are ready at the same time the smallest ID
    is emitted first.
    """
    indegree = dict((pkg_id, 0) for pkg_id in ids)
    for pkg_id in ids:
        for dep in dependencies.get(pkg_id, ()):
            indegree[dep] += 1

    stack = sorted((pkg_id for pkg_id in ids if indegree[pkg_id] == 0), reverse=True)
    emitted = []
    while stack:
        pkg_id = stack.pop()
        emitted.append(pkg_id)
        ready = []
        for dep in dependencies.get(pkg_id, ()):
            indegree[dep] -= 1
            if indegree[dep] == 0:
                ready.append(dep)
        stack.extend(sorted(ready, reverse=True))

    if len(emitted) != len(indegree):
        cycle = sorted(pkg_id for pkg_id, n in indegree.items() if n > 0)
        raise DependencyCycleError('dependency cycle among: %s' % ', '.join(cycle), cycle)
    emitted.reverse()
    return emitted


_IN_PROGRESS = 'in-progress'
_DONE = 'done'


def check_cycles(roots, edges):
    """Raises :class:`~cardist.core.common.DependencyCycleError` when the
    graph `edges` (ID to dependency recipes) has a cycle reachable from
    `roots`"""
    state = {}

    def visit(pkg_id, path):
        if state.get(pkg_id) == _DONE:
            return
        if state.get(pkg_id) == _IN_PROGRESS:
            cycle = path[path.index(pkg_id):] + [pkg_id]
            raise DependencyCycleError('dependency cycle: %s' % ' -> '.join(cycle), cycle)
        state[pkg_id] = _IN_PROGRESS
        for dep in edges.get(pkg_id, ()):
            visit(dep.id, path + [pkg_id])
        state[pkg_id] = _DONE

    for pkg_id in roots:
        visit(pkg_id, [])


class Resolver(object):
    """
    Parameters
    ----------
    store : :class:`~cardist.core.store.Store`

    lookup : :class:`CarLookup` (optional)
        Without one, everything not installed is built from source.

    logger : Logger

    concurrency : int
        Number of worker threads querying `lookup`.
    """

    def __init__(self, store, lookup=None, logger=None, concurrency=DEFAULT_CONCURRENCY):
        self.store = store
        self.lookup = lookup
        self.logger = logger
        self.concurrency = concurrency

    def _debug(self, msg):
        if self.logger is not None:
            self.logger.debug(msg)

    def resolve(self, recipes):
        candidates, edges = self.gather(recipes)
        substitutes = self.substitute(candidates)
        return self.plan(recipes, candidates, edges, substitutes)

    #
    # Gather
    #

    def dependencies_of(self, recipe):
        if self.store.is_installed(recipe.id):
            deps = runtime_dependencies(self.store, recipe)
            self._debug('%s is installed, runtime deps: %s' % (recipe.id, [d.id for d in deps]))
            return deps
        deps = list(recipe.all_dependencies())
        ids = set(dep.id for dep in deps)
        for inp in recipe.inputs:
            if inp.kind == 'instance':
                dep = Recipe.for_instance(inp.source)
                if dep.id not in ids:
                    ids.add(dep.id)
                    deps.append(dep)
        return deps

    def gather(self, recipes):
        """Returns ``(candidates, edges)``, both keyed by ID; `candidates`
        maps to recipes (in breadth-first discovery order) and `edges` to
        lists of dependency recipes.
        """
        candidates = {}
        edges = {}
        work = collections.deque(recipes)
        while work:
            recipe = work.popleft()
            pkg_id = recipe.id
            if pkg_id in candidates:
                continue
            candidates[pkg_id] = recipe
            deps = self.dependencies_of(recipe)
            edges[pkg_id] = deps
            work.extend(dep for dep in deps if dep.id not in candidates)
        check_cycles([recipe.id for recipe in recipes], edges)
        return candidates, edges

    #
    # Substitute
    #

    def _lookup(self, recipe):
        try:
            return self.lookup.lookup(recipe)
        except NotFoundError:
            return None

    def substitute(self, candidates):
        """Looks up archives for the candidates not installed.

        Returns a dict mapping IDs to :class:`CarSubstitute`.
        """
        if self.lookup is None:
            return {}
        work = queue.Queue()
        for pkg_id, recipe in candidates.items():
            if not self.store.is_installed(pkg_id):
                work.put(recipe)
        if work.empty():
            return {}

        results = {}
        errors = []
        lock = threading.Lock()

        def worker():
            while True:
                try:
                    recipe = work.get_nowait()
                except queue.Empty:
                    return
                try:
                    sub = self._lookup(recipe)
                except Exception as e:
                    with lock:
                        errors.append((recipe.id, e))
                    continue
                if sub is not None:
                    with lock:
                        results[recipe.id] = sub

        threads = [threading.Thread(target=worker, name='car-lookup-%d' % i)
                   for i in range(min(self.concurrency, work.qsize()))]
        for t in threads:
            t.daemon = True
            t.start()
        for t in threads:
            t.join()

        if errors:
            pkg_id, e = sorted(errors, key=lambda x: x[0])[0]
            raise ResolutionError('error looking up archive for %s: %s' % (pkg_id, e))
        for pkg_id in sorted(results):
            self._debug('substituting %s with %r' % (pkg_id, results[pkg_id]))
        return results

    #
    # Plan
    #

    def _add(self, plan, pkg_id):
        plan.package_ids.append(pkg_id)
        path = self.store.find(pkg_id)
        plan.installed[pkg_id] = path is not None
        plan.install_dirs[pkg_id] = path if path is not None else self.store.expected_path(pkg_id)
        return path is not None

    def plan(self, recipes, candidates, edges, substitutes):
        plan = PackagePlan()

        def visit_car(sub):
            pkg_id = sub.id
            plan.installers[pkg_id] = CarInstaller(sub)
            deps = sorted(set(sub.info.dependency_ids))
            plan.dependencies[pkg_id] = deps
            for dep in sub.info.dependencies:
                visit_car_dep(dep)

        def visit_car_dep(dep):
            if dep.id in plan.installed:
                return
            if dep.id in candidates:
                visit(candidates[dep.id])
                return
            if self._add(plan, dep.id):
                plan.dependencies[dep.id] = []
                return
            sub = substitutes.get(dep.id)
            if sub is None and self.lookup is not None:
                try:
                    sub = self.lookup.lookup_id(dep.repo, dep.id)
                except NotFoundError:
                    sub = None
            if sub is None:
                raise ResolutionError('archives can only depend on other archives, '
                                      'but missing: %s/%s' % (dep.repo, dep.id))
            visit_car(sub)

        def visit(recipe):
            pkg_id = recipe.id
            if pkg_id in plan.installed:
                return
            installed = self._add(plan, pkg_id)
            sub = substitutes.get(pkg_id)
            if sub is not None and not installed:
                self._debug('%s: install from archive' % pkg_id)
                visit_car(sub)
                return
            plan.recipes[pkg_id] = recipe
            if not installed:
                self._debug('%s: build from source' % pkg_id)
                plan.installers[pkg_id] = ScriptInstaller(recipe)
            deps = edges.get(pkg_id, ())
            plan.dependencies[pkg_id] = list(dict.fromkeys(dep.id for dep in deps))
            for dep in deps:
                visit(dep)

        for recipe in recipes:
            visit(recipe)
        plan.install_order = topological_order(plan.package_ids, plan.dependencies)
        self._debug('install order: %s' % ', '.join(plan.install_order))
        return plan
