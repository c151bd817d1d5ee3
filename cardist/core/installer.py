"""
:mod:`cardist.core.installer` --- Executing install plans
=========================================================

A :class:`~cardist.core.resolver.PackagePlan` carries one installer per
package that is not yet in the store:

:class:`ScriptInstaller`
    Builds a recipe from source. The steps are:

    1. Create a fresh ``build-<id>`` directory below the build dir, and
       the store directory of the package.
    2. Materialize every input into the build dir: instances are copied
       out of the store (made writable), directories are copied, file
       inputs are written from their inline payload or downloaded and
       verified, then unpacked when they are archives.
    3. Run the ``hook`` phases of the build dependencies, each with
       ``prefix`` set to the dependency's store directory, then the
       ``install`` and ``post_install`` phases of the recipe, all in run
       mode sharing one environment.
    4. Remove libtool ``.la`` files, make ``bin/`` executable, record
       ``.pkg-info.json`` with the runtime dependencies found by
       scanning the output (see :func:`prune_deps`), and freeze the
       entry read-only.

    The full build output goes to ``build.log`` in the build directory,
    which is removed afterwards unless builds are retained.

:class:`CarInstaller`
    Unpacks and verifies a prebuilt archive into the expected store path.

:func:`install_plan` runs the installers in plan order. When one fails,
its store directory is removed and
:class:`~cardist.core.common.BuildFailedError` names the package;
packages installed before it stay.
"""

import os
import stat
import shutil
import time
from os.path import join as pjoin
from urllib.parse import urlparse

from .common import (BuildFailedError, ArchiveError, SumMismatchError, wrap_os_errors,
                     PKG_INFO_JSON)
from .fileutils import (fresh_dir, silent_makedirs, silent_unlink, rmtree_write_protected,
                        install_files)
from .executor import RunContext, RunMode, DEFAULT_PATH
from .store import PackageInfo, write_package_info, build_dependencies
from .signature import split_id
from .recipe import hash_dir
from .hasher import format_digest
from .car import DependencyDetector, unpack
from . import fetch
from ..util.logger_setup import getLogger, log_to_file


class InstallEnv(object):
    """
    Everything installers need besides the package itself.

    Parameters
    ----------
    store : :class:`~cardist.core.store.Store`

    build_dir : str
        Parent of the per-package build directories.

    logger : Logger

    cancel : threading.Event (optional)

    retain_build : bool
        Keep build directories after the build.
    """

    def __init__(self, store, build_dir, logger, cancel=None, retain_build=False):
        self.store = store
        self.build_dir = build_dir
        self.logger = logger
        self.cancel = cancel
        self.retain_build = retain_build

    @classmethod
    def from_config(cls, config, store, logger, cancel=None):
        return cls(store, config['build_dir'], logger, cancel=cancel,
                   retain_build=config.get('retain_build', False))


def make_build_env(dep_dirs):
    """The initial environment of a build against the given dependency dirs"""
    path = []
    cflags = []
    ldflags = []
    pkg_config = []
    for d in dep_dirs:
        if os.path.isdir(pjoin(d, 'bin')):
            path.append(pjoin(d, 'bin'))
        if os.path.isdir(pjoin(d, 'include')):
            cflags.append('-I%s' % pjoin(d, 'include'))
        if os.path.isdir(pjoin(d, 'lib')):
            ldflags.append('-L%s' % pjoin(d, 'lib'))
        if os.path.isdir(pjoin(d, 'lib', 'pkgconfig')):
            pkg_config.append(pjoin(d, 'lib', 'pkgconfig'))
    env = {'HOME': '/nonexistant',
           'PATH': ':'.join(path + [DEFAULT_PATH])}
    if cflags:
        env['CFLAGS'] = ' '.join(cflags)
    if ldflags:
        env['LDFLAGS'] = ' '.join(ldflags)
    if pkg_config:
        env['PKG_CONFIG_PATH'] = ':'.join(pkg_config)
    return env


def run_dir_of(path):
    """Descends into `path`'s single non-hidden subdirectory, if that is
    all it holds"""
    if not os.path.isdir(path):
        return None
    visible = [e for e in os.listdir(path) if not e.startswith('.')]
    if len(visible) == 1 and os.path.isdir(pjoin(path, visible[0])):
        return pjoin(path, visible[0])
    return path


#
# pkg-config
#

def pkg_config_requires(filename):
    """Package names listed in the ``Requires:`` field of a ``.pc`` file"""
    result = []
    with open(filename, errors='replace') as f:
        for line in f:
            key, sep, value = line.partition(':')
            if not sep or key.strip() != 'Requires':
                continue
            for sel in value.split(','):
                fields = sel.split()
                if fields:
                    result.append(fields[0])
    return result


def load_pkg_configs(root):
    """Maps the name of every ``.pc`` file under `root` to its requirements"""
    result = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for fname in filenames:
            if fname.endswith('.pc'):
                result[fname[:-3]] = pkg_config_requires(pjoin(dirpath, fname))
    return result


def scan_references(store, root):
    """Signatures of all store entries referenced from files under `root`"""
    found = set()
    for dirpath, dirnames, filenames in os.walk(root):
        for fname in filenames:
            qname = pjoin(dirpath, fname)
            if fname == PKG_INFO_JSON or not stat.S_ISREG(os.lstat(qname).st_mode):
                continue
            detectors = [DependencyDetector(p + '/', found) for p in store.paths]
            with open(qname, 'rb') as f:
                for chunk in iter(lambda: f.read(fetch.CHUNK_SIZE), b''):
                    for d in detectors:
                        d.write(chunk)
            for d in detectors:
                d.close()
    return set(pkg_id.partition('-')[0] for pkg_id in found)


def prune_deps(store, pkg_dir, deps):
    """
    The subset of the recipes `deps` that the built tree `pkg_dir`
    actually references.

    A dependency is kept when its store path occurs in any file, or when
    one of its pkg-config modules is required by a ``.pc`` file of the
    package.
    """
    seen = scan_references(store, pkg_dir)
    required = set()
    for requires in load_pkg_configs(pkg_dir).values():
        required.update(requires)

    result = []
    for dep in deps:
        if dep.signature in seen:
            result.append(dep)
        elif required:
            dep_dir = store.locate(dep.id)
            if required.intersection(load_pkg_configs(dep_dir)):
                result.append(dep)
    return result


#
# Post-build processing
#

def remove_cruft(pkg_dir):
    """Removes libtool archives from ``lib/``"""
    libdir = pjoin(pkg_dir, 'lib')
    if not os.path.isdir(libdir):
        return
    for name in os.listdir(libdir):
        if name.endswith('.la'):
            os.unlink(pjoin(libdir, name))


def fix_permissions(pkg_dir):
    bindir = pjoin(pkg_dir, 'bin')
    if not os.path.isdir(bindir):
        return
    for name in os.listdir(bindir):
        qname = pjoin(bindir, name)
        st = os.lstat(qname)
        if stat.S_ISREG(st.st_mode):
            os.chmod(qname, st.st_mode | 0o111)


class ScriptInstaller(object):
    """Builds a recipe from source"""

    def __init__(self, recipe):
        self.recipe = recipe

    def __repr__(self):
        return '<ScriptInstaller %s>' % self.recipe.id

    def install(self, ienv):
        recipe = self.recipe
        pkg_id = recipe.id
        store = ienv.store
        prefix = store.expected_path(pkg_id)
        build_dir = pjoin(ienv.build_dir, 'build-%s' % pkg_id)
        silent_makedirs(ienv.build_dir)
        fresh_dir(build_dir)
        silent_makedirs(store.default)
        fresh_dir(prefix)

        log_filename = pjoin(build_dir, 'build.log')
        ienv.logger.info('Building %s, follow log with:' % pkg_id)
        ienv.logger.info('  tail -f %s' % log_filename)
        try:
            with log_to_file('package', log_filename):
                self.build(ienv, build_dir, prefix)
        finally:
            if not ienv.retain_build:
                rmtree_write_protected(build_dir)

        remove_cruft(prefix)
        fix_permissions(prefix)
        self.write_info(store, prefix)
        store.freeze(pkg_id)

    def build(self, ienv, top, prefix):
        recipe = self.recipe
        pkg_logger = getLogger('package', recipe.name)
        deps = build_dependencies(ienv.store, recipe)
        dep_dirs = [ienv.store.locate(dep.id) for dep in deps]

        run_dir = self.setup_inputs(ienv, top) or top
        ctx = RunContext(RunMode(pkg_logger, ienv.cancel), top=top, build=run_dir,
                         prefix=prefix, env=make_build_env(dep_dirs))

        for dep, dep_dir in zip(deps, dep_dirs):
            if dep.hook is None:
                continue
            pkg_logger.debug('running hook of %s' % dep.id)
            ctx.prefix = dep_dir
            try:
                dep.hook(ctx)
            finally:
                ctx.prefix = prefix

        if recipe.instance is not None:
            self.setup_instance(ienv, recipe.instance, prefix)

        if recipe.install is not None:
            recipe.install(ctx)
        if recipe.post_install is not None:
            recipe.post_install(ctx)

    def setup_instance(self, ienv, inst, prefix):
        """Places the content of `inst` below `prefix`"""
        if inst.data is not None:
            target = pjoin(prefix, inst.path or inst.name)
            silent_makedirs(os.path.dirname(target))
            data = inst.data
            with open(target, 'wb') as f:
                f.write(data.encode('UTF-8') if isinstance(data, str) else data)
        elif inst.source_dir is not None:
            if format_digest(hash_dir(inst.source_dir)) != inst.signature:
                raise SumMismatchError('directory %s changed since it was signed'
                                       % inst.source_dir)
            target = pjoin(prefix, inst.path) if inst.path else prefix
            shutil.copytree(inst.source_dir, target, symlinks=True, dirs_exist_ok=True)
        elif inst.url is not None:
            basename = os.path.basename(urlparse(inst.url).path) or inst.name
            fetch.download(inst.url, pjoin(prefix, inst.path or basename),
                           inst.sum_type, inst.sum_value,
                           logger=ienv.logger, cancel=ienv.cancel)

    #
    # Inputs
    #

    def setup_inputs(self, ienv, top):
        """Materializes the inputs under `top`; returns the run dir of the
        primary input, if there is one"""
        inputs = self.recipe.inputs
        run_dir = None
        for inp in inputs:
            if inp.kind == 'instance':
                path = pjoin(top, inp.name)
                install_files(ienv.store.locate(inp.source.id), path, mode_or=0o222)
            elif inp.kind == 'dir':
                path = pjoin(top, inp.name)
                fetch.copy_tree_or_file(inp.source.path, path)
            else:
                path = self.setup_input_file(ienv, top, inp)
            if getattr(inp.source, 'chdir', False) or len(inputs) == 1:
                run_dir = run_dir_of(path) or run_dir
        return run_dir

    def setup_input_file(self, ienv, top, inp):
        source = inp.source
        if source.data is not None:
            target = pjoin(top, source.into or source.path)
            silent_makedirs(os.path.dirname(target))
            data = source.data
            with open(target, 'wb') as f:
                f.write(data.encode('UTF-8') if isinstance(data, str) else data)
            return target

        sum_type, sum_value = source.resolve_sum()
        if source.into:
            target = pjoin(top, source.into)
            fetch.download(source.path, target, sum_type, sum_value,
                           logger=ienv.logger, cancel=ienv.cancel)
            return target

        basename = os.path.basename(urlparse(source.path).path)
        kind = fetch.archive_type(basename)
        if kind is None:
            target = pjoin(top, inp.name + os.path.splitext(basename)[1])
            fetch.download(source.path, target, sum_type, sum_value,
                           logger=ienv.logger, cancel=ienv.cancel)
            return target
        archive = pjoin(top, '%s.data%s' % (inp.name, kind))
        fetch.download(source.path, archive, sum_type, sum_value,
                       logger=ienv.logger, cancel=ienv.cancel)
        target = pjoin(top, inp.name)
        fetch.unpack_archive(archive, target, logger=ienv.logger)
        return target

    #
    # Package info
    #

    def write_info(self, store, prefix):
        recipe = self.recipe
        declared = recipe.all_dependencies()
        build_deps = build_dependencies(store, recipe)
        runtime = prune_deps(store, prefix, build_deps)
        info = PackageInfo(recipe.id, recipe.name, recipe.version, recipe.repo,
                           declared_deps=[dep.id for dep in declared],
                           runtime_deps=[dep.id for dep in runtime],
                           build_deps=[dep.id for dep in build_deps],
                           constraints=recipe.constraints,
                           inputs=[inp.to_record() for inp in recipe.inputs])
        write_package_info(prefix, info)
        return info


class CarInstaller(object):
    """Installs a :class:`~cardist.core.resolver.CarSubstitute`"""

    def __init__(self, substitute):
        self.substitute = substitute

    def __repr__(self):
        return '<CarInstaller %s>' % self.substitute.id

    def install(self, ienv):
        sub = self.substitute
        pkg_id = sub.id
        store = ienv.store
        prefix = store.expected_path(pkg_id)
        silent_makedirs(ienv.build_dir)
        silent_makedirs(store.default)
        if os.path.lexists(prefix):
            rmtree_write_protected(prefix)

        archive = pjoin(ienv.build_dir, '%s.car' % pkg_id)
        try:
            sub.fetch(archive, logger=ienv.logger, cancel=ienv.cancel)
            with open(archive, 'rb') as f:
                info = unpack(f, prefix, logger=ienv.logger)
        finally:
            silent_unlink(archive)
        if info.id != pkg_id:
            raise ArchiveError('archive for %s contains %s' % (pkg_id, info.id))

        with wrap_os_errors('write car info', prefix + '.json'):
            with open(prefix + '.json', 'wb') as f:
                f.write(info.to_json())
        if not os.path.exists(pjoin(prefix, PKG_INFO_JSON)):
            write_package_info(prefix, package_info_from_car(info))
        store.freeze(pkg_id)
        return info


def package_info_from_car(info):
    sig, name, version = split_id(info.id)
    deps = info.dependency_ids
    return PackageInfo(info.id, info.name or name, info.version or version, info.repo,
                       declared_deps=deps, runtime_deps=deps, build_deps=deps,
                       constraints=info.constraints)


#
# Plans
#

class InstallStats(object):
    def __init__(self, existing, installed, elapsed):
        self.existing = existing
        self.installed = installed
        self.elapsed = elapsed

    def __repr__(self):
        return '<InstallStats existing=%d installed=%d elapsed=%.1fs>' % (
            self.existing, self.installed, self.elapsed)


class PackagesInstall(object):
    """Runs the installers of a plan, one package at a time.

    After :meth:`install`, `installed` lists the IDs installed and
    `failed` is the ID that failed, if any.
    """

    def __init__(self, ienv):
        self.ienv = ienv
        self.installed = []
        self.failed = None

    def install(self, plan):
        start = time.time()
        existing = 0
        for pkg_id in plan.install_order:
            if plan.installed[pkg_id]:
                existing += 1
                continue
            installer = plan.installers[pkg_id]
            self.ienv.logger.info('Installing %s' % pkg_id)
            try:
                installer.install(self.ienv)
            except Exception as e:
                self.rollback(pkg_id)
                raise BuildFailedError('failed to install %s: %s: %s' % (
                    pkg_id, type(e).__name__, e), pkg_id, e)
            except BaseException:
                self.rollback(pkg_id)
                raise
            self.installed.append(pkg_id)
        return InstallStats(existing, len(self.installed), time.time() - start)

    def rollback(self, pkg_id):
        self.failed = pkg_id
        path = self.ienv.store.expected_path(pkg_id)
        self.ienv.logger.debug('removing %s' % path)
        if os.path.lexists(path):
            rmtree_write_protected(path)
        silent_unlink(path + '.json')


def install_plan(plan, ienv):
    """Installs every pending package of `plan`; returns :class:`InstallStats`"""
    return PackagesInstall(ienv).install(plan)
