"""
:mod:`cardist.core.executor` --- Dual-mode recipe execution
===========================================================

A recipe's build phases are plain callables that receive a single
:class:`RunContext` argument and call builtin operations on it::

    def install(ctx):
        ctx.system('./configure', '--prefix=' + ctx.prefix)
        ctx.system('make', 'install')

The same phase runs in one of two modes:

:class:`HashMode`
    Nothing touches the filesystem. Every operation writes its name and
    its quoted arguments into a hash sink; the resulting digest is the
    phase signature. The directories of the context are the
    placeholders ``$top``, ``$build``, ``$prefix`` and ``$state``, so
    that the digest never depends on where a build happens.

:class:`RunMode`
    Operations are performed for real, subprocess output is forwarded to
    the package logger, and a cancellation event is checked before each
    operation and while waiting for subprocesses.

Any failing operation raises and thereby aborts the rest of the phase.
Removing a half-written prefix is left to the caller
(:mod:`cardist.core.installer`).

Builtin operations
------------------

=================  ==========================================================
``system``         run a program found on the context ``PATH``
``shell``          feed a script to ``bash`` on stdin
``apply_patch``    feed a patch to ``patch -p1``
``inreplace``      literal text replacement in a file
``inreplace_re``   regular expression replacement in a file
``rm_f``/``rm_rf`` remove a file or directory tree
``set_env``        set an environment variable
``append_env``     append to a ``:``-separated environment variable
``prepend_env``    prepend to a ``:``-separated environment variable
``link``           symlink path(s) into a target directory
``install_files``  copy (or symlink) a glob pattern to a target
``write_file``     write a file relative to the prefix
``chdir``          run a callable with the build dir changed, then restore
``set_root``       move the build dir into a subdirectory
``mkdir``          create a directory relative to the build dir
``download``       download a URL, verifying an optional sum
``unpack``         unpack an archive
=================  ==========================================================
"""

import os
import re
import json
import shutil
import subprocess
import threading
from os.path import join as pjoin

from .common import (CommandFailedError, OperationCancelledError, InvalidOperationError,
                     NoSuchAttributeError)
from .fileutils import silent_makedirs, install_files, rmtree_write_protected
from .hasher import decode_sum
from . import fetch

PLACEHOLDER_DIRS = dict(top='$top', build='$build', prefix='$prefix', state='$state')

DEFAULT_PATH = '/bin:/usr/bin'

# seconds between checks of the cancel event while a subprocess runs
POLL_INTERVAL = 0.1


class HashMode(object):
    """Simulate operations by hashing them into `sink` (a hashlib object)"""

    def __init__(self, sink):
        self.sink = sink

    def add(self, *parts):
        for part in parts:
            if isinstance(part, str):
                line = json.dumps(part)
            elif part is True or part is False:
                line = 'true' if part else 'false'
            elif part is None:
                line = 'null'
            else:
                line = str(part)
            self.sink.update(line.encode('UTF-8') + b'\n')
        self.sink.update(b'\n')


class RunMode(object):
    """Perform operations for real.

    Parameters
    ----------
    logger : Logger
        Receives subprocess output and debug messages, usually the
        ``'package'`` logger adapter of the package being built.

    cancel : threading.Event (optional)
        When set, the next operation boundary raises
        :class:`~cardist.core.common.OperationCancelledError` and a
        running subprocess is terminated.
    """

    def __init__(self, logger, cancel=None):
        self.logger = logger
        self.cancel = cancel if cancel is not None else threading.Event()

    def check_cancel(self):
        if self.cancel.is_set():
            raise OperationCancelledError('operation cancelled')


def join_quote(args):
    return ' '.join(json.dumps(a) for a in args)


def check_path(path):
    if '..' in path:
        raise InvalidOperationError('invalid path, contains ..: %s' % path)


def lookup_executable(name, path):
    if os.path.basename(name) != name:
        return name
    found = shutil.which(name, path=path)
    if found is None:
        raise InvalidOperationError('unable to find executable %s in %s' % (name, path))
    return found


def run_cmd(args, env, cwd, logger, cancel=None, stdin_data=None):
    """
    Runs `args` in `cwd` with exactly the environment `env`, forwarding
    each line of stdout and stderr to `logger`.

    Each stream is drained by its own thread so that a child filling one
    pipe buffer cannot block; the call returns only after both readers
    finished and the process exited. Raises
    :class:`~cardist.core.common.CommandFailedError` on non-zero exit.
    """
    logger.debug('running %r' % (args,))
    logger.debug('cwd: %s' % cwd)
    try:
        proc = subprocess.Popen(args, cwd=cwd, env=env,
                                stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
                                stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                close_fds=True)
    except FileNotFoundError:
        msg = 'command "%s" not found (cwd: %s)' % (args[0], cwd)
        logger.error(msg)
        raise CommandFailedError(msg, args, None)

    def drain(stream):
        with stream:
            for line in iter(stream.readline, b''):
                logger.info('%s', line.decode('UTF-8', 'replace').rstrip())

    readers = [threading.Thread(target=drain, args=(proc.stdout,)),
               threading.Thread(target=drain, args=(proc.stderr,))]
    for t in readers:
        t.daemon = True
        t.start()

    if stdin_data is not None:
        try:
            proc.stdin.write(stdin_data.encode('UTF-8'))
        except BrokenPipeError:
            pass
        finally:
            proc.stdin.close()

    cancelled = False
    while True:
        try:
            proc.wait(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set() and not cancelled:
                logger.warning('cancelling %s' % args[0])
                proc.terminate()
                cancelled = True
    for t in readers:
        t.join()

    if cancelled:
        raise OperationCancelledError('%s cancelled' % args[0])
    if proc.returncode != 0:
        msg = 'command failed (code=%d): %s' % (proc.returncode, join_quote(args))
        logger.error(msg)
        raise CommandFailedError(msg, args, proc.returncode)


class RunContext(object):
    """
    The single argument passed to build phases.

    Parameters
    ----------
    mode : :class:`HashMode` or :class:`RunMode`

    top : str
        Top build directory holding the materialized inputs.

    build : str
        Current working directory of operations; changed by ``chdir``
        and ``set_root``.

    prefix : str
        The output (store) directory.

    state : str (optional)
        Directory for state kept between builds.

    env : dict (optional)
        Environment for subprocesses. ``PATH`` defaults to
        ``/bin:/usr/bin``.
    """

    attr_names = ('top', 'build', 'prefix', 'state', 'system', 'shell', 'apply_patch',
                  'inreplace', 'inreplace_re', 'rm_f', 'rm_rf', 'set_env', 'append_env',
                  'prepend_env', 'link', 'install_files', 'write_file', 'chdir',
                  'set_root', 'mkdir', 'download', 'unpack')

    def __init__(self, mode, top, build, prefix, state=None, env=None):
        self.mode = mode
        self.top = top
        self.build = build
        self.prefix = prefix
        self.state = state
        self.env = dict(env) if env else {}
        self.env.setdefault('PATH', DEFAULT_PATH)

    @classmethod
    def for_hashing(cls, sink):
        return cls(HashMode(sink), **PLACEHOLDER_DIRS)

    def __repr__(self):
        return '<runctx>'

    def attr(self, name):
        if name not in self.attr_names:
            raise NoSuchAttributeError('run context has no attribute %s' % name)
        return getattr(self, name)

    @property
    def hashing(self):
        return isinstance(self.mode, HashMode)

    @property
    def path(self):
        return self.env.get('PATH', '')

    @property
    def logger(self):
        return self.mode.logger

    def _begin(self, *parts):
        """Returns True when the operation has been hashed and must not run"""
        if self.hashing:
            self.mode.add(*parts)
            return True
        self.mode.check_cancel()
        return False

    def work_path(self, path):
        if os.path.isabs(path):
            return path
        return pjoin(self.build, path)

    def out_path(self, path):
        if os.path.isabs(path):
            return path
        return pjoin(self.prefix, path)

    def _run(self, args, cwd, stdin_data=None):
        run_cmd(args, self.env, cwd, self.logger, cancel=self.mode.cancel,
                stdin_data=stdin_data)

    #
    # Processes
    #

    def system(self, *args, **kw):
        dir = kw.pop('dir', '')
        if kw:
            raise TypeError('system() got unexpected keyword arguments %r' % sorted(kw))
        args = [a if isinstance(a, str) else str(a) for a in args]
        if self._begin('system', 'dir', dir, join_quote(args)):
            return
        if not args:
            raise InvalidOperationError('system() needs at least one argument')
        exe = lookup_executable(args[0], self.path)
        self._run([exe] + args[1:], pjoin(self.build, dir))

    def shell(self, code):
        if self._begin('shell', code):
            return
        self._run([lookup_executable('bash', self.path)], self.build, stdin_data=code)

    def apply_patch(self, patch):
        if self._begin('patch', patch):
            return
        self._run([lookup_executable('patch', self.path), '-p1'], self.build,
                  stdin_data=patch)

    #
    # Text edits
    #

    def inreplace(self, file, pattern, target):
        check_path(file)
        if self._begin('inreplace', file, 'pattern', pattern, 'target', target):
            return
        path = self.work_path(file)
        with open(path) as f:
            data = f.read()
        with open(path, 'w') as f:
            f.write(data.replace(pattern, target))

    def inreplace_re(self, file, pattern, target):
        check_path(file)
        if self._begin('inreplace-re', file, 'pattern', pattern, 'target', target):
            return
        path = self.work_path(file)
        with open(path) as f:
            data = f.read()
        with open(path, 'w') as f:
            f.write(re.sub(pattern, target, data))

    #
    # Filesystem
    #

    def rm_rf(self, path):
        check_path(path)
        if self._begin('rmrf', path):
            return
        target = self.work_path(path)
        if os.path.isdir(target) and not os.path.islink(target):
            rmtree_write_protected(target)
        elif os.path.lexists(target):
            os.unlink(target)

    rm_f = rm_rf

    def link(self, path, target):
        paths = [path] if isinstance(path, str) else list(path)
        for p in paths:
            dest = pjoin(target, os.path.basename(p))
            if self.hashing:
                self.mode.add('symlink', 'target', dest, 'path', p)
                continue
            self.mode.check_cancel()
            dest = self.out_path(dest)
            self.logger.debug('symlinking %s -> %s' % (dest, p))
            silent_makedirs(os.path.dirname(dest))
            os.symlink(p, dest)

    def install_files(self, target, pattern, symlink=False):
        if self._begin('install', 'target', target, 'pattern', pattern, 'symlink', symlink):
            return
        install_files(self.work_path(pattern), self.work_path(target), link=symlink,
                      logger=self.logger)

    def write_file(self, target, data):
        if self._begin('write-file', 'target', target, 'data', data):
            return
        path = self.out_path(target)
        silent_makedirs(os.path.dirname(path))
        with open(path, 'w') as f:
            f.write(data)

    def mkdir(self, dir):
        if self._begin('mkdir', dir):
            return
        silent_makedirs(pjoin(self.build, dir))

    def chdir(self, dir, fn):
        """Calls `fn()` with the build dir moved to `dir`; restored on exit"""
        hashing = self._begin('chdir', dir)
        old = self.build
        self.build = pjoin(self.build, dir)
        try:
            result = fn()
        finally:
            self.build = old
        if hashing:
            self.mode.add('end-chdir', dir)
            return None
        return result

    def set_root(self, dir):
        if self._begin('set-root', dir):
            return
        target = pjoin(self.build, dir)
        visible = [e for e in os.listdir(target) if not e.startswith('.')]
        if len(visible) == 1 and os.path.isdir(pjoin(target, visible[0])):
            target = pjoin(target, visible[0])
        self.build = target

    #
    # Environment
    #

    def set_env(self, key, value):
        if self._begin('set-env', 'key', key, 'value', value):
            return
        self.env[key] = value

    def append_env(self, key, value):
        if self._begin('append-env', 'key', key, 'value', value):
            return
        if self.env.get(key):
            self.env[key] = self.env[key] + os.pathsep + value
        else:
            self.env[key] = value

    def prepend_env(self, key, value):
        if self._begin('prepend-env', 'key', key, 'value', value):
            return
        if self.env.get(key):
            self.env[key] = value + os.pathsep + self.env[key]
        else:
            self.env[key] = value

    #
    # Network and archives
    #

    def download(self, url, path, sum=None):
        sum_type = sum_value = None
        if sum is not None:
            sum_type, sum_value = decode_sum(sum)
        if self._begin('download', 'url', url, 'path', path,
                       'sum', '' if sum is None else '%s-%s' % (sum_type, sum_value)):
            return
        self.logger.debug('downloading url %s into %s' % (url, path))
        fetch.download(url, self.work_path(path), sum_type, sum_value,
                       logger=self.logger, cancel=self.mode.cancel)

    def unpack(self, path, output=None):
        if self._begin('unpack', path, 'output', output or ''):
            return
        path = self.work_path(path)
        target = self.work_path(output) if output else os.path.dirname(path)
        fetch.unpack_archive(path, target, logger=self.logger)
