import os
import shutil
import tempfile
import contextlib
import logging
from textwrap import dedent
from os.path import join as pjoin

from ..common import working_directory
from ..fileutils import silent_makedirs, rmtree_write_protected
from ...util.logger_setup import configure_logging


def which(filename):
    """Checks PATH for the location of filename; None if not found"""
    return shutil.which(filename)


def make_abs_temp_dir():
    """Create a temporary directory and get its absolute path"""
    return os.path.realpath(tempfile.mkdtemp())


# We always use the context manager form
class AssertRaisesResult(object):
    pass


@contextlib.contextmanager
def assert_raises(wanted_exc_type):
    r = AssertRaisesResult()
    try:
        yield r
    except Exception as e:
        if not isinstance(e, wanted_exc_type):
            assert False, 'Wanted exception %r but got %r' % (wanted_exc_type, type(e))
        r.exc_type = type(e)
        r.exc_val = e
    else:
        assert False, 'Expected exception not raised'


@contextlib.contextmanager
def temp_dir():
    tempdir = make_abs_temp_dir()
    try:
        yield tempdir
    finally:
        rmtree_write_protected(tempdir)


@contextlib.contextmanager
def temp_working_dir():
    tempdir = make_abs_temp_dir()
    try:
        with working_directory(tempdir):
            yield tempdir
    finally:
        rmtree_write_protected(tempdir)


def cat(filename, mode='r'):
    with open(filename, mode) as f:
        return f.read()


def dump(filename, contents, mode=None):
    d = os.path.dirname(filename)
    if d:
        silent_makedirs(d)
    with open(filename, 'wb' if isinstance(contents, bytes) else 'w') as f:
        f.write(contents if isinstance(contents, bytes) else dedent(contents))
    if mode is not None:
        os.chmod(filename, mode)


def make_store_entry(store_dir, pkg_id, files=None, runtime_deps=(), name=None):
    """Creates a complete (unfrozen) store entry with a ``.pkg-info.json``"""
    from ..store import PackageInfo, write_package_info
    path = pjoin(store_dir, pkg_id)
    silent_makedirs(path)
    for relname, contents in (files or {}).items():
        dump(pjoin(path, relname), contents)
    if name is None:
        name = pkg_id.split('-')[1] if '-' in pkg_id else pkg_id
    write_package_info(path, PackageInfo(pkg_id, name, runtime_deps=runtime_deps,
                                         build_deps=runtime_deps))
    return path


VERBOSE = bool(int(os.environ.get('VERBOSE', '0')))
if VERBOSE:
    configure_logging('DEBUG')
    logger = logging.getLogger()
else:
    configure_logging('WARNING')
    logger = logging.getLogger('null_logger')
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
