"""
:mod:`cardist.core.fetch` --- Downloads and archive unpacking
=============================================================

Used by the ``download`` and ``unpack`` builtins of the executor and by
the installer when it materializes file inputs. Downloads are streamed
to disk while being hashed; a sum mismatch removes the partial file and
raises :class:`~cardist.core.common.SumMismatchError`.

Supported sums (see :func:`cardist.core.hasher.decode_sum`):

``b2``
    blake2b-256 of the content, base58 encoded
``sha256``
    SHA-256 of the content, hex encoded
``etag``
    compared with the ``ETag`` header of the response
"""

import os
import shutil
import tarfile
import zipfile
from os.path import join as pjoin

import requests

from .common import RemoteFetchError, SumMismatchError, SecurityError, OperationCancelledError
from .decorators import retry
from .hasher import (make_sum_hasher, sum_bytes, normalize_etag, format_digest,
                     HashingWriteStream)
from .fileutils import silent_makedirs, silent_unlink

CHUNK_SIZE = 16 * 1024

ARCHIVE_EXTENSIONS = ('.tar.gz', '.tgz', '.tar.bz2', '.tbz2', '.tar.xz', '.txz',
                      '.tar', '.zip')


def archive_type(path):
    """Returns the (longest) known archive extension of `path`, or ``None``"""
    best = None
    for ext in ARCHIVE_EXTENSIONS:
        if path.endswith(ext) and (best is None or len(ext) > len(best)):
            best = ext
    return best


def is_remote(url):
    return url.startswith('http://') or url.startswith('https://')


@retry(max_tries=3, delay=1, exceptions=(requests.ConnectionError, requests.Timeout))
def _open_url(session, url):
    resp = session.get(url, stream=True, timeout=60)
    if resp.status_code != 200:
        resp.close()
        raise RemoteFetchError('failed to download (code: %d): %s' % (resp.status_code, url))
    return resp


def download(url, filename, sum_type=None, sum_value=None, logger=None,
             cancel=None, session=None):
    """Downloads `url` to `filename`, verifying the sum if one is given.

    `url` may also be a local path (or ``file:`` URL), which is
    copied. `cancel` is an optional ``threading.Event`` checked between
    chunks.

    Returns the formatted blake2b digest of the content.
    """
    if logger is not None:
        logger.info("Downloading '%s'" % url)
    hasher = make_sum_hasher(sum_type) if sum_type is not None else None
    content_hasher = make_sum_hasher('b2')
    etag = None

    if is_remote(url):
        if session is None:
            session = requests.Session()
        try:
            resp = _open_url(session, url)
        except requests.RequestException as e:
            raise RemoteFetchError('failed to download %s: %s' % (url, e))
        etag = resp.headers.get('ETag')
        chunks = resp.iter_content(CHUNK_SIZE)
        closer = resp
    else:
        path = url[len('file:'):] if url.startswith('file:') else url
        try:
            stream = open(path, 'rb')
        except IOError as e:
            raise RemoteFetchError(str(e))
        chunks = iter(lambda: stream.read(CHUNK_SIZE), b'')
        closer = stream

    parent = os.path.dirname(filename)
    if parent:
        silent_makedirs(parent)
    try:
        with closer:
            with open(filename, 'wb') as f:
                tee = HashingWriteStream(content_hasher, f)
                for chunk in chunks:
                    if cancel is not None and cancel.is_set():
                        raise OperationCancelledError('download of %s cancelled' % url)
                    tee.write(chunk)
                    if hasher is not None:
                        hasher.update(chunk)
        if sum_type == 'etag':
            if etag is None or normalize_etag(etag) != normalize_etag(sum_value):
                raise SumMismatchError('bad etag sum: %s (%s <> %s)' % (url, sum_value, etag))
        elif sum_type is not None:
            if hasher.digest() != sum_bytes(sum_type, sum_value):
                raise SumMismatchError('bad sum: %s (expected %s:%s)' % (url, sum_type, sum_value))
    except BaseException:
        silent_unlink(filename)
        raise
    return format_digest(content_hasher)


def _check_member(target_dir, name):
    dest = os.path.abspath(pjoin(target_dir, name))
    if dest != target_dir and not dest.startswith(target_dir + os.sep):
        raise SecurityError("Archive attempted to break out of target dir "
                            "with filename: %s" % name)


def unpack_archive(path, target_dir, logger=None):
    """Unpacks the tarball or zip file `path` into `target_dir`"""
    target_dir = os.path.abspath(target_dir)
    kind = archive_type(path)
    if kind is None:
        raise ValueError('No known decompressor for path: %s' % path)
    silent_makedirs(target_dir)
    if logger is not None:
        logger.debug('unpacking %s into %s' % (path, target_dir))
    if kind == '.zip':
        with zipfile.ZipFile(path) as archive:
            for name in archive.namelist():
                _check_member(target_dir, name)
            archive.extractall(target_dir)
    else:
        with tarfile.open(path, 'r:*') as archive:
            members = archive.getmembers()
            _check_tar_members(target_dir, members)
            archive.extractall(target_dir, members, filter='tar')


def _check_tar_members(target_dir, members):
    # no member may be placed below, or on top of, a symlink member
    links = set()
    for member in members:
        _check_member(target_dir, member.name)
        name = os.path.normpath(member.name)
        parts = name.split(os.sep)
        for i in range(1, len(parts) + 1):
            if os.sep.join(parts[:i]) in links:
                raise SecurityError("Archive attempted to write through a symlink "
                                    "with filename: %s" % member.name)
        if member.issym():
            links.add(name)
            if not os.path.isabs(member.linkname):
                _check_member(target_dir, pjoin(os.path.dirname(member.name),
                                                member.linkname))
        elif member.islnk():
            if os.path.isabs(member.linkname):
                raise SecurityError("Archive contains a hard link to an absolute "
                                    "path: %s" % member.name)
            _check_member(target_dir, member.linkname)


def copy_tree_or_file(src, dst):
    if os.path.isdir(src):
        shutil.copytree(src, dst, symlinks=True)
    else:
        shutil.copy2(src, dst)
