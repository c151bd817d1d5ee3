"""
:mod:`cardist.core.car` --- Signed package archives
===================================================

A car ("cardist archive") is a gzip-compressed tar of a store entry
that can be installed in place of building the package. Pack and
unpack are reproducible: entries are the regular files and symlinks of
the entry in sorted path order, with ownership and times zeroed, and
the gzip header carries no timestamp or file name.

Two reserved entries follow the payload:

``.car-info.json``
    The :class:`CarInfo` record (id, name, version, repo, signer,
    dependencies, platform, constraints).

``~signature``
    The raw ed25519 signature of the *entry digest*.

The entry digest is a blake2b-256 over, in archive order, every
entry's ``name + "\\0"`` followed by its content (regular files) or
``name + "\\1" + linkname + "\\0"`` (symlinks), and finally the bytes of
the info record. It is distinct from the blake2b of the compressed
bytes, :attr:`PackResult.sum`, which only serves transport integrity.

While packing, each file's content is fed to a
:class:`DependencyDetector` which records every store ID referenced as
``<store>/<id>`` in the payload; those become the archive's
dependencies, so a build output reports its own runtime dependencies.

Unpacking re-derives the entry digest while extracting and verifies the
signature against the ``signer`` public key in the info record. On a
missing or invalid signature everything extracted is deleted before
:class:`~cardist.core.common.MissingSignatureError` or
:class:`~cardist.core.common.InvalidSignatureError` is raised.

Example::

    key = generate_signing_key()
    packer = CarPacker(key, dep_root_dir='/opt/cardist/store')
    with open('zlib.car', 'wb') as f:
        result = packer.pack_to(info, '/opt/cardist/store/' + info.id, f)
    with open('zlib.car', 'rb') as f:
        info = unpack(f, target_dir)
"""

import io
import os
import re
import gzip
import json
import stat
import tarfile
import zlib
import platform as _platform
from os.path import join as pjoin

import jsonschema
import nacl.signing
import nacl.exceptions

from .common import (ArchiveError, MissingSignatureError, InvalidSignatureError, SecurityError,
                     SignatureError, json_formatting_options, CAR_INFO_JSON, CAR_SIGNATURE_ENTRY)
from .hasher import hash_type, format_digest, b58decode, HashingWriteStream, HashingReadStream
from .fileutils import silent_makedirs, rmtree_write_protected, silent_unlink
from .store import read_package_info

CHUNK_SIZE = 16 * 1024

car_info_schema = {
    "$schema": "http://json-schema.org/draft-04/schema#",
    "title": "car info",
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "version": {"type": "string"},
        "repo": {"type": "string"},
        "signer": {"type": "string"},
        "dependencies": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "repo": {"type": "string"},
                    "signer": {"type": "string"},
                },
                "required": ["id"]
            }
        },
        "platform": {
            "type": ["object", "null"],
            "properties": {
                "os": {"type": "string"},
                "os_version": {"type": "string"},
                "arch": {"type": "string"},
            }
        },
        "constraints": {"type": ["object", "null"],
                        "additionalProperties": {"type": "string"}},
    },
    "required": ["id"]
}


class Platform(object):
    def __init__(self, os='', os_version='', arch=''):
        self.os = os
        self.os_version = os_version
        self.arch = arch

    @classmethod
    def current(cls):
        return cls(_platform.system().lower(), _platform.release(), _platform.machine())

    def to_doc(self):
        return {'os': self.os, 'os_version': self.os_version, 'arch': self.arch}


class CarDependency(object):
    def __init__(self, id, repo='', signer=''):
        self.id = id
        self.repo = repo
        self.signer = signer

    def __repr__(self):
        return '<CarDependency %s>' % self.id

    def to_doc(self):
        return {'id': self.id, 'repo': self.repo, 'signer': self.signer}


class CarInfo(object):
    """The info record of an archive"""

    def __init__(self, id, name='', version='', repo='', signer='', dependencies=(),
                 platform=None, constraints=None):
        self.id = id
        self.name = name
        self.version = version
        self.repo = repo
        self.signer = signer
        self.dependencies = list(dependencies)
        self.platform = platform if platform is not None else Platform()
        self.constraints = dict(constraints or {})

    def __repr__(self):
        return '<CarInfo %s>' % self.id

    def __eq__(self, other):
        return isinstance(other, CarInfo) and self.to_doc() == other.to_doc()

    def __ne__(self, other):
        return not self == other

    @property
    def dependency_ids(self):
        return [dep.id for dep in self.dependencies]

    def to_doc(self):
        return {
            'id': self.id,
            'name': self.name,
            'version': self.version,
            'repo': self.repo,
            'signer': self.signer,
            'dependencies': [dep.to_doc() for dep in self.dependencies],
            'platform': self.platform.to_doc(),
            'constraints': self.constraints,
        }

    def to_json(self):
        return json.dumps(self.to_doc(), **json_formatting_options).encode('UTF-8')

    @classmethod
    def from_doc(cls, doc):
        jsonschema.validate(doc, car_info_schema)
        deps = [CarDependency(d['id'], d.get('repo', ''), d.get('signer', ''))
                for d in doc.get('dependencies') or ()]
        plat = doc.get('platform') or {}
        return cls(doc['id'], doc.get('name', ''), doc.get('version', ''), doc.get('repo', ''),
                   doc.get('signer', ''), deps,
                   Platform(plat.get('os', ''), plat.get('os_version', ''), plat.get('arch', '')),
                   doc.get('constraints'))

    @classmethod
    def from_json(cls, data):
        try:
            doc = json.loads(data.decode('UTF-8'))
            return cls.from_doc(doc)
        except (ValueError, jsonschema.ValidationError) as e:
            raise ArchiveError('invalid %s: %s' % (CAR_INFO_JSON, e))


#
# Keys
#

def generate_signing_key():
    return nacl.signing.SigningKey.generate()


def load_signing_key(raw):
    """Accepts a 32 byte seed or a 64 byte ``seed + public key`` blob"""
    if len(raw) == 64:
        raw = raw[:32]
    if len(raw) != 32:
        raise ValueError('ed25519 private key must be 32 or 64 bytes, got %d' % len(raw))
    return nacl.signing.SigningKey(raw)


def load_signing_key_file(filename):
    with open(filename, 'rb') as f:
        return load_signing_key(f.read())


def signer_id(key):
    """base58 of the public key of `key` (a signing or verify key)"""
    if isinstance(key, nacl.signing.SigningKey):
        key = key.verify_key
    return format_digest(key.encode())


#
# Dependency detection
#

# characters of an ID (signature, name and version): up to the next '/'
_ID_RUN = re.compile(br'[A-Za-z0-9._+\-]*')


class DependencyDetector(object):
    """
    Scans a byte stream for ``<prefix><id>`` and records each ``<id>``.

    `prefix` is a store directory followed by a slash, e.g.
    ``b'/opt/cardist/store/'``. Matches may straddle :meth:`write`
    calls; call :meth:`close` at the end of each file. Detectors may
    share one `deps` set.
    """

    def __init__(self, prefix, deps=None):
        if isinstance(prefix, str):
            prefix = prefix.encode('UTF-8')
        self.prefix = prefix
        self.deps = deps if deps is not None else set()
        self._tail = b''
        self._id = None

    def write(self, data):
        data = bytes(data)
        i = 0
        if self._id is not None:
            m = _ID_RUN.match(data)
            self._id += m.group()
            if m.end() == len(data):
                return len(data)
            self._finish()
            i = m.end()
        buf = self._tail + data[i:]
        start = 0
        while True:
            j = buf.find(self.prefix, start)
            if j < 0:
                break
            m = _ID_RUN.match(buf, j + len(self.prefix))
            if m.end() == len(buf):
                self._id = bytearray(m.group())
                self._tail = b''
                return len(data)
            self._record(m.group())
            start = m.end()
        self._tail = buf[max(start, len(buf) - len(self.prefix) + 1):]
        return len(data)

    update = write

    def close(self):
        self._finish()
        self._tail = b''

    def _finish(self):
        if self._id is not None:
            self._record(bytes(self._id))
            self._id = None

    def _record(self, found):
        if found:
            self.deps.add(found.decode('UTF-8'))


class _DigestTee(object):
    # fans one update out to several sinks
    def __init__(self, *sinks):
        self.sinks = [s for s in sinks if s is not None]

    def update(self, data):
        for s in self.sinks:
            s.update(data)


#
# Pack
#

class PackResult(object):
    def __init__(self, info, sum, dependencies, digest, signature):
        self.info = info
        self.sum = sum
        self.dependencies = dependencies
        self.digest = digest
        self.signature = signature


def _clean_tarinfo(name):
    ti = tarfile.TarInfo(name)
    ti.uid = ti.gid = 0
    ti.uname = ti.gname = ''
    ti.mtime = 0
    return ti


def list_payload(source_dir):
    """Regular files and symlinks below `source_dir`, sorted by path"""
    result = []
    for dirpath, dirnames, filenames in os.walk(source_dir):
        for name in dirnames + filenames:
            qname = pjoin(dirpath, name)
            mode = os.lstat(qname).st_mode
            if stat.S_ISREG(mode) or stat.S_ISLNK(mode):
                result.append(qname)
    result.sort()
    return result


def normalize_link(source_dir, filename, target):
    """Link targets inside `source_dir` become relative to the link's directory"""
    if not os.path.isabs(target):
        return target
    root = os.path.abspath(source_dir)
    if target == root or target.startswith(root + os.sep):
        return os.path.relpath(target, os.path.dirname(filename))
    return target


class CarPacker(object):
    """
    Packs store entries into signed archives.

    Parameters
    ----------
    signing_key : nacl.signing.SigningKey

    dep_root_dir : str (optional)
        Store directory whose references are detected as dependencies.
        Without it no dependency detection takes place.

    map_dependencies : callable (optional)
        ``map_dependencies(id) -> (id, repo, signer)``, to fill in
        where each detected dependency is published.
    """

    def __init__(self, signing_key, dep_root_dir=None, map_dependencies=None):
        self.signing_key = signing_key
        self.dep_root_dir = dep_root_dir
        self.map_dependencies = map_dependencies

    def pack(self, info, source_dir):
        """Returns ``(archive_bytes, sum, dependency_ids)``"""
        buf = io.BytesIO()
        result = self.pack_to(info, source_dir, buf)
        return buf.getvalue(), result.sum, result.dependencies

    def pack_to(self, info, source_dir, stream):
        """Writes the archive of `source_dir` to `stream`.

        `info` is completed in place with the signer and the detected
        dependencies. Returns a :class:`PackResult`.
        """
        source_dir = os.path.abspath(source_dir)
        out = HashingWriteStream(hash_type(), stream)
        dh = hash_type()
        deps = set() if self.dep_root_dir else None

        with gzip.GzipFile(filename='', mode='wb', fileobj=out, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode='w', format=tarfile.PAX_FORMAT) as tar:
                for filename in list_payload(source_dir):
                    name = os.path.relpath(filename, source_dir)
                    st = os.lstat(filename)
                    ti = _clean_tarinfo(name)
                    ti.mode = stat.S_IMODE(st.st_mode)
                    if stat.S_ISLNK(st.st_mode):
                        ti.type = tarfile.SYMTYPE
                        ti.linkname = normalize_link(source_dir, filename,
                                                     os.readlink(filename))
                        dh.update(name.encode('UTF-8') + b'\1' +
                                  ti.linkname.encode('UTF-8') + b'\0')
                        tar.addfile(ti)
                        continue
                    ti.size = st.st_size
                    dh.update(name.encode('UTF-8') + b'\0')
                    detector = None
                    if deps is not None:
                        detector = DependencyDetector(
                            self.dep_root_dir.rstrip('/') + '/', deps)
                    with open(filename, 'rb') as f:
                        tar.addfile(ti, HashingReadStream(_DigestTee(dh, detector), f))
                    if detector is not None:
                        detector.close()

                info.signer = signer_id(self.signing_key)
                dependencies = []
                if deps is not None:
                    info_sig = info.id.partition('-')[0]
                    for dep in sorted(deps):
                        if info.id and (dep == info.id or dep.partition('-')[0] == info_sig):
                            continue
                        if self.map_dependencies is not None:
                            dep_id, repo, signer = self.map_dependencies(dep)
                        else:
                            dep_id, repo, signer = dep, '', ''
                        dependencies.append(dep_id)
                        info.dependencies.append(CarDependency(dep_id, repo, signer))
                    dependencies.sort()
                    info.dependencies.sort(key=lambda d: d.id)

                data = info.to_json()
                dh.update(data)
                ti = _clean_tarinfo(CAR_INFO_JSON)
                ti.mode = 0o400
                ti.size = len(data)
                tar.addfile(ti, io.BytesIO(data))

                digest = dh.digest()
                signature = self.signing_key.sign(digest).signature
                ti = _clean_tarinfo(CAR_SIGNATURE_ENTRY)
                ti.mode = 0o400
                ti.size = len(signature)
                tar.addfile(ti, io.BytesIO(signature))

        return PackResult(info, format_digest(out), dependencies, digest, signature)


#
# Export
#

def export_car(store, pkg_id, dest_dir, signing_key, constraints=None, logger=None):
    """
    Packs the installed store entry `pkg_id` into ``<dest_dir>/<id>.car``.

    The info record is filled from the entry's ``.pkg-info.json``: the
    recorded runtime dependencies become the archive's dependencies and
    the platform is that of the running machine. The info record is
    also written to ``<dest_dir>/<id>.json``, the layout served to
    :class:`~cardist.core.resolver.HttpCarLookup`.

    Returns ``(car_path, pack_result)``.
    """
    path = store.locate(pkg_id)
    pkg_info = read_package_info(path)
    if constraints is None:
        constraints = pkg_info.constraints
    info = CarInfo(pkg_id, pkg_info.name, pkg_info.version, pkg_info.repo,
                   dependencies=[CarDependency(dep) for dep in pkg_info.runtime_deps],
                   platform=Platform.current(), constraints=constraints)

    silent_makedirs(dest_dir)
    car_path = pjoin(dest_dir, '%s.car' % pkg_id)
    try:
        with open(car_path, 'wb') as f:
            result = CarPacker(signing_key).pack_to(info, path, f)
        with open(pjoin(dest_dir, '%s.json' % pkg_id), 'wb') as f:
            f.write(info.to_json())
    except BaseException:
        silent_unlink(car_path)
        raise
    if logger is not None:
        logger.info('.car file saved, %d bytes to %s' % (os.path.getsize(car_path), car_path))
    return car_path, result


#
# Unpack
#

def verify_signature(info, digest, signature):
    """Raises unless `signature` is ``info.signer``'s signature of `digest`"""
    if not info.signer or signature is None:
        raise MissingSignatureError('archive %s is not signed' % info.id)
    try:
        key = nacl.signing.VerifyKey(b58decode(info.signer))
        key.verify(digest, signature)
    except (SignatureError, ValueError, nacl.exceptions.BadSignatureError) as e:
        raise InvalidSignatureError('invalid signature on archive %s: %s' % (info.id, e))


def _check_name(target_dir, name):
    dest = os.path.abspath(pjoin(target_dir, name))
    if not dest.startswith(target_dir + os.sep):
        raise SecurityError("Archive attempted to break out of target dir "
                            "with filename: %s" % name)
    real_target = os.path.realpath(target_dir)
    parent = os.path.realpath(os.path.dirname(dest))
    if parent != real_target and not parent.startswith(real_target + os.sep):
        raise SecurityError("Archive attempted to write through a symlink "
                            "with filename: %s" % name)
    return dest


_CORRUPT_ERRORS = (tarfile.TarError, zlib.error, EOFError, gzip.BadGzipFile)


def _walk_archive(stream, on_file=None, on_link=None):
    """Iterates the entries of an archive, maintaining the entry digest.

    Returns ``(info_data, signature, digest)``.
    """
    dh = hash_type()
    info_data = signature = None
    with tarfile.open(fileobj=stream, mode='r|gz') as tar:
        for member in tar:
            if member.name == CAR_INFO_JSON:
                info_data = tar.extractfile(member).read()
            elif member.name == CAR_SIGNATURE_ENTRY:
                signature = tar.extractfile(member).read()
            elif member.isreg():
                dh.update(member.name.encode('UTF-8') + b'\0')
                src = HashingReadStream(dh, tar.extractfile(member))
                if on_file is not None:
                    on_file(member, src)
                else:
                    while src.read(CHUNK_SIZE):
                        pass
            elif member.issym():
                dh.update(member.name.encode('UTF-8') + b'\1' +
                          member.linkname.encode('UTF-8') + b'\0')
                if on_link is not None:
                    on_link(member)
    if info_data is None:
        raise ArchiveError('archive has no %s' % CAR_INFO_JSON)
    dh.update(info_data)
    return info_data, signature, dh.digest()


def unpack(stream, target_dir, logger=None):
    """
    Extracts the archive read from `stream` (a file object or bytes)
    into `target_dir` and verifies it.

    Returns the :class:`CarInfo`. On any verification failure every
    extracted entry is removed again (and `target_dir` too, if this
    call created it).
    """
    if isinstance(stream, bytes):
        stream = io.BytesIO(stream)
    target_dir = os.path.abspath(target_dir)
    created_dir = not os.path.exists(target_dir)
    silent_makedirs(target_dir)
    created = set()

    def track(dest):
        top = os.path.relpath(dest, target_dir).split(os.sep)[0]
        created.add(pjoin(target_dir, top))

    def write_file(member, src):
        dest = _check_name(target_dir, member.name)
        track(dest)
        silent_makedirs(os.path.dirname(dest))
        if os.path.islink(dest):
            os.unlink(dest)
        with open(dest, 'wb') as f:
            for chunk in iter(lambda: src.read(CHUNK_SIZE), b''):
                f.write(chunk)
        os.chmod(dest, (member.mode & 0o777) | 0o200)

    def write_link(member):
        dest = _check_name(target_dir, member.name)
        track(dest)
        silent_makedirs(os.path.dirname(dest))
        silent_unlink(dest)
        os.symlink(member.linkname, dest)

    def cleanup():
        if created_dir:
            rmtree_write_protected(target_dir)
            return
        for path in created:
            if os.path.isdir(path) and not os.path.islink(path):
                rmtree_write_protected(path)
            else:
                silent_unlink(path)

    try:
        try:
            info_data, signature, digest = _walk_archive(stream, write_file, write_link)
        except _CORRUPT_ERRORS as e:
            raise InvalidSignatureError('corrupt archive: %s' % e)
        info = CarInfo.from_json(info_data)
        verify_signature(info, digest, signature)
    except BaseException:
        cleanup()
        raise
    if logger is not None:
        logger.debug('unpacked and verified %s (signer %s)' % (info.id, info.signer))
    return info


class CarInspection(object):
    def __init__(self, info, signature, digest, error):
        self.info = info
        self.signature = signature
        self.digest = digest
        self.error = error

    @property
    def valid(self):
        return self.error is None


def inspect(stream):
    """Reads and verifies an archive without extracting anything.

    Returns a :class:`CarInspection`; `error` holds the verification
    error, if any.
    """
    if isinstance(stream, bytes):
        stream = io.BytesIO(stream)
    try:
        info_data, signature, digest = _walk_archive(stream)
    except _CORRUPT_ERRORS as e:
        raise InvalidSignatureError('corrupt archive: %s' % e)
    info = CarInfo.from_json(info_data)
    try:
        verify_signature(info, digest, signature)
        error = None
    except ArchiveError as e:
        error = e
    return CarInspection(info, signature, digest, error)
