"""
Handles reading the cardist configuration file. By default this is
``~/.cardist/config.yaml``::

    data_dir: ~/.cardist              # holds store/, roots/ and build/
    store_paths: [~/.cardist/store]   # ranked; default <data_dir>/store
    build_dir: ~/.cardist/build
    signing_key: ~/.cardist/car.key   # raw ed25519 key, 32 or 64 bytes
    lookup_concurrency: 20
    retain_build: false

Only ``data_dir`` is required.
"""

import os
from os.path import join as pjoin

import yaml
import jsonschema

from .common import InvalidConfigError
from .store import Store
from .installer import InstallEnv
from .resolver import Resolver
from .car import load_signing_key_file

DEFAULT_DATA_DIR = os.path.expanduser('~/.cardist')
DEFAULT_CONFIG_FILENAME = pjoin(DEFAULT_DATA_DIR, 'config.yaml')
DEFAULT_LOOKUP_CONCURRENCY = 20

config_schema = {
    "$schema": "http://json-schema.org/draft-04/schema#",
    "title": "cardist configuration file schema",
    "type": "object",
    "properties": {
        "data_dir": {"type": "string"},
        "store_paths": {
            "type": "array",
            "items": {"type": "string"},
            "minItems": 1
        },
        "build_dir": {"type": "string"},
        "signing_key": {"type": "string"},
        "lookup_concurrency": {"type": "integer", "minimum": 1},
        "retain_build": {"type": "boolean"},
    },
    "required": ["data_dir"],
    "additionalProperties": False
}


def _ensure_dir(path, logger):
    if not os.path.isdir(path):
        logger.info('%s does not exist, creating it.' % path)
        os.makedirs(path)
    return path


def _make_abs(cwd, path):
    path = os.path.expanduser(path)
    if not os.path.isabs(path):
        return os.path.realpath(os.path.join(cwd, path))
    else:
        return path


def load_config_file(filename, logger):
    """
    Load a config.yaml file, validate it, fill in defaults and create
    missing directories.
    """
    basedir = os.path.dirname(os.path.realpath(filename))
    try:
        with open(filename) as f:
            doc = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidConfigError('%s: %s' % (filename, e))
    try:
        jsonschema.validate(doc, config_schema)
    except jsonschema.ValidationError as e:
        raise InvalidConfigError('%s: %s' % (filename, e.message))

    data_dir = _ensure_dir(_make_abs(basedir, doc['data_dir']), logger)
    doc['data_dir'] = data_dir
    doc['store_paths'] = [_ensure_dir(_make_abs(basedir, p), logger)
                          for p in doc.get('store_paths', [pjoin(data_dir, 'store')])]
    doc['build_dir'] = _ensure_dir(
        _make_abs(basedir, doc.get('build_dir', pjoin(data_dir, 'build'))), logger)
    _ensure_dir(pjoin(data_dir, 'roots'), logger)
    if 'signing_key' in doc:
        doc['signing_key'] = _make_abs(basedir, doc['signing_key'])
    doc.setdefault('lookup_concurrency', DEFAULT_LOOKUP_CONCURRENCY)
    doc.setdefault('retain_build', False)
    return doc


def make_store(config):
    """The :class:`~cardist.core.store.Store` of a loaded configuration"""
    store = Store([])
    for path in reversed(config['store_paths']):
        store.prepend_path(path)
    store.default = config['store_paths'][0]
    return store


def make_install_env(config, logger, cancel=None):
    """An :class:`~cardist.core.installer.InstallEnv` on the configured store"""
    return InstallEnv.from_config(config, make_store(config), logger, cancel=cancel)


def make_resolver(config, store, lookup=None, logger=None):
    """A :class:`~cardist.core.resolver.Resolver` using ``lookup_concurrency`` workers"""
    return Resolver(store, lookup, logger=logger, concurrency=config['lookup_concurrency'])


def signing_key_of(config):
    """Loads the ed25519 key named by ``signing_key``"""
    if 'signing_key' not in config:
        raise InvalidConfigError('no signing_key configured')
    try:
        return load_signing_key_file(config['signing_key'])
    except (IOError, ValueError) as e:
        raise InvalidConfigError('unable to load signing key %s: %s' % (config['signing_key'], e))
