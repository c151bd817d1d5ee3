import logging
from os.path import join as pjoin

from ...util.logger_setup import (CardistFormatter, LogConfigurationStore, configure_logging,
                                  getLogger, log_to_file, set_log_level, has_error_occurred)
from .utils import temp_dir, cat, assert_raises, VERBOSE


def record(level, msg, **extra):
    d = dict(msg=msg, levelno=level, levelname=logging.getLevelName(level))
    d.update(extra)
    return logging.makeLogRecord(d)


def restore_level():
    configure_logging('DEBUG' if VERBOSE else 'WARNING')


def test_formatter_per_level(monkeypatch):
    monkeypatch.setenv('NOCOLOR', '1')
    fmt = CardistFormatter('[%(pkg)s] %(message)s',
                           error='\x1b[31;01m[%(pkg)s|%(levelname)s]\x1b[39;49;00m %(message)s')
    assert fmt.format(record(logging.INFO, 'configure', pkg='zlib')) == '[zlib] configure'
    assert fmt.format(record(logging.ERROR, 'oops', pkg='zlib')) == '[zlib|ERROR] oops'


def test_error_tracking():
    store = LogConfigurationStore()
    try:
        configure_logging('WARNING')
        assert not has_error_occurred()
        CardistFormatter('%(message)s').format(record(logging.ERROR, 'failed'))
        assert has_error_occurred()
    finally:
        store.restore()
        restore_level()


def test_set_log_level():
    store = LogConfigurationStore()
    try:
        configure_logging('ERROR')
        assert logging.getLogger().level == logging.ERROR
        handlers = [h for h in logging.getLogger('package').handlers
                    if h.name == 'package_handler']
        assert [h.level for h in handlers] == [logging.ERROR]
        set_log_level(logging.INFO)
        assert [h.level for h in handlers] == [logging.INFO]
        with assert_raises(ValueError):
            set_log_level('LOUD')
    finally:
        store.restore()
        restore_level()


def test_get_logger():
    assert getLogger('cardist') is logging.getLogger('cardist')
    adapter = getLogger('package', 'zlib')
    assert isinstance(adapter, logging.LoggerAdapter)
    assert adapter.extra == {'pkg': 'zlib'}


def test_log_to_file():
    with temp_dir() as d:
        filename = pjoin(d, 'build.log')
        logger = getLogger('package', 'zlib')
        with log_to_file('package', filename):
            logger.debug('compiling adler32.c')
        logger.debug('not recorded')
        contents = cat(filename)
        assert 'DEBUG: [package:test_logger_setup] compiling adler32.c' in contents
        assert 'not recorded' not in contents
