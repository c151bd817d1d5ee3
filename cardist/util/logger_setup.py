"""
Utilities to set up the Python logger

The root logger reports general progress. The ``'package'`` logger
reports progress on individual packages and receives the output of
build subprocesses; every record carries the package name, supplied by
the adapter that :func:`getLogger` returns::

    configure_logging("INFO")
    pkg = getLogger("package", "zlib")
    pkg.info("configure done")       # prints "[zlib] configure done"

A build log is written with :class:`log_to_file`, which ignores the
configured levels and records ``DEBUG`` and higher::

    with log_to_file('package', pjoin(build_dir, 'build.log')):
        ...
"""

import os
import logging
import logging.config

import yaml

from .ansi_color import want_color, monochrome


class LogConfigurationStore(object):
    """
    Saves the root logger configuration so that tests can restore it
    """

    def __init__(self):
        self._logger = logging.getLogger()
        self._orig_handlers = self._logger.handlers
        self._logger.handlers = []
        self._level = self._logger.level

    def restore(self):
        self._logger.handlers = self._orig_handlers
        self._logger.level = self._level


_ERROR_OCCURRED = False


def has_error_occurred():
    """
    Return whether an error was logged since logging was configured.
    """
    return _ERROR_OCCURRED


class CardistFormatter(logging.Formatter):
    """
    Formatter with an optional format per level
    """
    def __init__(self, fmt, debug=None, info=None, warning=None, error=None, critical=None):
        m = monochrome if not want_color() else lambda x: x
        logging.Formatter.__init__(self, m(fmt))
        self._custom_fmt = f = dict()
        for level, level_fmt in [(logging.DEBUG, debug), (logging.INFO, info),
                                 (logging.WARNING, warning), (logging.ERROR, error),
                                 (logging.CRITICAL, critical)]:
            if level_fmt:
                f[level] = logging.Formatter(m(level_fmt))

    def format(self, record):
        if record.levelno >= logging.ERROR:
            global _ERROR_OCCURRED
            _ERROR_OCCURRED = True
        try:
            fmt = self._custom_fmt[record.levelno]
        except KeyError:
            return logging.Formatter.format(self, record)
        return fmt.format(record)


def configure_logging(config):
    """
    Configure the root and package loggers

    Arguments:
    ----------

    config : string or ``None``.
       One of
       * the Python log level names ``'CRITICAL'``,
         ``'ERROR'``, ``'WARNING'``, ``'INFO'``, ``'DEBUG'``.
       * the name of a logging configuration YAML file. See
         ``logging_config.yaml`` for which loggers are required.
       * ``None``. In this case, the packaged default is used.
    """
    global _ERROR_OCCURRED
    _ERROR_OCCURRED = False
    default = os.path.join(os.path.dirname(__file__), 'logging_config.yaml')
    if config is None:
        _configure_logging_from_yaml(default)
    elif config.upper() in ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG']:
        _configure_logging_from_yaml(default)
        set_log_level(config)
    else:
        _configure_logging_from_yaml(config)
    logging.getLogger().debug('configured logging: %s', config)


def _configure_logging_from_yaml(filename):
    with open(filename, 'r') as f:
        config_dict = yaml.safe_load(f)
    logging.config.dictConfig(config_dict)


def set_log_level(level):
    """
    Hide log messages with a lower priority than `level`

    Arguments:
    ----------

    level : string or int
        A level name or value of the Python logging module.
    """
    level_string_to_value = dict(
        CRITICAL=logging.CRITICAL, ERROR=logging.ERROR, WARNING=logging.WARNING,
        INFO=logging.INFO, DEBUG=logging.DEBUG)
    if isinstance(level, str):
        try:
            level = level_string_to_value[level.upper()]
        except KeyError:
            raise ValueError('level must be integer or a valid log level string')
    logging.getLogger().setLevel(level)
    pkg_logger = logging.getLogger('package')
    for h in pkg_logger.handlers:
        if h.name == 'package_handler':
            h.setLevel(level)


def getLogger(name=None, pkg=None):
    """
    Like ``logging.getLogger``, with a shortcut for package loggers.

    Arguments:
    ----------

    name : str or ``None``
        The logger name; ``None`` for the root logger.

    pkg : str (optional)
        For the ``'package'`` logger only: the package name. The result
        is then a ``logging.LoggerAdapter`` supplying it.
    """
    logger = logging.getLogger(name)
    if name == 'package':
        return logging.LoggerAdapter(logger, {'pkg': pkg})
    return logger


class log_to_file(object):
    """
    Context manager adding a file handler to the logger `name`

    Every record of level ``DEBUG`` and higher is written to `filename`.
    """
    def __init__(self, name, filename):
        self.filename = filename
        self.logger = logging.getLogger(name)
        self.handler = h = logging.FileHandler(filename)
        h.setLevel(logging.DEBUG)
        h.setFormatter(self.get_formatter())

    def get_formatter(self):
        return logging.Formatter(
            fmt='%(asctime)s - %(levelname)s: [%(name)s:%(module)s] %(message)s',
            datefmt='%Y/%m/%d %H:%M:%S')

    def __enter__(self):
        self.logger.addHandler(self.handler)
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.handler.flush()
        self.handler.close()
        self.logger.removeHandler(self.handler)
