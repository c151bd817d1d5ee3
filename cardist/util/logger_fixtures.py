"""
Log Capture for Unit Tests
==========================

The :class:`log_capture` context manager serves as test fixture::

    with log_capture() as log:
        resolver = Resolver(store, logger=log)
        ...
    log.assertLogged('^DEBUG:install order')

Inside the context every record of the captured logger goes to a
memory buffer instead of the configured handlers.
"""

import re
import logging
import logging.handlers


class TestHandler(logging.handlers.BufferingHandler):
    """
    Log handler that buffers indefinitely.
    """

    def __init__(self):
        logging.handlers.BufferingHandler.__init__(self, 0)

    def shouldFlush(self, *args):
        return False


class TestLoggerAdapter(logging.LoggerAdapter):
    """
    A logger that remembers what was logged; returned by
    :class:`log_capture`.
    """

    def __init__(self, logger, test_handler):
        self._handler = test_handler
        logging.LoggerAdapter.__init__(self, logger, {})

    def _format_buffered_log(self):
        fmt = self._handler.formatter
        return tuple(fmt.format(record) for record in self._handler.buffer)

    def _buffered_messages(self):
        return tuple(record.getMessage() for record in self._handler.buffer)

    def _save(self):
        self._lines = self._format_buffered_log()
        self._messages = self._buffered_messages()

    @property
    def lines(self):
        """Formatted log lines (``LEVEL:message``), as a tuple"""
        try:
            return self._lines
        except AttributeError:
            return self._format_buffered_log()

    @property
    def messages(self):
        """Undecorated log messages, as a tuple"""
        try:
            return self._messages
        except AttributeError:
            return self._buffered_messages()

    def assertLogged(self, search_pattern):
        """
        Raises ``AssertionError`` unless the regex `search_pattern`
        matches at least one log line.
        """
        assert any(re.search(search_pattern, line) for line in self.lines), \
            'no such log message: %s' % search_pattern


class log_capture(object):
    """
    Context manager to log to a memory buffer

    Arguments:
    ----------

    name : str
        The name of the logger; the root logger by default.
    """

    def __init__(self, name=None):
        self.logger = logging.getLogger(name)
        self.handler = h = TestHandler()
        h.setLevel(logging.DEBUG)
        h.setFormatter(logging.Formatter('%(levelname)s:%(message)s'))

    def __enter__(self):
        self.orig_handlers = self.logger.handlers
        self.logger.handlers = [self.handler]
        self.level = self.logger.level
        self.logger.setLevel(logging.DEBUG)
        self.test = TestLoggerAdapter(self.logger, self.handler)
        return self.test

    def __exit__(self, exc_type, exc_value, traceback):
        self.test._save()
        self.logger.handlers = self.orig_handlers
        self.logger.level = self.level
