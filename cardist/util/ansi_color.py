r"""
ANSI Colors
===========

Console log formats may carry ANSI color sequences; they are stripped
again when the output is not a terminal.

EXAMPLES::

    >>> from cardist.util.ansi_color import monochrome
    >>> monochrome('\x1b[31;01mhello\x1b[39;49;00m')
    'hello'
"""

import os
import sys
import re


def want_color():
    """
    Whether colors should be used

    Returns:
    --------

    Boolean. False when ``NOCOLOR`` is set, for dumb terminals, and
    whenever stdout or stderr is not a terminal.
    """
    if 'NOCOLOR' in os.environ:
        return False
    if os.environ.get('TERM', None) in ['dumb', 'emacs']:
        return False
    try:
        return sys.stdout.isatty() and sys.stderr.isatty()
    except AttributeError:
        return False


_ANSI_COLOR_RE = re.compile(r'\x1b\[[0-9;]*m')


def monochrome(string):
    """Strip ANSI color sequences from `string`"""
    return _ANSI_COLOR_RE.sub('', string)
