import os
import contextlib


class CardistError(Exception):
    pass


class NotFoundError(CardistError, KeyError):
    def __str__(self):
        return Exception.__str__(self)


class ResolutionError(CardistError):
    pass


class DependencyCycleError(ResolutionError):
    def __init__(self, msg, cycle):
        ResolutionError.__init__(self, msg)
        self.cycle = cycle


class SignatureError(CardistError):
    pass


class SumMismatchError(SignatureError):
    pass


class CommandFailedError(CardistError):
    def __init__(self, msg, args, returncode):
        CardistError.__init__(self, msg)
        self.cmd_args = args
        self.returncode = returncode


class OperationCancelledError(CardistError):
    pass


class BuildFailedError(CardistError):
    def __init__(self, msg, package_id, wrapped=None):
        CardistError.__init__(self, msg)
        self.package_id = package_id
        self.wrapped = wrapped


class ArchiveError(CardistError):
    pass


class MissingSignatureError(ArchiveError):
    pass


class InvalidSignatureError(ArchiveError):
    pass


class SecurityError(ArchiveError):
    pass


class StoreIOError(CardistError):
    def __init__(self, operation, path, wrapped):
        CardistError.__init__(self, '%s %s: %s' % (operation, path, wrapped))
        self.operation = operation
        self.path = path
        self.wrapped = wrapped


class InvalidConfigError(CardistError, ValueError):
    pass


json_formatting_options = dict(indent=2, separators=(', ', ' : '),
                               sort_keys=True, allow_nan=False)

PKG_INFO_JSON = '.pkg-info.json'
CAR_INFO_JSON = '.car-info.json'
CAR_SIGNATURE_ENTRY = '~signature'
PARENT_LINK = '_parent'

UNKNOWN_VERSION = 'unknown'

@contextlib.contextmanager
def working_directory(path):
    old = os.getcwd()
    try:
        os.chdir(path)
        yield
    finally:
        os.chdir(old)


@contextlib.contextmanager
def wrap_os_errors(operation, path):
    """Re-raises ``OSError`` as :class:`StoreIOError` (or
    :class:`NotFoundError` when the path does not exist)."""
    try:
        yield
    except FileNotFoundError:
        raise NotFoundError('%s %s: no such file or directory' % (operation, path))
    except OSError as e:
        raise StoreIOError(operation, path, e)


class RemoteFetchError(CardistError):
    pass


class InvalidOperationError(CardistError, ValueError):
    pass


class NoSuchAttributeError(CardistError, AttributeError):
    pass
