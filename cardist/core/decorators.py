from time import sleep
from functools import wraps
import logging


def _default_retry(tries_remaining, exception, delay):
    logger = logging.getLogger()
    logger.info("%s; retrying in %s seconds, %d tries remaining" %
                (exception, delay, tries_remaining))


def retry(max_tries=3, delay=1, backoff=2, exceptions=(Exception,),
          hook_retry=_default_retry):
    """Function decorator implementing retrying logic.

    max_tries: Number of attempts to make before giving up
    delay: Seconds to sleep before the first retry
    backoff: Number to multiply delay after each failure
    exceptions: Tuple of exception classes that trigger a retry
    hook_retry: Function with signature hook_retry(tries_remaining, exception, delay);
                called prior to each retry

    The decorated function will be retried up to max_tries times if it
    raises one of `exceptions`; after the last attempt the exception
    is propagated.
    """

    def deco_retry(f):

        @wraps(f)
        def f_retry(*args, **kwargs):
            my_delay = delay
            for tries_remaining in reversed(range(max_tries)):
                try:
                    return f(*args, **kwargs)
                except exceptions as e:
                    if tries_remaining == 0:
                        raise
                    if hook_retry is not None:
                        hook_retry(tries_remaining, e, my_delay)
                    sleep(my_delay)
                    my_delay = my_delay * backoff

        return f_retry

    return deco_retry
