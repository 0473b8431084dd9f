import logging
import time

from picmatch.errors import IndexUnavailableError

logger = logging.getLogger(__name__)


def call_with_retries(func, *args, attempts=3, backoff=0.5, operation="storage", sleep=time.sleep, **kwargs):
    """
    Call func, retrying transient storage failures with exponential backoff.

    Only IndexUnavailableError is retried. After the last attempt the error
    propagates to the caller.
    """
    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except IndexUnavailableError as e:
            if attempt >= attempts:
                logger.error(f"[STORAGE] Giving up after {attempt} attempts - error: {str(e)}, operation: {operation}")
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(f"[STORAGE] Storage unavailable, retrying - attempt: {attempt}, delay: {delay:.2f}s, error: {str(e)}, operation: {operation}")
            sleep(delay)
            attempt += 1


class WriteThrough:
    """
    Mixin for in-memory components that mirror their mutations to an
    optional repository. Without a repository every write is memory only.
    """

    def __init__(self, repository=None, retry_attempts=3, retry_backoff=0.5, sleep=time.sleep):
        self.repository = repository
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self._sleep = sleep

    def _persist(self, method, *args):
        if self.repository is None:
            return None
        return call_with_retries(
            getattr(self.repository, method), *args,
            attempts=self.retry_attempts, backoff=self.retry_backoff,
            operation=method, sleep=self._sleep,
        )
