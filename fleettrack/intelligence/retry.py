import logging
import time
from typing import Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


def retry_call(func: Callable, max_attempts: int = 3, delay: float = 0.5, backoff: float = 2.0,
               max_delay: float = 5.0, retry_on: Tuple[Type[BaseException], ...] = (Exception,),
               sleep: Optional[Callable[[float], None]] = None):
    """Call ``func`` until it succeeds, waiting ``delay * backoff**n`` (capped) between attempts.

    The last exception is re-raised once attempts are exhausted. Exceptions not
    listed in ``retry_on`` propagate immediately.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    sleep = sleep or time.sleep
    last_error = None

    for attempt in range(max_attempts):
        try:
            return func()
        except retry_on as e:
            last_error = e
            if attempt < max_attempts - 1:
                wait = min(delay * (backoff ** attempt), max_delay)
                logger.debug("Attempt %d/%d failed (%s), retrying in %.2fs",
                             attempt + 1, max_attempts, e, wait)
                sleep(wait)

    raise last_error
