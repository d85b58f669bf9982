import logging
from contextlib import contextmanager

import redis
from django.conf import settings

from call_center.exceptions import ServiceBusyError

logger = logging.getLogger(__name__)

##### NAMESPACES
COLLECTION_LOCK_REDIS_KEY = "COLLECTION_LOCK:"  # one lock per document collection, e.g. COLLECTION_LOCK:orders
USED_PHONES_REDIS_KEY = "USED_PHONES"  # set of normalized phones already issued, mirrored to used_phones.json
ACTIVE_DATABASE_REDIS_KEY = "ACTIVE_DATABASE"  # json {id, allowDuplicates} of the selected lead database
DEALT_INDICES_REDIS_KEY = "DEALT_INDICES"  # set of row indices dealt since the last selection, never written to disk
DEALER_LOCK_NAME = "dealer"  # guards the select / check-pick-mark sequence of the row dealer

LOCK_TIMEOUTS = 3
SLEEP = 0.05
#####


conn = redis.Redis.from_url(
    settings.REDIS_URL,
    decode_responses=True
)


@contextmanager
def collection_lock(collection):
    """
    Serialize a load-mutate-persist sequence on one collection across
    workers and processes.

    Raises ServiceBusyError when the lock cannot be acquired in time.
    """
    lock_key = f"{COLLECTION_LOCK_REDIS_KEY}{collection}"

    # timeout: if the process crashes, the lock dies after LOCK_TIMEOUTS seconds
    # sleep: if locked, wait SLEEP seconds before trying again
    lock = conn.lock(lock_key, timeout=LOCK_TIMEOUTS, sleep=SLEEP)

    if not lock.acquire(blocking_timeout=LOCK_TIMEOUTS):
        logger.error(f"Could not acquire lock for collection {collection} - System Busy")
        raise ServiceBusyError()

    try:
        yield
    finally:
        if lock.owned():
            lock.release()
