import logging

from django.conf import settings

from CELERY_INIT import app
from . import exports

logger = logging.getLogger(__name__)


# ============================================================================
# EXPORT TASKS
# ============================================================================

@app.task(bind=True, max_retries=3, default_retry_delay=2)
def export_auto_ndz_row(self, kind, payload):
    try:
        exports.append_auto_ndz(kind, payload)
    except Exception as e:
        logger.error(f"Failed to append {kind} export row for {payload.get('phone')}: {e}")
        raise self.retry(exc=e)


@app.task(bind=True, max_retries=3, default_retry_delay=2)
def export_kupat_row(self, payload):
    try:
        exports.append_kupat(payload)
    except Exception as e:
        logger.error(f"Failed to append kupat export row for {payload.get('phone')}: {e}")
        raise self.retry(exc=e)


@app.task(bind=True, max_retries=3, default_retry_delay=2)
def export_stats_event(self, event):
    try:
        exports.append_stats_event(event)
    except Exception as e:
        logger.error(f"Failed to append stats event {event.get('action')} for {event.get('login')}: {e}")
        raise self.retry(exc=e)


def enqueue(task, *args):
    """
    Hand an export to the worker, or run it in-process when EXPORTS_ASYNC is
    off. Exports are best-effort: failures are logged and never reach the
    request that produced the row.
    """
    try:
        if settings.EXPORTS_ASYNC:
            task.delay(*args)
        else:
            task.run(*args)
        return True
    except Exception as e:
        logger.exception(f"Export {task.name} failed: {e}")
        return False
