"""
Process-wide application state.

One AppState is owned by the process and handed by reference to every
service function. It carries the document store, the upload storage, the
phone registry and the row dealer. The registry working set and the
dealer selection live in Redis, so any number of AppState instances across
workers observe the same values.
"""

import logging

from call_center.documents import store as default_store
from call_center.uploads import uploads as default_uploads
from leads.utils import PhoneRegistry, RowDealer

logger = logging.getLogger(__name__)


class AppState:
    def __init__(self, store=None, rng=None, uploads=None):
        self.store = store or default_store
        self.uploads = uploads or default_uploads
        self.registry = PhoneRegistry(self.store)
        self.dealer = RowDealer(self.store, self.registry, rng=rng)

    def boot(self):
        self.registry.reconcile()
        return self


_state = None


def get_state():
    global _state
    if _state is None:
        _state = AppState().boot()
        logger.info("Application state initialised")
    return _state
