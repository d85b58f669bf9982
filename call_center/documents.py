"""
File-backed document store.

Every collection is one JSON document, read and written wholesale. Reads are
tolerant: a missing, corrupt or wrongly shaped document falls back to the
caller's default. Writes are synchronous and propagate failures.
"""

import logging
import shutil
from contextlib import contextmanager
from pathlib import Path

import orjson as json
from django.conf import settings

from call_center import redis as locks
from call_center.exceptions import PersistenceError

logger = logging.getLogger(__name__)

COLLECTION_FILES = {
    'users': 'users.json',
    'history': 'history.json',
    'orders': 'orders.json',
    'kupat': 'kupat_db.json',
    'databases': 'databases.json',
    'notes': 'notes.json',
    'used_phones': 'used_phones.json',
    'callbacks': 'callbacks.json',
    'stats_log': 'stats_log.json',
}


class DocumentStore:
    def __init__(self, base_dir=None):
        self._base_dir = Path(base_dir) if base_dir else None

    @property
    def base_dir(self):
        return self._base_dir or Path(settings.DATA_DIR)

    def path_for(self, collection):
        try:
            file_name = COLLECTION_FILES[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}")
        return self.base_dir / file_name

    def load(self, collection, default):
        path = self.path_for(collection)
        if not path.is_file():
            return default

        try:
            document = json.loads(path.read_bytes())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Collection {collection} unreadable, using default: {e}")
            return default

        if default is not None and not isinstance(document, type(default)):
            logger.warning(f"Collection {collection} has unexpected shape {type(document).__name__}, using default")
            return default
        return document

    def save(self, collection, document):
        path = self.path_for(collection)
        payload = json.dumps(document, option=json.OPT_INDENT_2)
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            path.write_bytes(payload)
        except OSError as e:
            # self-heal: the document path was replaced with a directory
            if path.is_dir():
                logger.warning(f"Collection path {path} is a directory, replacing it")
                try:
                    shutil.rmtree(path)
                    path.write_bytes(payload)
                    return
                except OSError as retry_error:
                    raise PersistenceError(message=f"Could not save {collection}: {retry_error}") from retry_error
            raise PersistenceError(message=f"Could not save {collection}: {e}") from e

    @contextmanager
    def transaction(self, collection, default=list):
        """
        Load a collection under its lock, hand it to the caller for
        mutation and persist it when the block exits cleanly.

        An exception inside the block skips the save.
        """
        with locks.collection_lock(collection):
            document = self.load(collection, default())
            yield document
            self.save(collection, document)


store = DocumentStore()
