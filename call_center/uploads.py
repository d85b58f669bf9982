import logging
import secrets
import time
from contextlib import contextmanager
from pathlib import Path

from django.conf import settings

logger = logging.getLogger(__name__)


class UploadStorage:
    """Stores uploaded files under generated names and hands back /uploads/ references."""

    def __init__(self, base_dir=None):
        self._base_dir = Path(base_dir) if base_dir else None

    @property
    def base_dir(self):
        return self._base_dir or Path(settings.UPLOAD_DIR)

    def generate_name(self, original_name):
        ext = Path(original_name or '').suffix.lower()
        return f"{int(time.time() * 1000)}_{secrets.token_hex(6)}{ext}"

    def save(self, uploaded_file):
        self.base_dir.mkdir(parents=True, exist_ok=True)
        name = self.generate_name(getattr(uploaded_file, 'name', ''))
        destination = self.base_dir / name

        with open(destination, 'wb') as fh:
            for chunk in uploaded_file.chunks():
                fh.write(chunk)

        logger.info(f"Stored upload {uploaded_file.name!r} as {name}")
        return f"{settings.UPLOAD_URL_PREFIX}{name}"

    def path_for(self, reference):
        # only the final component is trusted, references never escape base_dir
        return self.base_dir / Path(str(reference or '')).name

    def delete(self, reference):
        if not reference:
            return
        path = self.path_for(reference)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Could not delete upload {path}: {e}")

    @contextmanager
    def discard_on_error(self, reference):
        """Delete an already stored upload when the request using it is rejected."""
        try:
            yield reference
        except Exception:
            self.delete(reference)
            raise


uploads = UploadStorage()
