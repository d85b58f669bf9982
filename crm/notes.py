import logging

from call_center.exceptions import AuthorizationError, ValidationError
from call_center.utils import clean_str, now_iso, random_record_id
from .models import build_note
from .permissions import can_perform
from .utils import owned_index

logger = logging.getLogger(__name__)


def list_notes(state, login):
    if not login:
        raise ValidationError('login_required')
    return [n for n in state.store.load('notes', []) if isinstance(n, dict) and n.get('owner') == login]


def add_note(state, login, role, note, file_ref=None):
    """note carries source / orderId / clientName / phone / text / comment / createdAt."""
    with state.uploads.discard_on_error(file_ref):
        if not login:
            raise ValidationError('login_required')
        note = note or {}
        if not clean_str(note.get('comment')) and not file_ref:
            raise ValidationError('comment_or_file_required')
        if file_ref and not can_perform(role or note.get('role'), 'attach_file'):
            raise AuthorizationError('forbidden_file')

        item = build_note(
            random_record_id(), login, note.get('source'), note.get('orderId'),
            note.get('clientName'), note.get('phone'), note.get('text'), note.get('comment'),
            created_at=note.get('createdAt'), file_ref=file_ref,
        )
        with state.store.transaction('notes') as notes:
            notes.append(item)

    logger.info(f"Note {item['id']} added by {login}")
    return item


def update_note(state, login, note_id, comment, role=None, file_ref=None):
    with state.uploads.discard_on_error(file_ref):
        if not login:
            raise ValidationError('login_required')
        if not note_id:
            raise ValidationError('id_required')

        with state.store.transaction('notes') as notes:
            item = notes[owned_index(notes, note_id, login)]
            if file_ref and not can_perform(role, 'attach_file'):
                raise AuthorizationError('forbidden_file')

            previous_file = item.get('file')
            item['comment'] = str(comment or '')
            if file_ref:
                item['file'] = file_ref
            item['updatedAt'] = now_iso()

    if file_ref and previous_file:
        state.uploads.delete(previous_file)
    return item


def delete_note(state, login, note_id):
    if not login:
        raise ValidationError('login_required')
    if not note_id:
        raise ValidationError('id_required')

    with state.store.transaction('notes') as notes:
        item = notes.pop(owned_index(notes, note_id, login))

    state.uploads.delete(item.get('file'))
    logger.info(f"Note {note_id} deleted by {login}")
    return item
