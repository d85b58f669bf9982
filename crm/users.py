import logging

from call_center.exceptions import AuthenticationError, NotFoundError, ValidationError
from call_center.utils import clean_str
from .models import Role, DEFAULT_ADMIN, build_user, parse_status
from .permissions import require

logger = logging.getLogger(__name__)


def _seed_users():
    return [dict(DEFAULT_ADMIN)]


def _to_number(value):
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        raise ValidationError('bad_balance')


def load_users(store):
    """Users collection; a missing collection is seeded with the default admin."""
    users = store.load('users', None)
    if not isinstance(users, list):
        users = _seed_users()
    return [
        {**user, 'balance': float(user.get('balance') or 0)}
        for user in users
        if isinstance(user, dict)
    ]


def find_user(state, login):
    return next((u for u in load_users(state.store) if u.get('login') == login), None)


def authenticate(state, login, password):
    user = next(
        (u for u in load_users(state.store) if u.get('login') == login and u.get('pass') == password),
        None
    )
    if user is None:
        logger.info(f"Failed login attempt for {login!r}")
        raise AuthenticationError()
    return user


def list_users(state):
    return [
        {'login': u.get('login'), 'role': u.get('role'), 'balance': u['balance']}
        for u in load_users(state.store)
    ]


def add_user(state, requester_role, login, password, role, balance=0):
    require(requester_role, 'users.manage')

    login = clean_str(login)
    if not login:
        raise ValidationError('login_required')
    role_value = parse_status(Role, role)
    if role_value is None:
        raise ValidationError('bad_role')

    user = build_user(login, str(password or ''), role_value, _to_number(balance))
    with state.store.transaction('users', default=_seed_users) as users:
        if any(isinstance(u, dict) and u.get('login') == login for u in users):
            raise ValidationError('login_taken')
        users.append(user)

    logger.info(f"User {login} added with role {role_value}")
    return user


def delete_user(state, requester_role, login):
    require(requester_role, 'users.manage')
    if not login:
        raise ValidationError('no_login')

    with state.store.transaction('users', default=_seed_users) as users:
        target = next((u for u in users if isinstance(u, dict) and u.get('login') == login), None)
        if target is None:
            raise NotFoundError()

        admins = [u for u in users if isinstance(u, dict) and u.get('role') == Role.ADMIN.value]
        if target.get('role') == Role.ADMIN.value and len(admins) <= 1:
            raise ValidationError('cannot_delete_last_admin')

        users[:] = [u for u in users if not (isinstance(u, dict) and u.get('login') == login)]

    logger.info(f"User {login} deleted")


def set_balance(state, requester_role, login, balance):
    require(requester_role, 'users.manage')
    amount = _to_number(balance)

    with state.store.transaction('users', default=_seed_users) as users:
        target = next((u for u in users if isinstance(u, dict) and u.get('login') == login), None)
        if target is None:
            raise NotFoundError()
        target['balance'] = amount

    logger.info(f"Balance of {login} set to {amount}")
    return amount
