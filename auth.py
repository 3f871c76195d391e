import logging
from functools import wraps
from typing import NamedTuple, Optional

from flask import session
from werkzeug.security import check_password_hash

from errors import AuthenticationError

logger = logging.getLogger(__name__)


class AdminIdentity(NamedTuple):
    id: int
    username: str


def authenticate(store, username: str, password: str) -> Optional[AdminIdentity]:
    admin = store.find_admin(username)
    if not admin or not check_password_hash(admin.password_hash, password):
        logger.warning("Failed admin login for %r", username)
        return None
    return AdminIdentity(admin.id, admin.username)


def issue_session(identity: AdminIdentity):
    # Flask signs the cookie; the permanent lifetime bounds how long it verifies
    session.clear()
    session.permanent = True
    session["admin_id"] = identity.id
    session["admin_username"] = identity.username


def current_admin() -> Optional[AdminIdentity]:
    admin_id = session.get("admin_id")
    username = session.get("admin_username")
    if admin_id is None or not username:
        return None
    return AdminIdentity(admin_id, username)


def clear_session():
    session.clear()


def admin_required(view):
    @wraps(view)
    def wrapped_view(**kwargs):
        if current_admin() is None:
            raise AuthenticationError()
        return view(**kwargs)

    return wrapped_view
