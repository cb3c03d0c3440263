from functools import wraps
from flask import g, jsonify
from security.session import get_session_from_request, token_from_request
from models import db
from models.user import User

def load_current_user():
    g.user = None
    g.session = None
    _, g.auth_transport = token_from_request()

    sess = get_session_from_request()
    if not sess:
        return
    user = db.session.get(User, sess.user_id)
    if user is None or user.is_deleted:
        return
    g.session = sess
    g.user = user

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(
                error="Authentication required",
                message="You are not signed in or your session has ended.",
                next_step="Sign in again.",
            ), 401
        return fn(*args, **kwargs)
    return wrapper
