import hmac
import secrets
from flask import g, request, jsonify, current_app

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"
STATE_CHANGING_METHODS = ("POST", "PUT", "PATCH", "DELETE")

# sign-in bootstrap; confirm/deny are authorized by the pending id, not the cookie
CSRF_EXEMPT_ENDPOINTS = {
    "auth.login",
    "auth.register",
    "devices.confirm_device",
    "devices.deny_device",
}

def issue_csrf_token(resp):
    token = secrets.token_urlsafe(32)
    resp.set_cookie(
        CSRF_COOKIE,
        token,
        httponly=False,  # must be readable by client JS
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        path="/",
    )
    return resp

def clear_csrf_token(resp):
    resp.delete_cookie(CSRF_COOKIE, path="/")
    return resp

def require_csrf():
    cookie_token = request.cookies.get(CSRF_COOKIE)
    header_token = request.headers.get(CSRF_HEADER)
    if not cookie_token or not header_token or not hmac.compare_digest(cookie_token, header_token):
        return jsonify(
            error="CSRF validation failed",
            message="The request is missing its CSRF token.",
            next_step="Reload the page and try again.",
        ), 403
    return None

def csrf_protect():
    """
    before_request hook. Only cookie-authenticated, state-changing requests
    are checked; a bearer token cannot be sent by a foreign site.
    """
    if request.method not in STATE_CHANGING_METHODS:
        return None
    if request.endpoint in CSRF_EXEMPT_ENDPOINTS:
        return None
    if getattr(g, "user", None) is None or getattr(g, "auth_transport", None) != "cookie":
        return None
    return require_csrf()
