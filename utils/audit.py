from flask import has_request_context, request

from security import event_log


def client_ip():
    if not has_request_context():
        return None
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr


def client_user_agent():
    if not has_request_context():
        return None
    return request.headers.get("User-Agent") or None


def log_event(event_type, severity, account_id=None, details=None, commit=True):
    """Appends a security event stamped with the current request's origin."""
    return event_log.append(
        event_type,
        severity,
        account_id=account_id,
        origin_ip=client_ip(),
        user_agent=client_user_agent(),
        details=details,
        commit=commit,
    )
