from flask import Blueprint, request, jsonify, g

from routes.auth import set_session_cookie
from security.devices import confirm, deny, list_devices, revoke_device
from security.errors import ValidationError
from security.session import create_session
from utils.auth_context import login_required

devices_bp = Blueprint("devices", __name__, url_prefix="/devices")


# The pending id is the credential for these two: whoever holds it is the
# person who just passed the password check or got the confirmation e-mail.
@devices_bp.post("/<pending_id>/confirm")
def confirm_device(pending_id):
    data = request.get_json(silent=True) or {}
    trust_device = data.get("trust_device", False)
    if not isinstance(trust_device, bool):
        raise ValidationError("trust_device must be true or false")

    device = confirm(pending_id, trust_device)
    raw_token = create_session(device.account_id, device.fingerprint)

    resp = jsonify(message="Device confirmed", session_token=raw_token, device=device.to_dict())
    return set_session_cookie(resp, raw_token), 200


@devices_bp.post("/<pending_id>/deny")
def deny_device(pending_id):
    result = deny(pending_id)
    return jsonify(
        message="Sign-in denied",
        revoked_sessions=result.revoked_sessions,
        next_step="If this was not you, change your password.",
    ), 200


@devices_bp.get("")
@login_required
def my_devices():
    current = g.session.fingerprint
    out = []
    for device in list_devices(g.user.id):
        item = device.to_dict()
        item["current"] = device.fingerprint == current
        out.append(item)
    return jsonify(out), 200


@devices_bp.delete("/<int:device_id>")
@login_required
def remove_device(device_id):
    revoked = revoke_device(g.user.id, device_id)
    return jsonify(message="Device removed", revoked_sessions=revoked), 200
