from flask import Blueprint, request, jsonify, g

from security.errors import ValidationError
from security.notifications import get_preferences, update_preferences
from utils.auth_context import login_required

notifications_bp = Blueprint("notifications", __name__, url_prefix="/notifications")


@notifications_bp.get("/preferences")
@login_required
def read_preferences():
    return jsonify(get_preferences(g.user.id).to_dict()), 200


@notifications_bp.put("/preferences")
@login_required
def write_preferences():
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        raise ValidationError("Send at least one preference")
    prefs = update_preferences(g.user.id, data)
    return jsonify(prefs.to_dict()), 200
