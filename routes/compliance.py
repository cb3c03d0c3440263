import json

from flask import Blueprint, Response, current_app, g, jsonify, request
import structlog

from security.compliance import compliance_report, delete_account, export_account_data
from security.csrf import clear_csrf_token
from security.errors import ValidationError
from security.rbac import require_roles
from security.retention import current_policy
from utils import clock
from utils.auth_context import login_required

logger = structlog.get_logger(__name__)

compliance_bp = Blueprint("compliance", __name__, url_prefix="/compliance")

_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


def _preserve_flag():
    raw = request.args.get("preserveAnonymizedRecords")
    if raw is None:
        return True
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValidationError("preserveAnonymizedRecords must be true or false")


def _export_response(account_id):
    bundle = export_account_data(account_id)
    filename = f"nagarsewak-data-export-{account_id}-{clock.utcnow():%Y%m%d}.json"
    return Response(
        json.dumps(bundle, indent=2, default=str),
        mimetype="application/json",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@compliance_bp.get("/export/my-data")
@login_required
def export_my_data():
    return _export_response(g.user.id)


@compliance_bp.delete("/delete/my-account")
@login_required
def delete_my_account():
    report = delete_account(g.user.id, _preserve_flag())
    logger.info("account_self_deleted", account_id=report.account_id)

    resp = Response(status=204)
    resp.delete_cookie(current_app.config.get("AUTH_COOKIE_NAME", "nagarsewak_session"), path="/")
    return clear_csrf_token(resp)


@compliance_bp.get("/export/user/<int:user_id>")
@require_roles("ADMIN")
def export_user_data(user_id):
    logger.info("account_export_by_admin", admin_id=g.user.id, account_id=user_id)
    return _export_response(user_id)


@compliance_bp.delete("/delete/user/<int:user_id>")
@require_roles("ADMIN")
def delete_user_account(user_id):
    report = delete_account(user_id, _preserve_flag())
    logger.info("account_deleted_by_admin", admin_id=g.user.id, account_id=user_id)
    return jsonify(
        message="Account deleted",
        already_deleted=report.already_deleted,
        anonymized_events=report.anonymized_events,
        deleted_events=report.deleted_events,
    ), 200


@compliance_bp.get("/report")
@require_roles("ADMIN")
def report():
    return jsonify(compliance_report()), 200


@compliance_bp.get("/policies/retention")
def retention_policy():
    return jsonify(retentionDays=current_policy().to_dict()), 200
