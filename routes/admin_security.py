from flask import Blueprint, Response, current_app, g, jsonify, request, stream_with_context
import structlog

from security.errors import ValidationError
from security.metrics import events, export_csv, metrics, parse_filters, parse_range
from security.rbac import require_roles
from utils import clock

logger = structlog.get_logger(__name__)

admin_security_bp = Blueprint("admin_security", __name__, url_prefix="/admin/security")


def _range_from_args():
    return parse_range(
        request.args.get("range"),
        start=request.args.get("start"),
        end=request.args.get("end"),
    )


def _filters_from_args():
    return parse_filters(
        severity=request.args.get("severity"),
        event_type=request.args.get("type"),
        search=request.args.get("q"),
        account_id=request.args.get("account_id"),
    )


def _positive_int(name, default):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number")


@admin_security_bp.get("/metrics")
@require_roles("ADMIN")
def security_metrics():
    time_range = _range_from_args()
    logger.info("security_metrics_viewed", admin_id=g.user.id, range=time_range.label)
    return jsonify(metrics(time_range)), 200


@admin_security_bp.get("/events")
@require_roles("ADMIN")
def security_events():
    time_range = _range_from_args()
    filters = _filters_from_args()

    max_size = current_app.config.get("EVENTS_MAX_PAGE_SIZE", 500)
    page = _positive_int("page", 1)
    page_size = min(_positive_int("page_size", current_app.config.get("EVENTS_PAGE_SIZE", 50)), max_size)

    return jsonify(events(time_range, filters, page=page, page_size=page_size)), 200


@admin_security_bp.get("/export")
@require_roles("ADMIN")
def export_events():
    time_range = _range_from_args()
    filters = _filters_from_args()
    filename = f"security-events-{time_range.label}-{clock.utcnow():%Y%m%d%H%M%S}.csv"
    logger.info("security_events_exported", admin_id=g.user.id, range=time_range.label)

    return Response(
        stream_with_context(export_csv(time_range, filters)),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
