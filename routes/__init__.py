from routes.health import health_bp
from routes.auth import auth_bp
from routes.devices import devices_bp
from routes.notifications import notifications_bp
from routes.admin_security import admin_security_bp
from routes.compliance import compliance_bp

ALL_BLUEPRINTS = (
    health_bp,
    auth_bp,
    devices_bp,
    notifications_bp,
    admin_security_bp,
    compliance_bp,
)
