import structlog

from models import db
from models.user import Role
from security.identity import DEFAULT_ROLE

logger = structlog.get_logger(__name__)

# CITIZEN is given to every registered account; the admin roles unlock /admin/security
SECURITY_ROLES = (DEFAULT_ROLE, "ADMIN", "SUPER_ADMIN")


def seed_roles(names=SECURITY_ROLES):
    """Creates missing roles. Idempotent, runs on every startup."""
    existing = {name for (name,) in db.session.query(Role.name)}
    created = [name for name in names if name not in existing]
    db.session.add_all(Role(name=name) for name in created)
    db.session.commit()
    if created:
        logger.info("roles_seeded", roles=created)
    return created
