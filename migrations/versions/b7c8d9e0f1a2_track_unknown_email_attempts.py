"""track failed logins for unknown e-mails

Revision ID: b7c8d9e0f1a2
Revises: a1b2c3d4e5f6
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "b7c8d9e0f1a2"
down_revision = "a1b2c3d4e5f6"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("login_attempt_states", schema=None) as batch_op:
        batch_op.add_column(sa.Column("email_hash", sa.String(length=64), nullable=True))
        batch_op.alter_column("account_id", existing_type=sa.Integer(), nullable=True)
        batch_op.create_index(batch_op.f("ix_login_attempt_states_email_hash"), ["email_hash"], unique=True)


def downgrade():
    op.execute("DELETE FROM login_attempt_states WHERE account_id IS NULL")
    with op.batch_alter_table("login_attempt_states", schema=None) as batch_op:
        batch_op.drop_index(batch_op.f("ix_login_attempt_states_email_hash"))
        batch_op.alter_column("account_id", existing_type=sa.Integer(), nullable=False)
        batch_op.drop_column("email_hash")
