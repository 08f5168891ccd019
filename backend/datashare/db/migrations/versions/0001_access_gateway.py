"""Access grants and access log

Revision ID: 0001_access_gateway
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_access_gateway"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "grants",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "token",
            sa.String(length=128),
            nullable=False,
            comment="Opaque hex bearer token; lookup key only",
        ),
        sa.Column("application_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("lender_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("recipient_email", sa.String(length=320), nullable=False),
        sa.Column(
            "access_level",
            sa.String(length=32),
            server_default=sa.text("'summary'"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_downloads", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("download_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "allowed_ip_prefixes",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=True,
            comment="CIDR or IP allow-list; NULL means unrestricted",
        ),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("max_downloads >= 0", name="ck_grants_max_downloads_non_negative"),
        sa.CheckConstraint(
            "download_count >= 0 AND download_count <= max_downloads",
            name="ck_grants_download_count_bounded",
        ),
    )
    op.create_index("ux_grants_token", "grants", ["token"], unique=True)
    op.create_index("ix_grants_application_id", "grants", ["application_id"], unique=False)

    op.create_table(
        "access_log",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("grant_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("actor_address", sa.String(length=45), nullable=True),
        sa.Column("actor_agent", sa.Text(), nullable=True),
        sa.Column("detail", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["grant_id"], ["grants.id"]),
    )
    op.create_index("ix_access_log_grant_id", "access_log", ["grant_id"], unique=False)
    op.create_index("ix_access_log_action", "access_log", ["action"], unique=False)
    op.create_index("ix_access_log_created_at", "access_log", ["created_at"], unique=False)

    # The log is append-only: reject UPDATE and DELETE at the database level.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION access_log_reject_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'access_log is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER access_log_append_only
        BEFORE UPDATE OR DELETE ON access_log
        FOR EACH ROW EXECUTE FUNCTION access_log_reject_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS access_log_append_only ON access_log")
    op.execute("DROP FUNCTION IF EXISTS access_log_reject_mutation()")
    op.drop_index("ix_access_log_created_at", table_name="access_log")
    op.drop_index("ix_access_log_action", table_name="access_log")
    op.drop_index("ix_access_log_grant_id", table_name="access_log")
    op.drop_table("access_log")
    op.drop_index("ix_grants_application_id", table_name="grants")
    op.drop_index("ux_grants_token", table_name="grants")
    op.drop_table("grants")
