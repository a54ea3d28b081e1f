"""create crm identity, lead and sale tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_identity",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="csr"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_crm_identity_email"),
    )

    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("course", sa.Text(), nullable=False),
        sa.Column("city", sa.Text(), nullable=False, server_default="Unknown"),
        sa.Column("source", sa.String(length=64), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("assigned_to", sa.String(length=64), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("last_updated_by", sa.String(length=64), nullable=True),
        sa.Column("sale_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("follow_up_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_lead_phone", "crm_lead", ["phone"], unique=False)
    op.create_index("ix_crm_lead_assigned_to_created_at", "crm_lead", ["assigned_to", "created_at"], unique=False)
    op.create_index("ix_crm_lead_status", "crm_lead", ["status"], unique=False)

    op.create_table(
        "crm_sale",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("csr_id", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("course", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="completed"),
        sa.Column("payment_method", sa.String(length=64), nullable=False, server_default="Bank Transfer"),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("verified_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_sale_lead_id", "crm_sale", ["lead_id"], unique=False)
    op.create_index("ix_crm_sale_csr_id_created_at", "crm_sale", ["csr_id", "created_at"], unique=False)
    op.create_index("ix_crm_sale_created_at", "crm_sale", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_sale_created_at", table_name="crm_sale")
    op.drop_index("ix_crm_sale_csr_id_created_at", table_name="crm_sale")
    op.drop_index("ix_crm_sale_lead_id", table_name="crm_sale")
    op.drop_table("crm_sale")
    op.drop_index("ix_crm_lead_status", table_name="crm_lead")
    op.drop_index("ix_crm_lead_assigned_to_created_at", table_name="crm_lead")
    op.drop_index("ix_crm_lead_phone", table_name="crm_lead")
    op.drop_table("crm_lead")
    op.drop_table("crm_identity")
