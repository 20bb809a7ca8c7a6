"""Initial deal cache schema: users, deals, products, deal_products.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("last_name", sa.String(200), nullable=True),
        sa.Column("department_ids", sa.JSON(), server_default=sa.text("'[]'"), nullable=False),
        sa.Column("password", sa.Text(), nullable=True),
    )

    op.create_table(
        "deals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("date_create", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_id", sa.Integer(), nullable=True),
        sa.Column("is_approved", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_conducted", sa.Boolean(), server_default=sa.false(), nullable=False),
    )
    op.create_index("ix_deals_assigned_id", "deals", ["assigned_id"])

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("name", sa.String(500), nullable=True),
    )

    op.create_table(
        "deal_products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "deal_id",
            sa.Integer(),
            sa.ForeignKey("deals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("given_amount", sa.Float(), nullable=False),
        sa.Column("fact_amount", sa.Float(), nullable=True),
        sa.Column(
            "total",
            sa.Float(),
            sa.Computed("given_amount - fact_amount", persisted=True),
            nullable=True,
        ),
        sa.UniqueConstraint("deal_id", "product_id", name="uq_deal_products_deal_product"),
    )


def downgrade() -> None:
    op.drop_table("deal_products")
    op.drop_table("products")
    op.drop_index("ix_deals_assigned_id", table_name="deals")
    op.drop_table("deals")
    op.drop_table("users")
