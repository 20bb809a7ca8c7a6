"""Local cache persistence models -- the four relations other processes may read.

Four SQLAlchemy models on the shared declarative Base:
- UserModel: CRM users with their department memberships and local password
- DealModel: Deal headers plus the local approval/conduct workflow flags
- ProductModel: Canonical catalog entries (variants collapse onto these ids)
- DealProductModel: Planned vs. delivered quantity per (deal, product)

Ids for users, deals and products are the CRM's own integer ids, so the
cache never mints identifiers for them.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Computed,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.fulfillment.core.database import Base


class UserModel(Base):
    """CRM user cached locally.

    ``password`` is never supplied by the CRM; it is set at registration
    and must survive every later user sync.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    department_ids: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'")
    )
    password: Mapped[str | None] = mapped_column(Text, nullable=True)


class DealModel(Base):
    """Deal header mirrored from the CRM.

    Header fields (title, date_create, assigned_id) are owned by the CRM.
    ``is_approved`` and ``is_conducted`` are owned locally by the approval
    and reconciliation flows. assigned_id has no FK constraint: deals are
    routinely ingested before their assignee is synced into users.
    """

    __tablename__ = "deals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    date_create: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    assigned_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    is_approved: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false()
    )
    is_conducted: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false()
    )


class ProductModel(Base):
    """Canonical catalog entry."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str | None] = mapped_column(String(500), nullable=True)


class DealProductModel(Base):
    """Line item of a deal keyed by canonical product id.

    ``total`` is generated by the database from given_amount and
    fact_amount and stays NULL until fact_amount is set. product_id uses
    application-level referential integrity (rows arrive before the
    catalog is synced); deal_id cascades on deal deletion.
    """

    __tablename__ = "deal_products"
    __table_args__ = (
        UniqueConstraint(
            "deal_id",
            "product_id",
            name="uq_deal_products_deal_product",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("deals.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    given_amount: Mapped[float] = mapped_column(Float, nullable=False)
    fact_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    total: Mapped[float | None] = mapped_column(
        Float, Computed("given_amount - fact_amount", persisted=True)
    )
