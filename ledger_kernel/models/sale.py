"""
Module: ledger_kernel.models.sale
Responsibility: ORM persistence for POS sales, their items, and the
    products whose stock they draw down.
Architecture position: Kernel > Models.

Invariants enforced:
    - A sale is pending or completed; completed is terminal.
    - completed_by_payment_id records which parts payment completed a held
      sale, so re-dispatching that payment recognizes its own work.
    - stock_applied flips to True exactly once, when stock is drawn.
    - Product.stock never goes below zero when clamping is enabled.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import TrackedBase, UUIDString
from ledger_kernel.domain.targets import Product, Sale, SaleItem, SaleStatus


class ProductModel(TrackedBase):
    """Inventory product.  Only ``stock`` is mutated by the ledger."""

    __tablename__ = "products"

    __table_args__ = (UniqueConstraint("sku", name="uq_products_sku"),)

    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    stock: Mapped[int] = mapped_column(nullable=False, default=0)

    def to_dto(self) -> Product:
        return Product(
            id=self.id,
            sku=self.sku,
            name=self.name,
            unit_price=self.unit_price,
            stock=self.stock,
        )

    def __repr__(self) -> str:
        return f"<ProductModel {self.sku} stock={self.stock}>"


class SaleModel(TrackedBase):
    """
    ORM model for a POS sale.

    A sale checked out against a service ticket starts ``pending`` and is
    completed by the parts payment that lists it in
    ``pending_sales_to_complete``.
    """

    __tablename__ = "sales"

    __table_args__ = (
        Index("idx_sales_service_ticket", "service_ticket_id"),
        Index("idx_sales_status", "status"),
    )

    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    service_ticket_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("service_tickets.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SaleStatus.PENDING.value
    )
    subtotal: Mapped[Decimal] = mapped_column(nullable=False)
    tax: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    discount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False, default="cash")
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_by_payment_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )
    stock_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    items: Mapped[list["SaleItemModel"]] = relationship(
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="SaleItemModel.line_no",
        lazy="selectin",
    )

    @property
    def is_completed(self) -> bool:
        return self.status == SaleStatus.COMPLETED.value

    def to_dto(self) -> Sale:
        return Sale(
            id=self.id,
            customer_id=self.customer_id,
            service_ticket_id=self.service_ticket_id,
            status=SaleStatus(self.status),
            items=tuple(item.to_dto() for item in self.items),
            subtotal=self.subtotal,
            tax=self.tax,
            discount=self.discount,
            total=self.total,
            payment_method=self.payment_method,
            completed_at=self.completed_at,
            completed_by_payment_id=self.completed_by_payment_id,
            stock_applied=self.stock_applied,
        )

    def __repr__(self) -> str:
        return f"<SaleModel {self.id} {self.status} total={self.total}>"


class SaleItemModel(TrackedBase):
    __tablename__ = "sale_items"

    __table_args__ = (
        UniqueConstraint("sale_id", "line_no", name="uq_sale_items_line"),
    )

    sale_id: Mapped[UUID] = mapped_column(ForeignKey("sales.id"), nullable=False)
    line_no: Mapped[int] = mapped_column(nullable=False)
    product_id: Mapped[UUID] = mapped_column(ForeignKey("products.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    total: Mapped[Decimal] = mapped_column(nullable=False)

    sale: Mapped[SaleModel] = relationship(back_populates="items")

    def to_dto(self) -> SaleItem:
        return SaleItem(
            product_id=self.product_id,
            quantity=self.quantity,
            unit_price=self.unit_price,
            total=self.total,
        )
