"""
SaleService / StockService -- POS sales and the stock they draw down.

Responsibility:
    Creates sales (completed POS sales, or pending sales held against a
    service ticket until a parts payment is approved), completes held
    sales, and applies each sale's stock movement exactly once.

Architecture position:
    Kernel > Services.  ``complete_sale`` is the Sale.status transition
    API that SideEffectDispatcher invokes; ``adjust_stock`` is the
    Product stock API.

Invariants enforced:
    - A sale's stock is applied exactly once (``stock_applied``).  A
      completed POS sale applies it at creation; a pending service sale
      applies it at completion, so a declined or withdrawn parts payment
      never leaves stock drawn for goods that did not leave the shop.
    - A completed sale is never completed again.  Re-completion by the
      same payment is a no-op; by anyone else, SaleAlreadyCompletedError.
    - Stock is clamped at zero when ``clamp_at_zero`` is set.

Failure modes:
    - ProductNotFoundError, SaleNotFoundError, TargetNotFoundError.
    - InvalidAmountError for empty sales, non-positive quantities or a
      discount larger than the sale.
    - SaleAlreadyCompletedError (SideEffectError).
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import select

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.payments import ZERO, to_amount
from ledger_kernel.domain.targets import Product, Sale, SaleLine, SaleStatus
from ledger_kernel.exceptions import (
    InvalidAmountError,
    ProductNotFoundError,
    SaleAlreadyCompletedError,
    SaleNotFoundError,
    TargetNotFoundError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.sale import ProductModel, SaleItemModel, SaleModel
from ledger_kernel.models.service_ticket import ServiceTicketModel
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.base import BaseService

logger = get_logger("services.sales")

CENT = Decimal("0.01")


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class StockService(BaseService):
    """Product stock adjustments."""

    def __init__(self, session, clamp_at_zero: bool = True):
        super().__init__(session)
        self._clamp_at_zero = clamp_at_zero

    def register_product(
        self,
        sku: str,
        name: str,
        unit_price: Decimal | int | str,
        stock: int,
        actor_id: UUID,
    ) -> Product:
        """Add a product to the catalog with an opening stock level."""
        price = to_amount(unit_price)
        if price < ZERO:
            raise InvalidAmountError(unit_price, "unit price cannot be negative")
        if stock < 0:
            raise InvalidAmountError(stock, "opening stock cannot be negative")
        product = ProductModel(
            sku=sku,
            name=name,
            unit_price=price,
            stock=stock,
            created_by_id=actor_id,
        )
        self.session.add(product)
        self.session.flush()
        return product.to_dto()

    def _lock_product(self, product_id: UUID) -> ProductModel:
        product = self.session.execute(
            select(ProductModel)
            .where(ProductModel.id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if product is None:
            raise ProductNotFoundError(str(product_id))
        return product

    def adjust_stock(self, product_id: UUID, delta: int) -> Product:
        """Move ``product_id``'s stock by ``delta`` (negative draws down)."""
        product = self._lock_product(product_id)
        new_stock = product.stock + delta
        if new_stock < 0 and self._clamp_at_zero:
            logger.warning(
                "stock_clamped",
                extra={
                    "product_id": str(product_id),
                    "requested": new_stock,
                },
            )
            new_stock = 0
        product.stock = new_stock
        self.session.flush()
        logger.info(
            "stock_adjusted",
            extra={"product_id": str(product_id), "delta": delta, "stock": new_stock},
        )
        return product.to_dto()

    def apply_sale(self, sale: SaleModel) -> bool:
        """Draw down stock for every item of ``sale``.  Returns False if
        the sale's stock was already applied."""
        if sale.stock_applied:
            return False
        for item in sale.items:
            self.adjust_stock(item.product_id, -item.quantity)
        sale.stock_applied = True
        self.session.flush()
        return True


class SaleService(BaseService):
    """Sale creation and the pending -> completed transition."""

    def __init__(
        self,
        session,
        stock: StockService,
        auditor: AuditorService,
        clock: Clock | None = None,
        sale_tax_rate: Decimal = Decimal("0.10"),
    ):
        super().__init__(session)
        self._stock = stock
        self._auditor = auditor
        self._clock = clock or SystemClock()
        self._sale_tax_rate = sale_tax_rate

    def get_model(self, sale_id: UUID, *, for_update: bool = False) -> SaleModel:
        stmt = select(SaleModel).where(SaleModel.id == sale_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        sale = self.session.execute(stmt).scalar_one_or_none()
        if sale is None:
            raise SaleNotFoundError(str(sale_id))
        return sale

    def create_sale(
        self,
        customer_id: UUID,
        lines: Sequence[SaleLine],
        actor_id: UUID,
        *,
        service_ticket_id: UUID | None = None,
        discount: Decimal | int | str = ZERO,
        tax_rate: Decimal | None = None,
        payment_method: str = "cash",
    ) -> Sale:
        """
        Create a sale.

        Without ``service_ticket_id`` this is an ordinary POS checkout:
        the sale is completed immediately and its stock drawn.  With one,
        the sale is held ``pending`` against the ticket; its stock is
        drawn when a parts payment listing it is approved.
        """
        if not lines:
            raise InvalidAmountError(0, "a sale needs at least one line")
        discount_amount = to_amount(discount)
        if discount_amount < ZERO:
            raise InvalidAmountError(discount, "discount cannot be negative")

        if service_ticket_id is not None:
            if self.session.get(ServiceTicketModel, service_ticket_id) is None:
                raise TargetNotFoundError("service_ticket", str(service_ticket_id))

        sale = SaleModel(
            customer_id=customer_id,
            service_ticket_id=service_ticket_id,
            payment_method=payment_method,
            status=SaleStatus.PENDING.value,
            subtotal=ZERO,
            tax=ZERO,
            discount=ZERO,
            total=ZERO,
            stock_applied=False,
            created_by_id=actor_id,
        )

        subtotal = ZERO
        for line_no, line in enumerate(lines, start=1):
            if isinstance(line.quantity, bool) or line.quantity <= 0:
                raise InvalidAmountError(line.quantity, "quantity must be a positive integer")
            product = self.session.get(ProductModel, line.product_id)
            if product is None:
                raise ProductNotFoundError(str(line.product_id))
            unit_price = (
                to_amount(line.unit_price) if line.unit_price is not None else product.unit_price
            )
            line_total = unit_price * line.quantity
            subtotal += line_total
            sale.items.append(
                SaleItemModel(
                    line_no=line_no,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price=unit_price,
                    total=line_total,
                    created_by_id=actor_id,
                )
            )

        rate = self._sale_tax_rate if tax_rate is None else tax_rate
        tax = round_money(subtotal * rate)
        if discount_amount > subtotal + tax:
            raise InvalidAmountError(discount, "discount exceeds the sale total")

        sale.subtotal = subtotal
        sale.tax = tax
        sale.discount = discount_amount
        sale.total = subtotal + tax - discount_amount

        if service_ticket_id is None:
            sale.status = SaleStatus.COMPLETED.value
            sale.completed_at = self._clock.now()

        self.session.add(sale)
        self.session.flush()

        if service_ticket_id is None:
            self._stock.apply_sale(sale)

        logger.info(
            "sale_created",
            extra={
                "sale_id": str(sale.id),
                "status": sale.status,
                "total": str(sale.total),
                "service_ticket_id": str(service_ticket_id) if service_ticket_id else None,
            },
        )
        return sale.to_dto()

    def complete_sale(
        self,
        sale_id: UUID,
        actor_id: UUID,
        payment_id: UUID | None = None,
    ) -> tuple[Sale, bool]:
        """
        Flip a pending sale to completed and draw its stock.

        Returns ``(sale, completed_now)``.  ``completed_now`` is False when
        ``payment_id`` already completed this sale on an earlier run.

        Raises:
            SaleNotFoundError: Unknown sale.
            SaleAlreadyCompletedError: Completed by something else.
        """
        sale = self.get_model(sale_id, for_update=True)

        if sale.is_completed:
            if payment_id is not None and sale.completed_by_payment_id == payment_id:
                return sale.to_dto(), False
            raise SaleAlreadyCompletedError(
                str(sale_id),
                str(sale.completed_by_payment_id) if sale.completed_by_payment_id else None,
            )

        sale.status = SaleStatus.COMPLETED.value
        sale.completed_at = self._clock.now()
        sale.completed_by_payment_id = payment_id
        sale.updated_by_id = actor_id
        self.session.flush()

        self._stock.apply_sale(sale)
        self._auditor.record_sale_completed(
            sale_id=sale.id,
            payment_id=payment_id,
            total=sale.total,
            actor_id=actor_id,
        )
        logger.info(
            "sale_completed",
            extra={
                "sale_id": str(sale.id),
                "payment_id": str(payment_id) if payment_id else None,
                "total": str(sale.total),
            },
        )
        return sale.to_dto(), True
