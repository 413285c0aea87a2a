"""
StockLedger -- reservations and the append-only stock movement log.

Responsibility:
    Owns ``Product.current_stock`` and ``Product.reserved_stock``.  Every
    change to either counter happens here, under the product's row lock,
    together with the audit row that explains it.

Architecture position:
    Kernel > Services.  Leaf dependency of the document orchestrator.

Invariants enforced:
    - current_stock >= 0 after every operation.
    - reserved_stock <= current_stock unless the product allows
      out-of-stock sales or has unlimited stock.
    - reserved_stock == sum of ACTIVE reservation quantities.
    - Every current_stock change appends exactly one StockMovement with
      previous_stock / new_stock, so replay from 0 reproduces the counter.
    - The product row is always locked before any of its reservations.
    - Expired reservations are released lazily whenever an operation
      touches their product.

Failure modes:
    - ValidationError for non-positive quantities or past expiry dates.
    - InsufficientStockError when the request exceeds what is available.
    - ReservationNotActiveError when consuming a consumed, cancelled or
      expired reservation.
"""

from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from docledger_kernel.db.types import ZERO
from docledger_kernel.domain.clock import Clock
from docledger_kernel.domain.dtos import positive_amount
from docledger_kernel.exceptions import (
    InsufficientStockError,
    ReservationNotActiveError,
    ValidationError,
)
from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.product import (
    Product,
    ProductReservation,
    ReservationStatus,
    StockMovement,
    StockMovementType,
    StockReason,
)
from docledger_kernel.selectors.integrity_selector import Finding, IntegritySelector
from docledger_kernel.services.base import BaseService

logger = get_logger("services.stock_ledger")

DEFAULT_RESERVATION_TTL_DAYS = 7


class StockLedger(BaseService):
    """
    Stock counters, reservations and movements for one tenant at a time.

    Contract:
        Every public method takes the caller's ``organization_id`` and
        rejects products or reservations owned by another tenant.
        Changes are flushed, never committed.

    Non-goals:
        - Does NOT decide which document line consumes which reservation;
          the orchestrator does.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        reservation_ttl_days: int = DEFAULT_RESERVATION_TTL_DAYS,
    ):
        super().__init__(session, clock)
        self._reservation_ttl_days = reservation_ttl_days

    # =========================================================================
    # Products
    # =========================================================================

    def register_product(
        self,
        organization_id: UUID,
        name: str,
        opening_stock: Decimal | int | str = ZERO,
        *,
        unlimited_stock: bool = False,
        allow_out_of_stock_sale: bool = False,
        reference: str | None = None,
    ) -> Product:
        """
        Create a product, recording any opening stock as a movement.

        Opening stock is an ``add`` / ``opening_balance`` movement so the
        movement log replays to ``current_stock`` from zero.
        """
        if not name:
            raise ValidationError("name", name, "must not be empty")
        opening = ZERO if opening_stock in (None, 0) else positive_amount("opening_stock", opening_stock)
        if unlimited_stock and opening > ZERO:
            raise ValidationError("opening_stock", opening_stock, "unlimited products carry no stock")

        product = Product(
            organization_id=organization_id,
            name=name,
            reference=reference,
            current_stock=ZERO,
            reserved_stock=ZERO,
            unlimited_stock=unlimited_stock,
            allow_out_of_stock_sale=allow_out_of_stock_sale,
            movement_count=0,
        )
        self.session.add(product)
        self.session.flush()

        if opening > ZERO:
            self._append_movement(
                product, opening, StockMovementType.ADD, StockReason.OPENING_BALANCE,
                reason_detail="opening stock",
            )
            self.session.flush()

        logger.info(
            "product_registered",
            extra={
                "product_id": str(product.id),
                "opening_stock": str(opening),
                "unlimited_stock": unlimited_stock,
            },
        )
        return product

    def lock_product(self, organization_id: UUID, product_id: UUID) -> Product:
        """
        Lock the product row and release its expired reservations.

        Every mutating entry point goes through here first.
        """
        product = self._lock(Product, product_id, organization_id)
        self._expire_reservations(product)
        return product

    @staticmethod
    def available_quantity(product: Product) -> Decimal | None:
        """Quantity that can still be reserved; None means unlimited."""
        if product.unlimited_stock:
            return None
        return product.current_stock - product.reserved_stock

    # =========================================================================
    # Reservations
    # =========================================================================

    def reserve(
        self,
        organization_id: UUID,
        product_id: UUID,
        quantity: Decimal | int | str,
        client_id: UUID | None = None,
        expiration_date: date | None = None,
        notes: str | None = None,
    ) -> ProductReservation:
        """
        Hold ``quantity`` of a product for a client.

        Preconditions:
            - quantity > 0.
            - expiration_date, if given, is not before today.

        Raises:
            InsufficientStockError: available stock is below ``quantity``
                and the product does not allow out-of-stock sales.
        """
        qty = positive_amount("quantity", quantity)
        today = self.clock.today()
        if expiration_date is None:
            expiration_date = today + timedelta(days=self._reservation_ttl_days)
        elif expiration_date < today:
            raise ValidationError("expiration_date", expiration_date, "is in the past")

        product = self.lock_product(organization_id, product_id)

        if not product.unlimited_stock:
            if (
                not product.allow_out_of_stock_sale
                and product.reserved_stock + qty > product.current_stock
            ):
                available = product.current_stock - product.reserved_stock
                logger.info(
                    "reservation_rejected_insufficient_stock",
                    extra={
                        "product_id": str(product.id),
                        "requested": str(qty),
                        "available": str(available),
                    },
                )
                raise InsufficientStockError(str(product.id), qty, available)
            product.reserved_stock = product.reserved_stock + qty

        reservation = ProductReservation(
            organization_id=organization_id,
            product_id=product.id,
            client_id=client_id,
            quantity=qty,
            expiration_date=expiration_date,
            status=ReservationStatus.ACTIVE,
            notes=notes,
        )
        self.session.add(reservation)
        self.session.flush()

        logger.info(
            "stock_reserved",
            extra={
                "product_id": str(product.id),
                "reservation_id": str(reservation.id),
                "quantity": str(qty),
                "reserved_stock": str(product.reserved_stock),
                "expiration_date": expiration_date.isoformat(),
            },
        )
        return reservation

    def release_reservation(
        self,
        organization_id: UUID,
        reservation_id: UUID,
        status: ReservationStatus = ReservationStatus.CANCELLED,
    ) -> ProductReservation:
        """
        Release an active reservation as cancelled or expired.

        Releasing a reservation that is no longer active is a no-op.
        """
        status = ReservationStatus(status)
        if status not in (ReservationStatus.CANCELLED, ReservationStatus.EXPIRED):
            raise ValidationError("status", status.value, "must be cancelled or expired")

        reservation, product = self._lock_reservation(organization_id, reservation_id)
        if not reservation.is_active:
            logger.debug(
                "reservation_release_noop",
                extra={"reservation_id": str(reservation.id), "status": reservation.status.value},
            )
            return reservation

        self._release(product, reservation, status)
        self.session.flush()
        logger.info(
            "reservation_released",
            extra={
                "reservation_id": str(reservation.id),
                "product_id": str(product.id),
                "status": status.value,
                "reserved_stock": str(product.reserved_stock),
            },
        )
        return reservation

    def consume_reservation(
        self,
        organization_id: UUID,
        reservation_id: UUID,
        reason_detail: str | None = None,
        source_document_id: UUID | None = None,
    ) -> StockMovement | None:
        """
        Turn an active reservation into a sale.

        Decrements current_stock and reserved_stock together, appends a
        ``remove`` / ``sale`` movement and marks the reservation consumed.
        Unlimited-stock products only mark the reservation and return None.
        """
        reservation, product = self._lock_reservation(organization_id, reservation_id)
        if not reservation.is_active:
            raise ReservationNotActiveError(str(reservation.id), reservation.status.value)

        if product.unlimited_stock:
            reservation.status = ReservationStatus.CONSUMED
            self.session.flush()
            logger.info(
                "reservation_consumed",
                extra={"reservation_id": str(reservation.id), "unlimited_stock": True},
            )
            return None

        if reservation.quantity > product.current_stock:
            raise InsufficientStockError(str(product.id), reservation.quantity, product.current_stock)

        product.reserved_stock = product.reserved_stock - reservation.quantity
        movement = self._append_movement(
            product,
            reservation.quantity,
            StockMovementType.REMOVE,
            StockReason.SALE,
            reason_detail=reason_detail,
            reservation_id=reservation.id,
            source_document_id=source_document_id,
        )
        reservation.status = ReservationStatus.CONSUMED
        self.session.flush()

        logger.info(
            "reservation_consumed",
            extra={
                "reservation_id": str(reservation.id),
                "product_id": str(product.id),
                "quantity": str(reservation.quantity),
                "current_stock": str(product.current_stock),
                "reserved_stock": str(product.reserved_stock),
            },
        )
        return movement

    def sweep_expired(self, organization_id: UUID, product_id: UUID) -> int:
        """Release every expired reservation of a product; returns the count."""
        product = self._lock(Product, product_id, organization_id)
        count = self._expire_reservations(product)
        self.session.flush()
        return count

    # =========================================================================
    # Direct movements
    # =========================================================================

    def apply_movement(
        self,
        organization_id: UUID,
        product_id: UUID,
        quantity: Decimal | int | str,
        movement_type: StockMovementType,
        reason_category: StockReason,
        reason_detail: str | None = None,
        *,
        source_document_id: UUID | None = None,
    ) -> StockMovement:
        """
        Add or remove stock outside the reservation flow.

        Raises:
            ValidationError: the product has unlimited stock.
            InsufficientStockError: a removal would drive current_stock
                below zero, or below reserved_stock for products that do
                not allow out-of-stock sales.
        """
        qty = positive_amount("quantity", quantity)
        movement_type = StockMovementType(movement_type)
        reason_category = StockReason(reason_category)

        product = self.lock_product(organization_id, product_id)
        if product.unlimited_stock:
            raise ValidationError("product_id", str(product.id), "unlimited products have no stock movements")

        if movement_type is StockMovementType.REMOVE:
            floor = ZERO if product.allow_out_of_stock_sale else product.reserved_stock
            if product.current_stock - qty < floor:
                available = product.current_stock - floor
                logger.info(
                    "stock_removal_rejected",
                    extra={
                        "product_id": str(product.id),
                        "requested": str(qty),
                        "available": str(available),
                        "reason_category": reason_category.value,
                    },
                )
                raise InsufficientStockError(str(product.id), qty, available)

        movement = self._append_movement(
            product, qty, movement_type, reason_category,
            reason_detail=reason_detail,
            source_document_id=source_document_id,
        )
        self.session.flush()
        return movement

    def reconcile_product(self, organization_id: UUID, product_id: UUID) -> list[Finding]:
        """Replay-check one product's counters; returns the findings."""
        product = self._get(Product, product_id, organization_id)
        return IntegritySelector(self.session).stock_findings(organization_id, product.id)

    # =========================================================================
    # Internals
    # =========================================================================

    def _lock_reservation(
        self, organization_id: UUID, reservation_id: UUID,
    ) -> tuple[ProductReservation, Product]:
        # Product first, then reservation: one lock order for every path
        reservation = self._get(ProductReservation, reservation_id, organization_id)
        product = self.lock_product(organization_id, reservation.product_id)
        reservation = self._lock(ProductReservation, reservation_id, organization_id)
        return reservation, product

    def _release(
        self, product: Product, reservation: ProductReservation, status: ReservationStatus,
    ) -> None:
        if not product.unlimited_stock:
            product.reserved_stock = product.reserved_stock - reservation.quantity
        reservation.status = status

    def _expire_reservations(self, product: Product) -> int:
        today = self.clock.today()
        expired = self.session.execute(
            select(ProductReservation)
            .where(
                ProductReservation.product_id == product.id,
                ProductReservation.status == ReservationStatus.ACTIVE,
                ProductReservation.expiration_date < today,
            )
            .with_for_update()
        ).scalars().all()
        for reservation in expired:
            self._release(product, reservation, ReservationStatus.EXPIRED)
        if expired:
            logger.info(
                "reservations_expired",
                extra={
                    "product_id": str(product.id),
                    "count": len(expired),
                    "reserved_stock": str(product.reserved_stock),
                },
            )
        return len(expired)

    def _append_movement(
        self,
        product: Product,
        quantity: Decimal,
        movement_type: StockMovementType,
        reason_category: StockReason,
        *,
        reason_detail: str | None = None,
        reservation_id: UUID | None = None,
        source_document_id: UUID | None = None,
    ) -> StockMovement:
        previous = product.current_stock
        if movement_type is StockMovementType.ADD:
            new = previous + quantity
        else:
            new = previous - quantity
        if new < ZERO:
            raise InsufficientStockError(str(product.id), quantity, previous)

        product.movement_count = product.movement_count + 1
        product.current_stock = new
        movement = StockMovement(
            organization_id=product.organization_id,
            product_id=product.id,
            sequence=product.movement_count,
            movement_type=movement_type,
            quantity=quantity,
            previous_stock=previous,
            new_stock=new,
            reason_category=reason_category,
            reason_detail=reason_detail,
            reservation_id=reservation_id,
            source_document_id=source_document_id,
        )
        self.session.add(movement)
        logger.info(
            "stock_movement_appended",
            extra={
                "product_id": str(product.id),
                "sequence": movement.sequence,
                "movement_type": movement_type.value,
                "quantity": str(quantity),
                "previous_stock": str(previous),
                "new_stock": str(new),
                "reason_category": reason_category.value,
            },
        )
        return movement
