"""
AccountLedger -- append-only running-balance log per client.

Responsibility:
    Appends ClientAccountMovement rows and keeps ``Client.account_balance``
    equal to the ``balance_after`` of the newest row.  Corrections are
    compensating movements; no edit or delete path exists.

Architecture position:
    Kernel > Services.  Fed by the orchestrator (invoice validation,
    payments, deposits, credit applications, cancellations).

Invariants enforced:
    - balance_after(m_i) == balance_after(m_{i-1}) + amount(m_i).
    - Before every append the cached balance is checked against the last
      movement; a mismatch is an InvariantViolationError, never repaired.
    - The movement insert and the balance update are flushed together
      under the client's row lock.
    - A movement is compensated at most once, and a compensation is never
      itself compensated.

Failure modes:
    - ValidationError for a zero amount.
    - InvariantViolationError when the cache has drifted from the log.
    - BusinessRuleError on a second compensation.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from docledger_kernel.db.types import ZERO
from docledger_kernel.domain.dtos import non_zero_amount
from docledger_kernel.exceptions import (
    BusinessRuleError,
    InvariantViolationError,
    ValidationError,
)
from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.client import (
    Client,
    ClientAccountMovement,
    MovementDirection,
    MovementSource,
)
from docledger_kernel.selectors.integrity_selector import Finding, IntegritySelector
from docledger_kernel.services.base import BaseService

logger = get_logger("services.account_ledger")


class AccountLedger(BaseService):
    """
    Client account movements.

    Contract:
        Negative amounts are debits (the client owes more), positive amounts
        are credits.  Movements are ordered per client by ``sequence``,
        which follows insertion order.
    """

    def register_client(
        self, organization_id: UUID, name: str, is_foreign: bool = False,
    ) -> Client:
        if not name:
            raise ValidationError("name", name, "must not be empty")
        client = Client(
            organization_id=organization_id,
            name=name,
            is_foreign=is_foreign,
            account_balance=ZERO,
            movement_count=0,
        )
        self.session.add(client)
        self.session.flush()
        logger.info(
            "client_registered",
            extra={"client_id": str(client.id), "is_foreign": is_foreign},
        )
        return client

    def lock_client(self, organization_id: UUID, client_id: UUID) -> Client:
        return self._lock(Client, client_id, organization_id)

    def append(
        self,
        organization_id: UUID,
        client_id: UUID,
        amount: Decimal | int | str,
        source_type: MovementSource,
        source_id: UUID | None = None,
        *,
        reference_number: str | None = None,
        notes: str | None = None,
        payment_method: str | None = None,
        reverses_movement_id: UUID | None = None,
    ) -> ClientAccountMovement:
        """
        Append one movement and move the client's balance with it.

        Postconditions:
            - The new row's balance_after equals the client's
              account_balance.
            - The new row's sequence is one above the previous highest.
        """
        value = non_zero_amount("amount", amount)
        source_type = MovementSource(source_type)
        client = self.lock_client(organization_id, client_id)
        self._verify_cache(client)

        balance_after = client.account_balance + value
        client.movement_count = client.movement_count + 1
        client.account_balance = balance_after
        movement = ClientAccountMovement(
            organization_id=organization_id,
            client_id=client.id,
            sequence=client.movement_count,
            amount=value,
            balance_after=balance_after,
            movement_type=MovementDirection.CREDIT if value > ZERO else MovementDirection.DEBIT,
            source_type=source_type,
            source_id=source_id,
            movement_date=self.clock.now(),
            reference_number=reference_number,
            payment_method=payment_method,
            notes=notes,
            reverses_movement_id=reverses_movement_id,
        )
        self.session.add(movement)
        self.session.flush()

        logger.info(
            "account_movement_appended",
            extra={
                "client_id": str(client.id),
                "movement_id": str(movement.id),
                "sequence": movement.sequence,
                "amount": str(value),
                "balance_after": str(balance_after),
                "source_type": source_type.value,
                "source_id": str(source_id) if source_id else None,
            },
        )
        return movement

    def compensate(
        self, organization_id: UUID, movement_id: UUID, notes: str | None = None,
    ) -> ClientAccountMovement:
        """
        Append the exact opposite of ``movement_id``.

        The compensation links back through ``reverses_movement_id`` and
        carries ``REV-<sequence>`` as its reference number.
        """
        original = self._get(ClientAccountMovement, movement_id, organization_id)
        # Lock the client before reading the compensation state
        self.lock_client(organization_id, original.client_id)

        if original.source_type == MovementSource.COMPENSATION:
            raise BusinessRuleError(f"Movement {original.id} is a compensation and cannot be reversed")
        existing = self.session.execute(
            select(ClientAccountMovement.id).where(
                ClientAccountMovement.reverses_movement_id == original.id
            )
        ).scalar_one_or_none()
        if existing is not None:
            raise BusinessRuleError(
                f"Movement {original.id} was already compensated by {existing}"
            )

        compensation = self.append(
            organization_id,
            original.client_id,
            -original.amount,
            MovementSource.COMPENSATION,
            original.source_id,
            reference_number=f"REV-{original.sequence:06d}",
            notes=notes,
            reverses_movement_id=original.id,
        )
        logger.info(
            "account_movement_compensated",
            extra={
                "original_movement_id": str(original.id),
                "compensation_id": str(compensation.id),
                "amount": str(compensation.amount),
            },
        )
        return compensation

    def reconcile_client(self, organization_id: UUID, client_id: UUID) -> list[Finding]:
        """Replay one client's log from zero; returns the findings."""
        client = self._get(Client, client_id, organization_id)
        return IntegritySelector(self.session).balance_findings(organization_id, client.id)

    def _verify_cache(self, client: Client) -> None:
        last_balance = self.session.execute(
            select(ClientAccountMovement.balance_after)
            .where(ClientAccountMovement.client_id == client.id)
            .order_by(ClientAccountMovement.sequence.desc())
            .limit(1)
        ).scalar_one_or_none()
        expected = ZERO if last_balance is None else last_balance
        if expected != client.account_balance:
            logger.error(
                "account_balance_drift_detected",
                extra={
                    "client_id": str(client.id),
                    "cached_balance": str(client.account_balance),
                    "last_balance_after": str(expected),
                },
            )
            raise InvariantViolationError(
                f"Client {client.id} balance {client.account_balance} does not match "
                f"last movement balance {expected}"
            )
