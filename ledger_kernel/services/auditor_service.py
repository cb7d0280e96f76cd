"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every ledger state
    change: payments recorded, amended, withdrawn, approved and declined;
    sales completed and invoices generated by dispatch; dispatch steps
    that failed.  Provides chain validation and per-entity traces.

Architecture position:
    Kernel > Services -- called by PaymentLedger, ApprovalWorkflow,
    SideEffectDispatcher and TargetService.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never raw SQL max+1).
    - Chain integrity: ``hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash)``.
    - Append-only: AuditEvent rows are guarded by ORM listeners.

Failure modes:
    - AuditChainBrokenError: Recomputed hash does not match stored hash,
      or prev_hash does not match the predecessor's hash.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.exceptions import AuditChainBrokenError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.audit_event import AuditAction, AuditEvent
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity, oldest first."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(e.action for e in self.entries)

    @property
    def last_action(self) -> AuditAction | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()

        return last_event.hash if last_event else None

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        payload_data = to_json_safe(payload or {})
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )

        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )

        return audit_event

    # Payment lifecycle

    def record_payment_recorded(
        self,
        payment_id: UUID,
        receipt_number: str,
        target_type: str,
        target_id: UUID,
        payment_type: str,
        amount: Decimal,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=AuditAction.PAYMENT_RECORDED,
            actor_id=actor_id,
            payload={
                "receipt_number": receipt_number,
                "target_type": target_type,
                "target_id": target_id,
                "payment_type": payment_type,
                "amount": amount,
            },
        )

    def record_payment_amended(
        self,
        payment_id: UUID,
        changes: dict[str, dict[str, Any]],
        actor_id: UUID,
    ) -> AuditEvent:
        """Record an amendment.

        ``changes`` maps field name to ``{"old": ..., "new": ...}``.
        """
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=AuditAction.PAYMENT_AMENDED,
            actor_id=actor_id,
            payload={"changes": changes},
        )

    def record_payment_withdrawn(
        self,
        payment_id: UUID,
        receipt_number: str,
        status: str,
        amount: Decimal,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=AuditAction.PAYMENT_WITHDRAWN,
            actor_id=actor_id,
            payload={
                "receipt_number": receipt_number,
                "status": status,
                "amount": amount,
            },
        )

    def record_payment_decided(
        self,
        payment_id: UUID,
        approved: bool,
        message: str | None,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=(
                AuditAction.PAYMENT_APPROVED if approved else AuditAction.PAYMENT_DECLINED
            ),
            actor_id=actor_id,
            payload={"message": message},
        )

    # Dispatch

    def record_sale_completed(
        self,
        sale_id: UUID,
        payment_id: UUID | None,
        total: Decimal,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Sale",
            entity_id=sale_id,
            action=AuditAction.SALE_COMPLETED,
            actor_id=actor_id,
            payload={"payment_id": payment_id, "total": total},
        )

    def record_invoice_generated(
        self,
        invoice_id: UUID,
        invoice_number: str,
        source_type: str,
        source_id: UUID,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Invoice",
            entity_id=invoice_id,
            action=AuditAction.INVOICE_GENERATED,
            actor_id=actor_id,
            payload={
                "invoice_number": invoice_number,
                "source_type": source_type,
                "source_id": source_id,
            },
        )

    def record_side_effect_failed(
        self,
        payment_id: UUID,
        step: str,
        subject_id: UUID | None,
        error_code: str,
        message: str,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=AuditAction.SIDE_EFFECT_FAILED,
            actor_id=actor_id,
            payload={
                "step": step,
                "subject_id": subject_id,
                "error_code": error_code,
                "message": message,
            },
        )

    def record_ticket_completed(
        self,
        ticket_id: UUID,
        ticket_number: str,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="ServiceTicket",
            entity_id=ticket_id,
            action=AuditAction.TICKET_COMPLETED,
            actor_id=actor_id,
            payload={"ticket_number": ticket_number},
        )

    # Validation and queries

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Raises:
            AuditChainBrokenError: If any stored hash or linkage is wrong.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        if not events:
            return True

        if events[0].prev_hash is not None:
            logger.critical("audit_chain_broken", extra={"seq": events[0].seq})
            raise AuditChainBrokenError(str(events[0].id), "None", events[0].prev_hash)

        for i, event in enumerate(events):
            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=event.action,
                payload_hash=hash_payload(event.payload or {}),
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                logger.critical("audit_chain_broken", extra={"seq": event.seq})
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            if i > 0 and event.prev_hash != events[i - 1].hash:
                logger.critical("audit_chain_broken", extra={"seq": event.seq})
                raise AuditChainBrokenError(
                    str(event.id),
                    events[i - 1].hash,
                    event.prev_hash or "None",
                )

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        events = self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type)
            .where(AuditEvent.entity_id == entity_id)
            .order_by(AuditEvent.seq)
        ).scalars().all()

        return AuditTrace(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=tuple(
                AuditTraceEntry(
                    seq=e.seq,
                    action=e.action_enum,
                    occurred_at=e.occurred_at,
                    actor_id=e.actor_id,
                    payload=e.payload or {},
                    hash=e.hash,
                )
                for e in events
            ),
        )
