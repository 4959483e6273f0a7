"""Shared audit logging utilities.

Every financially relevant action (lot top-ups, allocations and reversals,
fulfillment transitions, transfer verifications, chain matches) appends an
immutable row to the ``audit_log`` table. Rows are written through the
caller's session so they commit or roll back together with the business
change they describe. No update or delete helper exists;
exports keep their own bookkeeping (see ``treasury_orchestrator.audit_exporter``).
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import ulid
from sqlalchemy import JSON, Column, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, Session, SQLModel, select

__all__ = [
    "ActorType",
    "AuditAction",
    "AuditLogEntry",
    "log_event",
]


class ActorType(str, Enum):
    ADMIN = "admin"
    SYSTEM = "system"


class AuditAction(str, Enum):
    INVENTORY_LOT_RECORDED = "INVENTORY_LOT_RECORDED"
    INVENTORY_ALLOCATED = "INVENTORY_ALLOCATED"
    INVENTORY_ALLOCATION_REVERSED = "INVENTORY_ALLOCATION_REVERSED"
    TREASURY_WALLET_ACTIVATED = "TREASURY_WALLET_ACTIVATED"
    FULFILLMENT_STATUS_CHANGED = "FULFILLMENT_STATUS_CHANGED"
    USDC_TRANSFER_VERIFICATION = "USDC_TRANSFER_VERIFICATION"
    SELL_BTC_PAYMENT_DETECTED = "SELL_BTC_PAYMENT_DETECTED"
    SELL_BTC_ORDER_COMPLETED = "SELL_BTC_ORDER_COMPLETED"
    BUY_BTC_ORDER_COMPLETED = "BUY_BTC_ORDER_COMPLETED"
    SWAP_ORDER_SETTLED_INTERNALLY = "SWAP_ORDER_SETTLED_INTERNALLY"
    SWAP_ORDER_BLOCKED = "SWAP_ORDER_BLOCKED"
    SWAP_ORDER_FAILED = "SWAP_ORDER_FAILED"
    SYSTEM_SETTING_UPDATED = "SYSTEM_SETTING_UPDATED"
    TREASURY_RECONCILIATION_RECORDED = "TREASURY_RECONCILIATION_RECORDED"


_JSON_PORTABLE = JSON().with_variant(JSONB, "postgresql")


class AuditLogEntry(SQLModel, table=True):
    """Immutable audit log row."""

    __tablename__ = "audit_log"
    __table_args__ = (UniqueConstraint("event_id", name="uq_audit_log_event_id"),)

    id: str = Field(primary_key=True, default_factory=lambda: str(ulid.new()))

    # Caller supplied, deterministic where the event is replayable
    # (e.g. "fulfillment:<id>:r3"); a second write with the same id is a no-op.
    event_id: str = Field(sa_column=Column(String, nullable=False))

    ts: datetime = Field(default_factory=datetime.utcnow, index=True)
    action: str = Field(sa_column=Column(String, nullable=False, index=True))
    actor_type: ActorType = Field(default=ActorType.SYSTEM)
    # Authenticated operator (email / token subject) or the emitting component.
    actor: str = Field(default="system", index=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    details: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(_JSON_PORTABLE, nullable=False, default={})
    )


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    # Decimal, datetime and friends
    return str(value)


def log_event(
    session: Session,
    *,
    event_id: Optional[str] = None,
    action: AuditAction | str,
    entity_type: str,
    entity_id: str,
    actor: str = "system",
    actor_type: ActorType = ActorType.SYSTEM,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    """Append an audit row to *session* without committing.

    The caller owns the transaction so the audit entry commits atomically
    with the change it records. Returns ``False`` (and writes nothing) when
    an entry with the same ``event_id`` already exists, which lets replayed
    operations detect that they already ran.
    """

    event_id = event_id or f"{entity_type}:{entity_id}:{ulid.new()}"
    exists = session.exec(
        select(AuditLogEntry.id).where(AuditLogEntry.event_id == event_id)
    ).first()
    if exists is not None:
        return False
    session.add(
        AuditLogEntry(
            event_id=event_id,
            action=action.value if isinstance(action, Enum) else action,
            actor_type=actor_type,
            actor=actor,
            entity_type=entity_type,
            entity_id=str(entity_id),
            details=_jsonable(details or {}),
        )
    )
    return True
