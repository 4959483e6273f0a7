"""Operational controls read from the ``system_settings`` table.

A run loads one :class:`OperationalControls` snapshot at its start and passes
it down explicitly; nothing here is cached between runs, so an operator
flipping ``PAYOUTS_PAUSED`` takes effect on the very next invocation.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from sqlmodel import Session, select

from common.audit import ActorType, AuditAction, log_event
from common.datetime import utcnow
from treasury_domain.settings_models import SystemSetting

__all__ = [
    "OperationalControls",
    "SETTING_KEYS",
    "load_controls",
    "update_setting",
]

PAYOUTS_PAUSED = "PAYOUTS_PAUSED"
LOW_INVENTORY_THRESHOLD_BTC = "LOW_INVENTORY_THRESHOLD_BTC"
INVENTORY_HOLD_HOURS = "INVENTORY_HOLD_HOURS"
DAILY_BTC_SEND_LIMIT = "DAILY_BTC_SEND_LIMIT"

SETTING_KEYS = frozenset(
    {PAYOUTS_PAUSED, LOW_INVENTORY_THRESHOLD_BTC, INVENTORY_HOLD_HOURS, DAILY_BTC_SEND_LIMIT}
)

_TRUE = {"1", "true", "yes", "on", "y"}

DEFAULT_HOLD = timedelta(hours=24)
DEFAULT_LOW_INVENTORY_BTC = Decimal("0.1")


def _as_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE


def _as_decimal(raw: Optional[str], default: Optional[Decimal]) -> Optional[Decimal]:
    if raw is None or raw.strip() == "":
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"invalid decimal setting value: {raw!r}") from exc


@dataclass(slots=True, frozen=True)
class OperationalControls:
    """Immutable snapshot of the operator-editable settings.

    Attributes
    ----------
    payouts_paused
        Global stop: the queue processor exits without progressing any order.
    low_inventory_threshold_btc
        Eligible inventory below this after a run raises a low-inventory alert.
    hold_duration
        Maturation delay applied to new lots (``eligible_at = received_at + hold``).
    daily_btc_send_limit
        Maximum BTC broadcast per UTC day; ``None`` means unlimited.
    """

    payouts_paused: bool = False
    low_inventory_threshold_btc: Decimal = DEFAULT_LOW_INVENTORY_BTC
    hold_duration: timedelta = DEFAULT_HOLD
    daily_btc_send_limit: Optional[Decimal] = None

    @classmethod
    def from_settings(cls, values: Dict[str, Optional[str]]) -> "OperationalControls":
        hours = values.get(INVENTORY_HOLD_HOURS)
        hold = timedelta(hours=int(hours)) if hours not in (None, "") else DEFAULT_HOLD
        return cls(
            payouts_paused=_as_bool(values.get(PAYOUTS_PAUSED), False),
            low_inventory_threshold_btc=_as_decimal(
                values.get(LOW_INVENTORY_THRESHOLD_BTC), DEFAULT_LOW_INVENTORY_BTC
            ),
            hold_duration=hold,
            daily_btc_send_limit=_as_decimal(values.get(DAILY_BTC_SEND_LIMIT), None),
        )


def load_controls(session: Session) -> OperationalControls:
    rows = session.exec(select(SystemSetting).where(SystemSetting.key.in_(sorted(SETTING_KEYS)))).all()
    return OperationalControls.from_settings({r.key: r.value for r in rows})


def update_setting(
    session: Session, key: str, value: Optional[str], *, actor: str
) -> SystemSetting:
    """Upsert a control value (validated) and audit the change. Does not commit."""

    if key not in SETTING_KEYS:
        raise ValueError(f"unknown setting: {key}")
    # fail early on values the next run could not parse
    OperationalControls.from_settings({key: value})

    row = session.exec(select(SystemSetting).where(SystemSetting.key == key)).first()
    previous = row.value if row else None
    if row is None:
        row = SystemSetting(key=key)
    row.value = value
    row.updated_by = actor
    row.updated_at = utcnow()
    session.add(row)
    log_event(
        session,
        action=AuditAction.SYSTEM_SETTING_UPDATED,
        entity_type="system_setting",
        entity_id=key,
        actor=actor,
        actor_type=ActorType.ADMIN,
        details={"old": previous, "new": value},
    )
    return row
