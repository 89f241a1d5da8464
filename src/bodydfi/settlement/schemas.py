"""Settlement layer value types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum


class InstructionKind(str, Enum):
    MINT = "mint"
    TRANSFER = "transfer"
    PURCHASE_ACCESS = "purchase_access"
    REFUND = "refund"


class SettlementState(str, Enum):
    UNRESOLVED = "unresolved"  # not yet accepted by the network; reconciler retries
    SUBMITTED = "submitted"  # accepted, awaiting finality
    CONFIRMED = "confirmed"  # finalized on the settlement layer
    SKIPPED = "skipped"  # no wallet on one side, nothing to settle
    FAILED = "failed"  # gave up after max attempts, needs manual review


@dataclass(frozen=True)
class SettlementInstruction:
    kind: InstructionKind
    amount: Decimal
    reference_id: str
    destination_wallet: str | None
    source_wallet: str | None = None
    memo: str = ""
    extra: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "kind": self.kind.value,
            "amount": str(self.amount),
            "reference_id": self.reference_id,
            "source": self.source_wallet,
            "destination": self.destination_wallet,
            "memo": self.memo,
            "extra": dict(self.extra),
        }


@dataclass(frozen=True)
class SettlementHandle:
    signature: str
    submitted_at: datetime


@dataclass(frozen=True)
class SettlementStatus:
    confirmations: int
    slot: int | None
    finalized: bool
    error: str | None = None


@dataclass(frozen=True)
class SettlementOutcome:
    """What happened when the coordinator tried to settle an event."""

    state: SettlementState
    signature: str | None = None
    error: str | None = None
