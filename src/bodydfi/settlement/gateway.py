"""Settlement gateway: submit/status access to the external token network.

Failures here are routine. Coordinators go through ``submit_best_effort``,
which bounds the call with a timeout and folds every failure into an
UNRESOLVED outcome that the reconciler retries later.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
import structlog

from bodydfi.config import Settings, get_settings
from bodydfi.errors import SettlementUnavailable
from bodydfi.settlement.schemas import (
    InstructionKind,
    SettlementHandle,
    SettlementInstruction,
    SettlementOutcome,
    SettlementState,
    SettlementStatus,
)

logger = structlog.get_logger()


class SettlementGateway(ABC):
    """Abstract access to the settlement network."""

    @abstractmethod
    async def submit(self, instruction: SettlementInstruction) -> SettlementHandle:
        """Submit an instruction. Raises SettlementUnavailable on any failure."""
        ...

    @abstractmethod
    async def get_status(self, handle: SettlementHandle) -> SettlementStatus:
        """Query confirmation status. Raises SettlementUnavailable on any failure."""
        ...

    async def get_token_balance(self, wallet_address: str) -> Decimal:
        """On-chain token balance for a wallet, used by balance verification."""
        raise SettlementUnavailable("Balance queries are not supported by this gateway")

    async def aclose(self) -> None:
        """Release transport resources."""


class DisabledSettlementGateway(SettlementGateway):
    """Gateway used when settlement is switched off: every call is unavailable."""

    async def submit(self, instruction: SettlementInstruction) -> SettlementHandle:
        raise SettlementUnavailable("Settlement is disabled")

    async def get_status(self, handle: SettlementHandle) -> SettlementStatus:
        raise SettlementUnavailable("Settlement is disabled")


class HttpSettlementGateway(SettlementGateway):
    """Submits instructions to a signing relay and reads status over JSON-RPC.

    The relay owns key material and instruction encoding; it answers
    ``POST /v1/instructions`` with ``{"signature": ...}``. Status and balances
    come from the node's ``getSignatureStatuses`` / ``getTokenAccountBalance``.
    """

    def __init__(
        self,
        relay_url: str,
        rpc_url: str,
        timeout: float = 10.0,
        finality_confirmations: int = 32,
        mint_address: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.relay_url = relay_url.rstrip("/")
        self.mint_address = mint_address
        self.rpc_url = rpc_url
        self.finality_confirmations = finality_confirmations
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._rpc_id = 0

    async def submit(self, instruction: SettlementInstruction) -> SettlementHandle:
        payload = instruction.to_payload()
        if self.mint_address:
            payload["mint"] = self.mint_address
        try:
            response = await self._client.post(f"{self.relay_url}/v1/instructions", json=payload)
            response.raise_for_status()
            signature = response.json()["signature"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise SettlementUnavailable(f"Relay rejected instruction: {exc}") from exc
        return SettlementHandle(signature=signature, submitted_at=datetime.now(timezone.utc))

    async def get_status(self, handle: SettlementHandle) -> SettlementStatus:
        result = await self._rpc(
            "getSignatureStatuses",
            [[handle.signature], {"searchTransactionHistory": True}],
        )
        entries = result.get("value") or [None]
        entry = entries[0]
        if entry is None:
            return SettlementStatus(confirmations=0, slot=None, finalized=False)

        finalized = entry.get("confirmationStatus") == "finalized"
        confirmations = entry.get("confirmations")
        if confirmations is None:
            confirmations = self.finality_confirmations if finalized else 0
        error = entry.get("err")
        return SettlementStatus(
            confirmations=int(confirmations),
            slot=entry.get("slot"),
            finalized=finalized and error is None,
            error=str(error) if error is not None else None,
        )

    async def get_token_balance(self, wallet_address: str) -> Decimal:
        result = await self._rpc("getTokenAccountBalance", [wallet_address])
        value = result.get("value") or {}
        try:
            return Decimal(value["uiAmountString"])
        except (KeyError, ArithmeticError) as exc:
            raise SettlementUnavailable(f"Malformed balance response for {wallet_address}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _rpc(self, method: str, params: list[Any]) -> dict[str, Any]:
        self._rpc_id += 1
        try:
            response = await self._client.post(
                self.rpc_url,
                json={"jsonrpc": "2.0", "id": self._rpc_id, "method": method, "params": params},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SettlementUnavailable(f"RPC {method} failed: {exc}") from exc
        if "error" in body:
            raise SettlementUnavailable(f"RPC {method} error: {body['error']}")
        return body.get("result") or {}


def build_gateway(settings: Settings | None = None) -> SettlementGateway:
    """Create the gateway configured for this deployment."""
    settings = settings or get_settings()
    if not settings.settlement_enabled:
        return DisabledSettlementGateway()
    return HttpSettlementGateway(
        relay_url=settings.settlement_relay_url,
        rpc_url=settings.settlement_rpc_url,
        timeout=settings.settlement_timeout_seconds,
        finality_confirmations=settings.settlement_finality_confirmations,
        mint_address=settings.token_mint_address,
    )


def needs_settlement(instruction: SettlementInstruction) -> bool:
    """Instructions missing a required wallet have nothing to settle."""
    if instruction.destination_wallet is None:
        return False
    if instruction.kind in (InstructionKind.TRANSFER, InstructionKind.PURCHASE_ACCESS, InstructionKind.REFUND):
        return instruction.source_wallet is not None
    return True


async def submit_best_effort(
    gateway: SettlementGateway,
    instruction: SettlementInstruction,
    timeout: float,
) -> SettlementOutcome:
    """Submit with a hard timeout. Never raises: failures become UNRESOLVED."""
    if not needs_settlement(instruction):
        return SettlementOutcome(state=SettlementState.SKIPPED)

    try:
        handle = await asyncio.wait_for(gateway.submit(instruction), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "settlement_unavailable",
            reference_id=instruction.reference_id,
            kind=instruction.kind.value,
            error="timeout",
        )
        return SettlementOutcome(state=SettlementState.UNRESOLVED, error="timeout")
    except Exception as exc:
        logger.warning(
            "settlement_unavailable",
            reference_id=instruction.reference_id,
            kind=instruction.kind.value,
            error=str(exc),
            exc_info=True,
        )
        return SettlementOutcome(state=SettlementState.UNRESOLVED, error=str(exc)[:256])

    logger.info(
        "settlement_submitted",
        reference_id=instruction.reference_id,
        kind=instruction.kind.value,
        signature=handle.signature,
    )
    return SettlementOutcome(state=SettlementState.SUBMITTED, signature=handle.signature)


def apply_outcome(record: Any, outcome: SettlementOutcome) -> None:
    """Copy a settlement outcome onto a TokenTransaction or DataPurchase row."""
    now = datetime.now(timezone.utc)
    record.settlement_state = outcome.state.value
    record.settlement_updated_at = now
    if outcome.state is SettlementState.SKIPPED:
        return
    record.settlement_attempts = (record.settlement_attempts or 0) + 1
    if outcome.signature is not None:
        record.settlement_signature = outcome.signature
        record.settlement_error = None
    else:
        record.settlement_error = outcome.error
