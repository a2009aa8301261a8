from __future__ import annotations

from typing import Any, Dict, Optional


# =============================================================================
# Errors
# =============================================================================

class SettlementError(RuntimeError):
    """
    Base de todos los rechazos del motor de liquidación.
    `code` es estable (lo consume la UI); `status` es el HTTP equivalente.
    """

    code = "settlement_error"
    status = 400

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            out["details"] = {k: str(v) for k, v in self.details.items()}
        return out


# --- configuración / datos (precio) ---

class InvalidRate(SettlementError):
    code = "invalid_rate"
    status = 422


class MissingCostBasis(SettlementError):
    code = "missing_cost_basis"
    status = 422


class InvalidPricingInput(SettlementError):
    code = "invalid_pricing_input"
    status = 422


class PricingLocked(SettlementError):
    code = "pricing_locked"
    status = 409


# --- reglas de negocio ---

class InsufficientBalance(SettlementError):
    code = "insufficient_balance"
    status = 400


class InsufficientAvailableBalance(SettlementError):
    code = "insufficient_available_balance"
    status = 400


class BelowMinimumAmount(SettlementError):
    code = "below_minimum_amount"
    status = 400


class PayoutDestinationMissing(SettlementError):
    code = "payout_destination_missing"
    status = 400


class AccountNotEligible(SettlementError):
    code = "account_not_eligible"
    status = 403


class WithdrawalAlreadyOpen(SettlementError):
    code = "withdrawal_already_open"
    status = 409


class InvalidWithdrawalState(SettlementError):
    code = "invalid_withdrawal_state"
    status = 409


class InvalidLedgerOperation(SettlementError):
    code = "invalid_ledger_operation"
    status = 400


class NotFound(SettlementError):
    code = "not_found"
    status = 404


# --- infraestructura ---

class ConcurrencyError(SettlementError):
    """Lock no obtenido a tiempo; el llamador puede reintentar la unidad completa."""

    code = "concurrency_conflict"
    status = 409


def error_payload(exc: SettlementError, *, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = exc.to_dict()
    if extra:
        out.update(extra)
    return out


__all__ = [
    "SettlementError",
    "InvalidRate",
    "MissingCostBasis",
    "InvalidPricingInput",
    "PricingLocked",
    "InsufficientBalance",
    "InsufficientAvailableBalance",
    "BelowMinimumAmount",
    "PayoutDestinationMissing",
    "AccountNotEligible",
    "WithdrawalAlreadyOpen",
    "InvalidWithdrawalState",
    "InvalidLedgerOperation",
    "NotFound",
    "ConcurrencyError",
    "error_payload",
]
