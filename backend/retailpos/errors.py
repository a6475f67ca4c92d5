"""
Domain error taxonomy shared by the stock, sale and return engines.

Every error carries a human-readable message plus a ``details`` dict with the
identifiers a caller needs to render a precise response (sale id, product id,
stock type, requested vs. available quantity). Routes translate these to HTTP
using ``http_status``; nothing in the service layer knows about HTTP.
"""

from __future__ import annotations


class PosError(Exception):
    """Base class for domain errors raised by the service layer."""

    code = "POS_ERROR"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "details": self.details}


class NotFoundError(PosError):
    """Sale, sale item, product or store absent (or not in this store)."""

    code = "NOT_FOUND"
    http_status = 404


class InvalidStateError(PosError):
    """Wrong payment_status for the requested transition, or inactive product."""

    code = "INVALID_STATE"
    http_status = 409


class InsufficientStockError(PosError):
    """Requested or returned quantity exceeds what is available."""

    code = "INSUFFICIENT_STOCK"
    http_status = 409


class ValidationError(PosError, ValueError):
    """Malformed request: empty item list, non-positive quantity, bad reference."""

    code = "VALIDATION_ERROR"
    http_status = 400


class IntegrityViolationError(PosError):
    """Receipt-number collision or ledger/stock mismatch."""

    code = "INTEGRITY_VIOLATION"
    http_status = 409


class StockConflictError(PosError):
    """A conditional row update matched no row because another writer got there first."""

    code = "CONFLICT"
    http_status = 409
