"""
Error taxonomy for PharmaChain.

Every error carries a stable machine-readable code and the HTTP status it
maps to at the API boundary. Components raise these types; nothing outside
ledger/gateway.py ever sees a transport exception.

    AuthError       — TokenInvalid, TokenExpired, TokenRevoked, InvalidRefreshToken,
                      InvalidSignature
    AccessError     — Forbidden, Unverified
    LedgerError     — LedgerUnavailable, LedgerOutcomeUnknown, ExecutionReverted, InsufficientFunds
    DomainError     — BatchNotFound, StakeholderNotFound, BatchAlreadyExists,
                      StakeholderAlreadyExists, InvalidTransition,
                      TransferNotAllowed, BatchRecalled, ValidationFailed
    IntegrityError  — MalformedPayload, IntegrityCheckFailed
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base class: message + code + HTTP status + optional details."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# ── Authentication ────────────────────────────────────────────────────────────

class AuthError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Authentication required"


class TokenInvalid(AuthError):
    code = "INVALID_TOKEN"
    default_message = "Invalid token"


class TokenExpired(AuthError):
    code = "TOKEN_EXPIRED"
    default_message = "Token expired"


class TokenRevoked(AuthError):
    code = "TOKEN_REVOKED"
    default_message = "Token has been revoked"


class InvalidRefreshToken(AuthError):
    code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid refresh token"


class InvalidSignature(AuthError):
    code = "INVALID_SIGNATURE"
    default_message = "Signature verification failed"


# ── Authorization ─────────────────────────────────────────────────────────────

class AccessError(AppError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Access denied"


class Forbidden(AccessError):
    pass


class Unverified(Forbidden):
    code = "UNVERIFIED"
    default_message = "Account verification required. Please contact a regulator."


# ── Ledger transport / execution ──────────────────────────────────────────────

class LedgerError(AppError):
    status_code = 502
    code = "LEDGER_ERROR"
    default_message = "Ledger call failed"


class LedgerUnavailable(LedgerError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    default_message = "Ledger service unavailable"


class LedgerOutcomeUnknown(LedgerUnavailable):
    """A mutating call timed out; the ledger may still commit it."""
    code = "LEDGER_OUTCOME_UNKNOWN"
    default_message = "Ledger did not confirm the transaction in time; outcome unknown"


class ExecutionReverted(LedgerError):
    status_code = 400
    code = "EXECUTION_REVERTED"
    default_message = "Ledger transaction reverted"


class InsufficientFunds(LedgerError):
    status_code = 400
    code = "INSUFFICIENT_FUNDS"
    default_message = "Insufficient funds for transaction"


# ── Domain ────────────────────────────────────────────────────────────────────

class DomainError(AppError):
    status_code = 400
    code = "DOMAIN_ERROR"
    default_message = "Operation not permitted"


class BatchNotFound(DomainError):
    status_code = 404
    code = "BATCH_NOT_FOUND"
    default_message = "Batch not found"


class StakeholderNotFound(DomainError):
    status_code = 404
    code = "STAKEHOLDER_NOT_FOUND"
    default_message = "Stakeholder not found"


class BatchAlreadyExists(DomainError):
    status_code = 409
    code = "BATCH_EXISTS"
    default_message = "Batch number already exists"


class StakeholderAlreadyExists(DomainError):
    status_code = 409
    code = "STAKEHOLDER_EXISTS"
    default_message = "Stakeholder already registered"


class InvalidTransition(DomainError):
    status_code = 409
    code = "INVALID_TRANSITION"
    default_message = "Invalid status transition"


class TransferNotAllowed(DomainError):
    status_code = 403
    code = "TRANSFER_NOT_ALLOWED"
    default_message = "Transfer not allowed"


class BatchRecalled(DomainError):
    status_code = 409
    code = "BATCH_RECALLED"
    default_message = "Batch has been recalled"


class ValidationFailed(DomainError):
    status_code = 422
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


# ── Integrity ─────────────────────────────────────────────────────────────────

class IntegrityError(AppError):
    status_code = 422
    code = "INVALID_QR_CODE"
    default_message = "Invalid QR code"


class MalformedPayload(IntegrityError):
    code = "MALFORMED_PAYLOAD"
    default_message = "Malformed QR payload"


class IntegrityCheckFailed(IntegrityError):
    code = "INTEGRITY_CHECK_FAILED"
    default_message = "QR code integrity check failed"


# ── Supporting stores ─────────────────────────────────────────────────────────

class RevocationStoreUnavailable(AppError):
    status_code = 503
    code = "REVOCATION_STORE_UNAVAILABLE"
    default_message = "Revocation store unavailable"


class DocumentStoreError(AppError):
    status_code = 503
    code = "IPFS_ERROR"
    default_message = "Document store unavailable"
