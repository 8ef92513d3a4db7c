"""
Exception hierarchy for the escrow and payout core.

Every failure a caller can observe carries a stable code. The HTTP layer maps
each code to a status; background jobs log the code and move on.
"""

from typing import Any, Dict, Optional


class EscrowCoreError(Exception):
    """Base error with a stable code, a message and optional state details"""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        self.message = message or self.code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# Validation errors: 4xx, never retried

class BadInputError(EscrowCoreError):
    code = "BAD_INPUT"
    http_status = 400


class ForbiddenError(EscrowCoreError):
    code = "FORBIDDEN"
    http_status = 403


class UnauthorizedError(EscrowCoreError):
    code = "UNAUTHORIZED"
    http_status = 401


class UnknownOrderError(EscrowCoreError):
    code = "UNKNOWN_ORDER"
    http_status = 404


class NotFoundError(EscrowCoreError):
    code = "NOT_FOUND"
    http_status = 404


class TerminalStateError(EscrowCoreError):
    code = "TERMINAL"
    http_status = 409


class TooEarlyError(EscrowCoreError):
    code = "TOO_EARLY"
    http_status = 409


class AlreadyAdvancedError(EscrowCoreError):
    code = "ALREADY_ADVANCED"
    http_status = 409


# Optimistic-state errors

class ReceiptTimeoutError(EscrowCoreError):
    """The transaction was submitted but not mined in time; the verification loop finalises it"""
    code = "RECEIPT_TIMEOUT"
    http_status = 202

    def __init__(self, tx_hash: str, message: str = "", details: Optional[Dict[str, Any]] = None):
        self.tx_hash = tx_hash
        details = dict(details or {})
        details.setdefault("tx_hash", tx_hash)
        super().__init__(message or f"Transaction {tx_hash} submitted, not yet confirmed", details)


# Chain errors

class ChainError(EscrowCoreError):
    code = "CHAIN_ERROR"
    http_status = 502

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message, details)


class NonceConflictError(ChainError):
    code = "NONCE_CONFLICT"
    http_status = 503


class OperatorUnderfundedError(ChainError):
    code = "OPERATOR_UNDERFUNDED"
    http_status = 503


class DeployFailedError(ChainError):
    code = "DEPLOY_FAILED"
    http_status = 502


# Provider errors

class ProviderError(EscrowCoreError):
    code = "PROVIDER_ERROR"
    http_status = 502


class ProviderUnavailableError(ProviderError):
    code = "PROVIDER_UNAVAILABLE"
    http_status = 503


class ProviderRejectedError(ProviderError):
    code = "PROVIDER_REJECTED"
    http_status = 502


# Envelope and custody errors

class KeyUnavailableError(EscrowCoreError):
    code = "KEY_UNAVAILABLE"
    http_status = 500


class CorruptEnvelopeError(EscrowCoreError):
    code = "CORRUPT_ENVELOPE"
    http_status = 500


class NoWalletError(EscrowCoreError):
    code = "NO_WALLET"
    http_status = 404


class SignFailedError(EscrowCoreError):
    code = "SIGN_FAILED"
    http_status = 500


# Deadlines

class RequestTimeoutError(EscrowCoreError):
    code = "TIMEOUT"
    http_status = 504
