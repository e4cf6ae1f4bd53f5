"""Typed failures raised by the ledger, unlock and verification services.

User-facing failures subclass ValidationError so views can answer 400 with the
stable code. Infrastructure failures (ChainUnavailable, database errors) are
plain exceptions and must never be reported as a funds or payment problem.
"""

from django.core.exceptions import ValidationError

from .models import Chapter, User


class CreditsError(ValidationError):
	"""
	Base for recoverable, user-visible outcomes. `code` is what the API returns.
	"""
	default_code = "credits_error"

	def __init__(self, message: str | None = None):
		super().__init__(message or self.default_code, code=self.default_code)


class InsufficientCredits(CreditsError):
	default_code = "insufficient_credits"


# Ledger-level name for the same condition.
InsufficientFunds = InsufficientCredits


class InsufficientCreditsForAdjustment(InsufficientCredits):
	default_code = "insufficient_credits_for_adjustment"


class InvalidAmount(CreditsError):
	default_code = "invalid_amount"


class PermissionDenied(CreditsError):
	default_code = "forbidden"


class InvalidPage(CreditsError):
	default_code = "invalid_page"


# --- payment verification ------------------------------------------------------

class PaymentVerificationError(CreditsError):
	default_code = "verification_failed"


class TransactionNotConfirmed(PaymentVerificationError):
	default_code = "transaction_not_confirmed"


class ContractMismatch(PaymentVerificationError):
	default_code = "contract_mismatch"


class EventNotFound(PaymentVerificationError):
	default_code = "event_not_found"


class BuyerMismatch(PaymentVerificationError):
	default_code = "buyer_mismatch"


class ChainMismatch(PaymentVerificationError):
	default_code = "chain_mismatch"


class InvalidTransactionHash(PaymentVerificationError):
	default_code = "invalid_transaction_hash"


class ChainUnavailable(RuntimeError):
	"""RPC endpoint unreachable or answered with an error. Retryable."""


# --- sign-in -------------------------------------------------------------------

class InvalidAddress(CreditsError):
	default_code = "invalid_address"


class InvalidSignature(CreditsError):
	default_code = "invalid_signature"


class NonceExpiredOrUnknown(CreditsError):
	default_code = "nonce_expired_or_unknown"


class MessageExpired(NonceExpiredOrUnknown):
	"""SIWE message past its Expiration Time or before its Not Before."""
	default_code = "message_expired"


# Not-found conditions are the ORM's own.
ChapterNotFound = Chapter.DoesNotExist
UserNotFound = User.DoesNotExist
