"""Business orchestration for the credit ledger.

This module coordinates: verified on-chain purchase → ledger credit, chapter
unlock → ledger debit + unlock record, admin adjustments and reconciliation.

Every mutation of User.credits_balance goes through LedgerServices, which runs
inside a UnitOfWork, row-locks the user and applies the balance change with a
conditional UPDATE, so a stale read can never push a balance below zero.
"""

import logging
from dataclasses import dataclass

from django.conf import settings
from django.db import IntegrityError
from django.db.models import Count, F, Q, Sum

from .adapters.chain_adapter import ChainAdapter, EventSpec
from .constants import format_eth, normalize_tx_hash
from .exceptions import (
	BuyerMismatch, ChainMismatch, ContractMismatch, EventNotFound, InsufficientCredits, InsufficientCreditsForAdjustment,
	InsufficientFunds, InvalidAmount, InvalidPage, InvalidTransactionHash, PermissionDenied, TransactionNotConfirmed,
)
from .models import (
	Chapter, ChapterUnlock, LedgerEntry, LedgerEntryStatus, LedgerEntryType, ReadingProgress, ReconciliationRun, User,
)
from .stats_cache import StatsCache
from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

SUMMARY_KEY = "ledger_summary"


class LedgerServices:
	"""
	Append-only ledger plus the cached balance it keeps in sync.

	All writers accept an optional `uow`; passing one makes the write part of
	the caller's transaction instead of committing on its own.
	"""

	# the one cache summary() reads and every ledger write invalidates; swap the
	# instance to point both at another backend
	stats = StatsCache()

	@staticmethod
	def _after_write(uow: UnitOfWork) -> None:
		uow.on_commit(lambda: LedgerServices.stats.invalidate())

	@staticmethod
	def append_credit(
		user_id,
		amount: int,
		description: str = "On-chain credit purchase",
		*,
		tx_hash: str | None = None,
		chain_id: int | None = None,
		uow: UnitOfWork | None = None,
	) -> tuple[LedgerEntry, bool]:
		"""
		Record a CONFIRMED purchase and raise the balance by `amount`.

		Idempotent on tx_hash: a hash that is already in the ledger returns
		(existing_entry, False) without touching the balance. The unique
		constraint on tx_hash settles concurrent attempts.
		"""
		if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
			raise InvalidAmount()

		with UnitOfWork.scope(uow) as uow:
			uow.lock_user(user_id)

			if tx_hash:
				existing = LedgerEntry.objects.filter(tx_hash=tx_hash).first()
				if existing:
					return existing, False

			try:
				with uow.savepoint():
					entry = LedgerEntry.objects.create(
						user_id=user_id,
						entry_type=LedgerEntryType.PURCHASE,
						amount=amount,
						description=description,
						tx_hash=tx_hash,
						chain_id=chain_id,
						status=LedgerEntryStatus.CONFIRMED,
					)
			except IntegrityError:
				# Another request with the same hash raced us; return its entry
				if tx_hash:
					existing = LedgerEntry.objects.filter(tx_hash=tx_hash).first()
					if existing:
						return existing, False
				raise

			User.objects.filter(pk=user_id).update(credits_balance=F("credits_balance") + amount)
			uow.refresh_user(user_id)
			LedgerServices._after_write(uow)

		logger.info("credited %s credits to %s (tx=%s)", amount, user_id, tx_hash or "-")
		return entry, True

	@staticmethod
	def append_debit(user_id, amount: int, description: str, *, uow: UnitOfWork | None = None) -> int:
		"""
		Record a CONFIRMED spend of `amount` and return the new balance.

		Raises InsufficientFunds (balance unchanged) when the balance is short.
		"""
		if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
			raise InvalidAmount()

		with UnitOfWork.scope(uow) as uow:
			uow.lock_user(user_id)
			updated = (
				User.objects
				.filter(pk=user_id, credits_balance__gte=amount)
				.update(credits_balance=F("credits_balance") - amount)
			)
			if not updated:
				user = uow.refresh_user(user_id)
				logger.info("debit of %s refused for %s: balance %s", amount, user_id, user.credits_balance)
				raise InsufficientFunds()

			LedgerEntry.objects.create(
				user_id=user_id,
				entry_type=LedgerEntryType.SPEND,
				amount=-amount,
				description=description,
				status=LedgerEntryStatus.CONFIRMED,
			)
			user = uow.refresh_user(user_id)
			LedgerServices._after_write(uow)

		return user.credits_balance

	@staticmethod
	def append_admin_adjustment(
		user_id,
		amount: int,
		reason: str,
		acting_admin_id,
		*,
		uow: UnitOfWork | None = None,
	) -> int:
		"""
		Apply an admin-authored signed delta and return the new balance.

		The adjustment may not take the balance below zero.
		"""
		limit = settings.ADMIN_ADJUSTMENT_MAX
		if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0 or abs(amount) > limit:
			raise InvalidAmount()
		reason = (reason or "").strip()
		if not reason or len(reason) > 200:
			raise InvalidAmount("invalid_reason")

		with UnitOfWork.scope(uow) as uow:
			admin = User.objects.get(pk=acting_admin_id)
			if not admin.is_admin:
				raise PermissionDenied()

			uow.lock_user(user_id)
			qs = User.objects.filter(pk=user_id)
			if amount < 0:
				qs = qs.filter(credits_balance__gte=-amount)
			if not qs.update(credits_balance=F("credits_balance") + amount):
				raise InsufficientCreditsForAdjustment()

			LedgerEntry.objects.create(
				user_id=user_id,
				entry_type=LedgerEntryType.ADMIN_ADJUSTMENT,
				amount=amount,
				description=f"Admin adjustment by {acting_admin_id}: {reason}",
				status=LedgerEntryStatus.CONFIRMED,
			)
			user = uow.refresh_user(user_id)
			LedgerServices._after_write(uow)

		logger.info("admin %s adjusted %s by %+d: %s", acting_admin_id, user_id, amount, reason)
		return user.credits_balance

	@staticmethod
	def ledger_balance(user_id) -> int:
		"""Signed sum of CONFIRMED entries: the authoritative balance."""
		agg = LedgerEntry.objects.filter(user_id=user_id, status=LedgerEntryStatus.CONFIRMED).aggregate(s=Sum("amount"))
		return agg["s"] or 0

	@staticmethod
	def reconcile_run(user_id) -> ReconciliationRun:
		"""
		Overwrite the cached balance with the ledger sum and record the drift.
		Holds the user's row lock, so it serializes with in-flight credits/debits.
		"""
		with UnitOfWork() as uow:
			user = uow.lock_user(user_id)
			cached = user.credits_balance
			actual = LedgerServices.ledger_balance(user_id)
			if cached != actual:
				User.objects.filter(pk=user_id).update(credits_balance=actual)
				uow.refresh_user(user_id)
				LedgerServices._after_write(uow)
				logger.warning("reconciled %s: cached %s, ledger %s", user_id, cached, actual)
			run = ReconciliationRun.objects.create(
				user=user, cached_balance=cached, ledger_balance=actual, drift=cached - actual,
			)
		return run

	@staticmethod
	def reconcile(user_id) -> int:
		return LedgerServices.reconcile_run(user_id).ledger_balance

	@staticmethod
	def reconcile_all() -> list[ReconciliationRun]:
		return [LedgerServices.reconcile_run(pk) for pk in list(User.objects.values_list("pk", flat=True))]

	@staticmethod
	def get_balance(user_id) -> int:
		"""
		Cached balance (not the ledger sum). Raises User.DoesNotExist.
		"""
		return User.objects.values_list("credits_balance", flat=True).get(pk=user_id)

	@staticmethod
	def get_history(user_id, limit: int = settings.HISTORY_DEFAULT_LIMIT, offset: int = 0) -> list[LedgerEntry]:
		"""
		Newest-first page of the user's ledger; limit clamped to 1..HISTORY_MAX_LIMIT.
		"""
		limit = max(1, min(int(limit), settings.HISTORY_MAX_LIMIT))
		offset = max(0, int(offset))
		qs = LedgerEntry.objects.filter(user_id=user_id).order_by("-created_at", "-id")
		return list(qs[offset:offset + limit])

	@staticmethod
	def summary() -> dict:
		"""
		Platform-wide totals, cached for STATS_CACHE_TTL and dropped on every ledger write.
		"""
		return LedgerServices.stats.get_or_compute(SUMMARY_KEY, LedgerServices._compute_summary)

	@staticmethod
	def _compute_summary() -> dict:
		agg = LedgerEntry.objects.filter(status=LedgerEntryStatus.CONFIRMED).aggregate(
			purchased=Sum("amount", filter=Q(entry_type=LedgerEntryType.PURCHASE)),
			spent=Sum("amount", filter=Q(entry_type=LedgerEntryType.SPEND)),
			adjusted=Sum("amount", filter=Q(entry_type=LedgerEntryType.ADMIN_ADJUSTMENT)),
			entries=Count("id"),
		)
		purchased = agg["purchased"] or 0
		spent = agg["spent"] or 0
		adjusted = agg["adjusted"] or 0
		net = purchased + spent + adjusted
		cached_total = User.objects.aggregate(s=Sum("credits_balance"))["s"] or 0
		return {
			"purchased": purchased,
			"spent": -spent,
			"adjusted": adjusted,
			"entries": agg["entries"],
			"net": net,
			"cached_total": cached_total,
			"match": net == cached_total,
		}


# --- unlocks -------------------------------------------------------------------

FREE = "free"
ALREADY_UNLOCKED = "already_unlocked"
PAID = "paid"


@dataclass(frozen=True)
class UnlockResult:
	status: str
	credits_spent: int = 0
	balance: int | None = None


class UnlockServices:

	@staticmethod
	def chapter_position(chapter: Chapter) -> int:
		"""
		1-based position by publish time: chapters of the same comic published
		at or before this one. Never trusts a client-supplied index.
		"""
		return Chapter.objects.filter(comic_id=chapter.comic_id, published_at__lte=chapter.published_at).count()

	@staticmethod
	def is_chapter_free(chapter: Chapter) -> bool:
		if chapter.is_free:
			return True
		return UnlockServices.chapter_position(chapter) <= chapter.comic.free_chapters

	@staticmethod
	def unlock(user_id, chapter_id, *, uow: UnitOfWork | None = None) -> UnlockResult:
		"""
		Free → FREE (nothing persisted). Existing unlock → ALREADY_UNLOCKED.
		Otherwise debit unlock_cost and create the unlock row in one savepoint;
		if the unique (user, chapter) constraint fires the debit is rolled back.
		"""
		with UnitOfWork.scope(uow) as uow:
			chapter = Chapter.objects.select_related("comic").get(pk=chapter_id)
			if UnlockServices.is_chapter_free(chapter):
				return UnlockResult(FREE)

			user = uow.lock_user(user_id)
			if ChapterUnlock.objects.filter(user_id=user_id, chapter=chapter).exists():
				return UnlockResult(ALREADY_UNLOCKED, balance=user.credits_balance)

			cost = chapter.unlock_cost
			if user.credits_balance < cost:
				raise InsufficientCredits()

			try:
				with uow.savepoint():
					balance = user.credits_balance
					if cost:
						balance = LedgerServices.append_debit(user_id, cost, f"Unlock chapter: {chapter.title}", uow=uow)
					ChapterUnlock.objects.create(user_id=user_id, chapter=chapter, credits_spent=cost)
			except IntegrityError:
				user = uow.refresh_user(user_id)
				if ChapterUnlock.objects.filter(user_id=user_id, chapter=chapter).exists():
					return UnlockResult(ALREADY_UNLOCKED, balance=user.credits_balance)
				raise

		logger.info("user %s unlocked chapter %s for %s credits", user_id, chapter_id, cost)
		return UnlockResult(PAID, credits_spent=cost, balance=balance)

	@staticmethod
	def can_read(user_id, chapter_id) -> bool:
		chapter = Chapter.objects.select_related("comic").get(pk=chapter_id)
		if UnlockServices.is_chapter_free(chapter):
			return True
		if user_id is None:
			return False
		return ChapterUnlock.objects.filter(user_id=user_id, chapter=chapter).exists()

	@staticmethod
	def unlocked_chapters(user_id):
		return (
			ChapterUnlock.objects
			.filter(user_id=user_id)
			.select_related("chapter", "chapter__comic")
			.order_by("-unlocked_at")
		)

	@staticmethod
	def record_progress(user_id, chapter_id, page_number: int) -> ReadingProgress:
		"""
		Upsert the reader's last page. Only readable chapters (free or unlocked)
		and pages within the chapter are accepted.
		"""
		if not isinstance(page_number, int) or isinstance(page_number, bool) or page_number < 1:
			raise InvalidPage()
		chapter = Chapter.objects.get(pk=chapter_id)
		if not UnlockServices.can_read(user_id, chapter.id):
			raise PermissionDenied("chapter_not_unlocked")
		if chapter.page_count and page_number > chapter.page_count:
			raise InvalidPage()

		progress, _ = ReadingProgress.objects.update_or_create(
			user_id=user_id, chapter=chapter, defaults={"page_number": page_number},
		)
		return progress


# --- purchases -----------------------------------------------------------------

@dataclass(frozen=True)
class PurchaseResult:
	credits: int
	amount_paid: str | None  # ETH
	entry_id: str
	idempotent: bool = False


class PaymentServices:
	"""
	Turns a confirmed CreditsPurchased transaction into exactly one ledger credit.
	"""

	buyer_field = "buyer"
	credits_field = "credits"
	amount_field = "amountWei"

	def __init__(self, chain: ChainAdapter | None = None, contract_address: str | None = None,
			event_signature: str | None = None, chain_id: int | None = None):
		self.chain = chain or ChainAdapter()
		self.contract_address = (contract_address if contract_address is not None else settings.PAYMENT_CONTRACT_ADDRESS).lower()
		self.event = EventSpec.parse(event_signature or settings.PURCHASE_EVENT_SIGNATURE)
		self.chain_id = chain_id if chain_id is not None else settings.CHAIN_ID

	def verify_and_credit(self, user_id, buyer_address: str, tx_hash: str, chain_id: int | None = None) -> PurchaseResult:
		try:
			tx_hash = normalize_tx_hash(tx_hash)
		except ValueError as e:
			raise InvalidTransactionHash() from e

		existing = LedgerEntry.objects.filter(tx_hash=tx_hash).first()
		if existing:
			if str(existing.user_id) != str(user_id):
				logger.warning("tx %s already credited to another user; claimed by %s", tx_hash, user_id)
				raise BuyerMismatch()
			return PurchaseResult(credits=existing.amount, amount_paid=None, entry_id=str(existing.id), idempotent=True)

		if self.chain_id and chain_id is not None and int(chain_id) != self.chain_id:
			raise ChainMismatch()

		receipt = self.chain.get_transaction_receipt(tx_hash)
		if receipt is None or not receipt.success:
			raise TransactionNotConfirmed()

		if not self.contract_address or (receipt.to or "") != self.contract_address:
			logger.warning("tx %s sent to %s, not the payment contract", tx_hash, receipt.to)
			raise ContractMismatch()

		events = self.chain.decode_events(receipt, self.contract_address, self.event)
		if not events:
			logger.warning("tx %s has no %s event", tx_hash, self.event.name)
			raise EventNotFound()
		args = events[0]["args"]

		buyer = str(args.get(self.buyer_field) or "").lower()
		if buyer != (buyer_address or "").lower():
			logger.warning("tx %s buyer %s does not match caller %s", tx_hash, buyer, buyer_address)
			raise BuyerMismatch()

		credits = int(args[self.credits_field])
		amount_wei = int(args[self.amount_field])

		entry, created = LedgerServices.append_credit(
			user_id,
			credits,
			"On-chain credit purchase",
			tx_hash=tx_hash,
			chain_id=chain_id if chain_id is not None else self.chain_id,
		)
		if not created and str(entry.user_id) != str(user_id):
			raise BuyerMismatch()
		return PurchaseResult(
			credits=entry.amount,
			amount_paid=format_eth(amount_wei),
			entry_id=str(entry.id),
			idempotent=not created,
		)
