"""Database models for the credit ledger.


Tables:
- User: wallet-keyed identity with a cached credits balance
- LedgerEntryType / LedgerEntryStatus
- LedgerEntry: append-only record of every credit-affecting event (source of truth)
- Comic / Chapter: the slice of content the unlock engine reads (free count, cost, publish time)
- ChapterUnlock: permanent entitlement, one row per (user, chapter)
- ReadingProgress: last page read, one row per (user, chapter)
- SiweNonce: single-use sign-in challenge
- ReconciliationRun: audit row for each cached-balance vs ledger-sum comparison
"""

import uuid
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone


class UserRole(models.TextChoices):
	USER = "USER", "User"
	ADMIN = "ADMIN", "Admin"


class User(models.Model):
	"""
	Wallet identity, created on first successful SIWE verification.

	credits_balance is a cache of the ledger sum; only LedgerServices writes it.
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	wallet_address = models.CharField(max_length=42, unique=True) # lowercase 0x + 40 hex
	display_name = models.CharField(max_length=200)
	role = models.CharField(max_length=8, choices=UserRole.choices, default=UserRole.USER)
	credits_balance = models.BigIntegerField(default=0)
	created_at = models.DateTimeField(auto_now_add=True)

	@property
	def is_admin(self) -> bool:
		return self.role == UserRole.ADMIN

	def __str__(self):
		return self.wallet_address


class LedgerEntryType(models.TextChoices):
	PURCHASE = "PURCHASE", "Purchase"
	SPEND = "SPEND", "Spend"
	ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT", "Admin adjustment"


class LedgerEntryStatus(models.TextChoices):
	PENDING = "PENDING", "Pending"
	CONFIRMED = "CONFIRMED", "Confirmed"
	FAILED = "FAILED", "Failed"


class ImmutableEntryError(Exception):
	pass


class LedgerEntryQuerySet(models.QuerySet):
	"""
	Bulk writes would bypass LedgerEntry.save/delete, so they are refused too.
	"""

	def update(self, **kwargs):
		raise ImmutableEntryError("ledger entries cannot be modified")

	def delete(self):
		raise ImmutableEntryError("ledger entries cannot be deleted")


class LedgerEntry(models.Model):
	"""
	Immutable log of credit movements.

	tx_hash is unique to prevent double-crediting the same on-chain payment.
	Signed amount: positive credits the user, negative debits.
	The auto-increment id is the insertion order and breaks created_at ties.
	"""
	id = models.BigAutoField(primary_key=True)
	user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="ledger_entries")
	entry_type = models.CharField(max_length=20, choices=LedgerEntryType.choices)
	amount = models.BigIntegerField()
	description = models.TextField(blank=True, default="")
	tx_hash = models.CharField(max_length=66, null=True, blank=True, unique=True)
	chain_id = models.PositiveIntegerField(null=True, blank=True)
	status = models.CharField(max_length=12, choices=LedgerEntryStatus.choices, default=LedgerEntryStatus.CONFIRMED)
	created_at = models.DateTimeField(default=timezone.now, db_index=True)

	objects = LedgerEntryQuerySet.as_manager()

	class Meta:
		indexes = [
			models.Index(fields=["user", "-created_at"]),
		]

	def save(self, *args, **kwargs):
		if not self._state.adding:
			raise ImmutableEntryError("ledger entries cannot be modified")
		super().save(*args, **kwargs)

	def delete(self, *args, **kwargs):
		raise ImmutableEntryError("ledger entries cannot be deleted")


class Comic(models.Model):
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	title = models.CharField(max_length=200)
	slug = models.SlugField(max_length=220, unique=True)
	free_chapters = models.PositiveSmallIntegerField(default=3, validators=[MaxValueValidator(10)]) # first N chapters by publish time

	class Meta:
		constraints = [
			models.CheckConstraint(condition=models.Q(free_chapters__lte=10), name="ck_comic_free_chapters_max_10"),
		]

	def __str__(self):
		return self.title


class Chapter(models.Model):
	"""
	Read-only from the ledger's point of view: unlock_cost, is_free and published_at.
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	comic = models.ForeignKey(Comic, on_delete=models.CASCADE, related_name="chapters")
	title = models.CharField(max_length=200)
	chapter_number = models.PositiveIntegerField(default=1)
	is_free = models.BooleanField(default=False)
	unlock_cost = models.PositiveIntegerField(default=0)
	page_count = models.PositiveIntegerField(default=0)
	published_at = models.DateTimeField(default=timezone.now)

	class Meta:
		indexes = [
			models.Index(fields=["comic", "published_at"]),
		]

	def __str__(self):
		return self.title


class ChapterUnlock(models.Model):
	"""
	Permanent entitlement. The unique constraint is the final arbiter for
	concurrent unlocks of the same chapter.
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="unlocks")
	chapter = models.ForeignKey(Chapter, on_delete=models.PROTECT, related_name="unlocks")
	credits_spent = models.PositiveIntegerField(default=0)
	unlocked_at = models.DateTimeField(auto_now_add=True)

	class Meta:
		constraints = [
			models.UniqueConstraint(fields=["user", "chapter"], name="uq_unlock_user_chapter"),
		]


class SiweNonce(models.Model):
	"""
	One row per sign-in attempt; deleted on successful verification.
	"""
	id = models.BigAutoField(primary_key=True)
	address = models.CharField(max_length=42, db_index=True) # lowercase
	nonce = models.CharField(max_length=64, unique=True)
	expires_at = models.DateTimeField(db_index=True)
	created_at = models.DateTimeField(auto_now_add=True)

	@property
	def is_expired(self) -> bool:
		return self.expires_at < timezone.now()


class ReconciliationRun(models.Model):
	"""
	Snapshot of cached balance vs ledger sum for one user at repair time.
	"""
	id = models.BigAutoField(primary_key=True)
	user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="reconciliation_runs")
	cached_balance = models.BigIntegerField()
	ledger_balance = models.BigIntegerField()
	drift = models.BigIntegerField(default=0) # cached - ledger
	created_at = models.DateTimeField(auto_now_add=True)

	@property
	def ok(self) -> bool:
		return self.drift == 0


class ReadingProgress(models.Model):
	"""
	Last page a reader reached in a chapter; upserted while reading.
	"""
	id = models.BigAutoField(primary_key=True)
	user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="reading_progress")
	chapter = models.ForeignKey(Chapter, on_delete=models.CASCADE, related_name="reading_progress")
	page_number = models.PositiveIntegerField(validators=[MinValueValidator(1)])
	updated_at = models.DateTimeField(auto_now=True)

	class Meta:
		constraints = [
			models.UniqueConstraint(fields=["user", "chapter"], name="uq_progress_user_chapter"),
		]
