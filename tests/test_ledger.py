"""Tests for LedgerServices: credits, debits, admin adjustments, reconciliation, history."""

from io import StringIO
from unittest.mock import patch

import pytest
from django.core.management import call_command
from django.db.models import QuerySet
from django.utils import timezone

from core.exceptions import (
	InsufficientCredits, InsufficientCreditsForAdjustment, InsufficientFunds, InvalidAmount, PermissionDenied,
)
from core.models import ImmutableEntryError, LedgerEntry, LedgerEntryStatus, LedgerEntryType, ReconciliationRun, User
from core.services import LedgerServices
from core.stats_cache import StatsCache
from core.unit_of_work import UnitOfWork

from .conftest import TX_HASH

pytestmark = pytest.mark.django_db


def _balance(user):
	return User.objects.get(pk=user.pk).credits_balance


class TestAppendCredit:

	def test_credit_creates_confirmed_purchase_and_raises_balance(self, user):
		entry, created = LedgerServices.append_credit(user.id, 50, tx_hash=TX_HASH, chain_id=1)

		assert created is True
		assert entry.entry_type == LedgerEntryType.PURCHASE
		assert entry.status == LedgerEntryStatus.CONFIRMED
		assert entry.amount == 50
		assert entry.chain_id == 1
		assert _balance(user) == 50

	def test_same_tx_hash_credits_once(self, user):
		first, _ = LedgerServices.append_credit(user.id, 50, tx_hash=TX_HASH)
		for _ in range(3):
			again, created = LedgerServices.append_credit(user.id, 50, tx_hash=TX_HASH)
			assert created is False
			assert again.pk == first.pk

		assert _balance(user) == 50
		assert LedgerEntry.objects.filter(user=user).count() == 1

	def test_lost_insert_race_returns_existing_entry(self, user):
		"""The unique constraint, not the pre-check, decides concurrent credits."""
		existing, _ = LedgerServices.append_credit(user.id, 50, tx_hash=TX_HASH)
		real_first = QuerySet.first
		calls = {"n": 0}

		def first_hiding_existing(qs):
			calls["n"] += 1
			return None if calls["n"] == 1 else real_first(qs)

		with patch.object(QuerySet, "first", first_hiding_existing):
			entry, created = LedgerServices.append_credit(user.id, 50, tx_hash=TX_HASH)

		assert created is False
		assert entry.pk == existing.pk
		assert _balance(user) == 50

	@pytest.mark.parametrize("amount", [0, -5, 1.5])
	def test_rejects_non_positive_amounts(self, user, amount):
		with pytest.raises(InvalidAmount):
			LedgerServices.append_credit(user.id, amount)
		assert _balance(user) == 0

	def test_unknown_user(self, db):
		with pytest.raises(User.DoesNotExist):
			LedgerServices.append_credit("00000000-0000-0000-0000-000000000000", 5)


class TestAppendDebit:

	def test_debit_records_negative_spend(self, make_user):
		user = make_user(balance=30)

		new_balance = LedgerServices.append_debit(user.id, 12, "Unlock chapter: A")

		assert new_balance == 18
		assert _balance(user) == 18
		spend = LedgerEntry.objects.get(user=user, entry_type=LedgerEntryType.SPEND)
		assert spend.amount == -12
		assert spend.description == "Unlock chapter: A"

	def test_insufficient_funds_leaves_balance_unchanged(self, make_user):
		user = make_user(balance=5)

		with pytest.raises(InsufficientFunds):
			LedgerServices.append_debit(user.id, 6, "too much")

		assert _balance(user) == 5
		assert not LedgerEntry.objects.filter(user=user, entry_type=LedgerEntryType.SPEND).exists()

	def test_exact_balance_can_be_spent(self, make_user):
		user = make_user(balance=7)
		assert LedgerServices.append_debit(user.id, 7, "all in") == 0

	def test_stale_balance_cannot_overdraw(self, make_user):
		"""Even if the cached row says enough, the conditional update re-checks."""
		user = make_user(balance=10)
		with UnitOfWork() as uow:
			uow.lock_user(user.id).credits_balance = 1000
			with pytest.raises(InsufficientCredits):
				LedgerServices.append_debit(user.id, 11, "stale", uow=uow)
		assert _balance(user) == 10

	def test_joined_scope_rolls_back_with_caller(self, make_user):
		user = make_user(balance=10)

		with pytest.raises(RuntimeError):
			with UnitOfWork() as uow:
				LedgerServices.append_debit(user.id, 4, "first", uow=uow)
				raise RuntimeError("caller failed after debit")

		assert _balance(user) == 10
		assert LedgerEntry.objects.filter(user=user).count() == 1


class TestAdminAdjustment:

	def test_positive_adjustment(self, make_user, admin_user):
		user = make_user(balance=10)

		new_balance = LedgerServices.append_admin_adjustment(user.id, 25, "goodwill", admin_user.id)

		assert new_balance == 35
		entry = LedgerEntry.objects.get(user=user, entry_type=LedgerEntryType.ADMIN_ADJUSTMENT)
		assert entry.amount == 25
		assert entry.description == f"Admin adjustment by {admin_user.id}: goodwill"

	def test_negative_adjustment_within_balance(self, make_user, admin_user):
		user = make_user(balance=10)
		assert LedgerServices.append_admin_adjustment(user.id, -10, "refund clawback", admin_user.id) == 0

	def test_debit_larger_than_balance_is_rejected(self, make_user, admin_user):
		user = make_user(balance=10)

		with pytest.raises(InsufficientCreditsForAdjustment):
			LedgerServices.append_admin_adjustment(user.id, -11, "too much", admin_user.id)

		assert _balance(user) == 10
		assert not LedgerEntry.objects.filter(entry_type=LedgerEntryType.ADMIN_ADJUSTMENT).exists()

	@pytest.mark.parametrize("amount", [0, 10001, -10001, True, "5"])
	def test_amount_bounds(self, user, admin_user, amount):
		with pytest.raises(InvalidAmount):
			LedgerServices.append_admin_adjustment(user.id, amount, "bounds", admin_user.id)

	@pytest.mark.parametrize("reason", ["", "   ", "x" * 201])
	def test_reason_required(self, user, admin_user, reason):
		with pytest.raises(InvalidAmount):
			LedgerServices.append_admin_adjustment(user.id, 5, reason, admin_user.id)

	def test_non_admin_cannot_adjust(self, make_user, user):
		other = make_user()
		with pytest.raises(PermissionDenied):
			LedgerServices.append_admin_adjustment(user.id, 5, "self-service", other.id)
		assert _balance(user) == 0


class TestReconcile:

	def test_repairs_drift_and_records_run(self, make_user, admin_user):
		user = make_user(balance=40)
		LedgerServices.append_debit(user.id, 15, "spend")
		User.objects.filter(pk=user.pk).update(credits_balance=999)

		balance = LedgerServices.reconcile(user.id)

		assert balance == 25
		assert _balance(user) == 25
		run = ReconciliationRun.objects.get(user=user)
		assert run.cached_balance == 999
		assert run.ledger_balance == 25
		assert run.drift == 974
		assert not run.ok

	def test_second_run_changes_nothing(self, make_user):
		user = make_user(balance=40)
		User.objects.filter(pk=user.pk).update(credits_balance=1)

		first = LedgerServices.reconcile(user.id)
		second = LedgerServices.reconcile_run(user.id)

		assert first == second.ledger_balance == 40
		assert second.ok
		assert _balance(user) == 40

	def test_matches_manual_sum_for_all_users(self, make_user, admin_user):
		a = make_user(balance=100)
		b = make_user(balance=3)
		LedgerServices.append_debit(a.id, 30, "x")
		LedgerServices.append_admin_adjustment(b.id, 7, "bonus", admin_user.id)

		runs = LedgerServices.reconcile_all()

		assert {r.user_id for r in runs} == set(User.objects.values_list("pk", flat=True))
		for u in (a, b):
			manual = sum(LedgerEntry.objects.filter(user=u, status=LedgerEntryStatus.CONFIRMED).values_list("amount", flat=True))
			assert _balance(u) == manual

	def test_management_command_reports_drift(self, make_user):
		user = make_user(balance=8)
		User.objects.filter(pk=user.pk).update(credits_balance=0)
		out = StringIO()

		call_command("reconcile_balances", stdout=out)

		assert "drift -8" in out.getvalue()
		assert _balance(user) == 8


class TestHistory:

	def test_newest_first_with_paging(self, make_user):
		user = make_user()
		for i in range(1, 6):
			LedgerServices.append_credit(user.id, i, f"credit {i}")

		page = LedgerServices.get_history(user.id, limit=2, offset=1)

		assert [e.amount for e in page] == [4, 3]

	def test_limit_is_clamped(self, make_user, settings):
		settings.HISTORY_MAX_LIMIT = 3
		user = make_user()
		for i in range(5):
			LedgerServices.append_credit(user.id, 1)

		assert len(LedgerServices.get_history(user.id, limit=500)) == 3
		assert len(LedgerServices.get_history(user.id, limit=0)) == 1
		assert len(LedgerServices.get_history(user.id, limit=2, offset=-4)) == 2

	def test_same_timestamp_keeps_insertion_order(self, make_user):
		user = make_user()
		at = timezone.now()
		for i in range(1, 6):
			LedgerEntry.objects.create(
				user=user, entry_type=LedgerEntryType.PURCHASE, amount=i, description=f"credit {i}", created_at=at,
			)

		assert [e.amount for e in LedgerServices.get_history(user.id)] == [5, 4, 3, 2, 1]


class TestImmutability:

	def test_entries_cannot_be_edited_or_deleted(self, make_user):
		user = make_user(balance=5)
		entry = LedgerEntry.objects.get(user=user)

		entry.amount = 500
		with pytest.raises(ImmutableEntryError):
			entry.save()
		with pytest.raises(ImmutableEntryError):
			entry.delete()
		assert LedgerEntry.objects.get(pk=entry.pk).amount == 5

	def test_bulk_update_and_delete_are_refused(self, make_user):
		user = make_user(balance=5)

		with pytest.raises(ImmutableEntryError):
			LedgerEntry.objects.filter(user=user).update(amount=500)
		with pytest.raises(ImmutableEntryError):
			LedgerEntry.objects.filter(user=user).delete()
		assert list(LedgerEntry.objects.filter(user=user).values_list("amount", flat=True)) == [5]


class TestSummary:

	def test_totals_and_match(self, make_user, admin_user):
		user = make_user(balance=50)
		LedgerServices.append_debit(user.id, 20, "spend")
		LedgerServices.append_admin_adjustment(user.id, -5, "fix", admin_user.id)

		summary = LedgerServices.summary()

		assert summary["purchased"] == 50
		assert summary["spent"] == 20
		assert summary["adjusted"] == -5
		assert summary["entries"] == 3
		assert summary["net"] == summary["cached_total"] == 25
		assert summary["match"] is True

	def test_ledger_write_invalidates_cached_summary(self, make_user, django_capture_on_commit_callbacks):
		user = make_user()
		assert LedgerServices.summary()["purchased"] == 0

		with django_capture_on_commit_callbacks(execute=True):
			LedgerServices.append_credit(user.id, 9)

		assert LedgerServices.summary()["purchased"] == 9

	def test_swapped_cache_is_invalidated_by_writes(self, make_user, monkeypatch, django_capture_on_commit_callbacks):
		monkeypatch.setattr(LedgerServices, "stats", StatsCache(prefix="swapped", timeout=60))
		user = make_user()
		assert LedgerServices.summary()["purchased"] == 0

		with django_capture_on_commit_callbacks(execute=True):
			LedgerServices.append_credit(user.id, 9)

		assert LedgerServices.summary()["purchased"] == 9

	def test_compute_overtaken_by_a_write_is_not_served(self, make_user, django_capture_on_commit_callbacks):
		user = make_user()
		real_compute = LedgerServices._compute_summary

		def compute_racing_a_credit():
			stale = real_compute()
			with django_capture_on_commit_callbacks(execute=True):
				LedgerServices.append_credit(user.id, 9)
			return stale

		with patch.object(LedgerServices, "_compute_summary", compute_racing_a_credit):
			assert LedgerServices.summary()["purchased"] == 0

		assert LedgerServices.summary()["purchased"] == 9
