"""
Shared pytest fixtures for the credits test suite.

- Users (plain + admin) keyed by fresh wallet addresses
- A comic with five chapters published one hour apart (3 free by position)
- A fake chain adapter serving hand-built receipts with real ABI-encoded logs
- Payment contract / event settings pinned to known values
"""

from datetime import timedelta

import pytest
from django.core.cache import caches
from django.utils import timezone
from eth_abi import encode as abi_encode

from core.adapters.chain_adapter import ChainAdapter, EventSpec, Receipt
from core.models import Chapter, Comic, User, UserRole
from core.services import LedgerServices

CONTRACT = "0x" + "c0" * 20
BUYER = "0x" + "b1" * 20
OTHER = "0x" + "0e" * 20
EVENT_SIGNATURE = "CreditsPurchased(address indexed buyer, uint256 credits, uint256 amountWei)"
TX_HASH = "0x" + "ab" * 32


# ============================================================================
# SETTINGS / CACHES
# ============================================================================


@pytest.fixture(autouse=True)
def chain_settings(settings):
	"""Pin chain-facing settings so tests never depend on the environment."""
	settings.PAYMENT_CONTRACT_ADDRESS = CONTRACT
	settings.PURCHASE_EVENT_SIGNATURE = EVENT_SIGNATURE
	settings.CHAIN_ID = 11155111
	settings.CHAIN_RPC_URL = "http://rpc.test"
	settings.ADMIN_ADJUSTMENT_MAX = 10000
	settings.HISTORY_MAX_LIMIT = 100
	return settings


@pytest.fixture(autouse=True)
def local_cache(settings):
	"""Process-local cache, emptied around every test."""
	settings.CACHES = {
		"default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache", "LOCATION": "comic-credits-tests"},
	}
	caches["default"].clear()
	yield caches["default"]
	caches["default"].clear()


# ============================================================================
# USERS / CONTENT
# ============================================================================


@pytest.fixture
def make_user(db):
	counter = {"n": 0}

	def _make(address=None, role=UserRole.USER, balance=0):
		counter["n"] += 1
		address = address or "0x" + f"{counter['n']:040x}"
		user = User.objects.create(wallet_address=address.lower(), display_name=f"User_{address[2:8]}", role=role)
		if balance:
			LedgerServices.append_credit(user.id, balance, "test seed")
			user.refresh_from_db()
		return user

	return _make


@pytest.fixture
def user(make_user):
	return make_user(address=BUYER)


@pytest.fixture
def admin_user(make_user):
	return make_user(role=UserRole.ADMIN)


@pytest.fixture
def comic(db):
	"""Comic with free_chapters=3 and chapters A..E published an hour apart."""
	comic = Comic.objects.create(title="Night Shift", slug="night-shift", free_chapters=3)
	base = timezone.now() - timedelta(days=1)
	for i, title in enumerate("ABCDE"):
		Chapter.objects.create(
			comic=comic,
			title=title,
			chapter_number=i + 1,
			unlock_cost=10,
			published_at=base + timedelta(hours=i),
		)
	return comic


@pytest.fixture
def chapters(comic):
	return {c.title: c for c in comic.chapters.all()}


# ============================================================================
# CHAIN
# ============================================================================


def purchase_log(buyer=BUYER, credits=100, amount_wei=5 * 10 ** 16, contract=CONTRACT, log_index=0):
	"""A receipt log exactly as a node would return it for CreditsPurchased."""
	spec = EventSpec.parse(EVENT_SIGNATURE)
	return {
		"address": contract,
		"topics": [spec.topic, "0x" + abi_encode(["address"], [buyer]).hex()],
		"data": "0x" + abi_encode(["uint256", "uint256"], [credits, amount_wei]).hex(),
		"logIndex": hex(log_index),
	}


class FakeChain:
	"""In-memory stand-in for ChainAdapter; decoding is the real implementation."""

	decode_events = staticmethod(ChainAdapter.decode_events)

	def __init__(self):
		self.receipts = {}
		self.calls = 0

	def add(self, tx_hash=TX_HASH, success=True, to=CONTRACT, logs=None):
		self.receipts[tx_hash] = Receipt(tx_hash=tx_hash, success=success, to=to, block_number=1, logs=logs if logs is not None else [purchase_log()])

	def get_transaction_receipt(self, tx_hash):
		self.calls += 1
		return self.receipts.get(tx_hash)


@pytest.fixture
def fake_chain():
	return FakeChain()
