"""Explicit transaction scope for composing ledger writes.

A UnitOfWork owns one `transaction.atomic` block. Ledger operations take an
optional `uow`; when one is passed they join it instead of opening their own,
so a debit and the unlock record it pays for commit or roll back together.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator

from django.db import transaction

from .models import User


class UnitOfWork:

	def __init__(self, using: str | None = None):
		self.using = using
		self._atomic = None
		self._locked: dict = {}

	@property
	def active(self) -> bool:
		return self._atomic is not None

	def __enter__(self) -> "UnitOfWork":
		if self.active:
			raise RuntimeError("unit of work already open; join it with UnitOfWork.scope(uow)")
		self._atomic = transaction.atomic(using=self.using)
		self._atomic.__enter__()
		return self

	def __exit__(self, exc_type, exc, tb):
		atomic, self._atomic = self._atomic, None
		self._locked.clear()
		return atomic.__exit__(exc_type, exc, tb)

	@classmethod
	@contextmanager
	def scope(cls, uow: "UnitOfWork | None" = None) -> Iterator["UnitOfWork"]:
		"""
		Join `uow` if it is open, otherwise open (and close) a fresh one.
		"""
		if uow is not None and uow.active:
			yield uow
			return
		with cls() as fresh:
			yield fresh

	def lock_user(self, user_id) -> User:
		"""
		Row-lock the user for the rest of this scope. Serializes every
		balance read-check-write for that user.
		"""
		key = str(user_id)
		user = self._locked.get(key)
		if user is None:
			user = User.objects.using(self.using or "default").select_for_update().get(pk=user_id)
			self._locked[key] = user
		return user

	def refresh_user(self, user_id) -> User:
		"""
		Re-read the locked row after a conditional UPDATE changed it.
		"""
		user = self.lock_user(user_id)
		user.refresh_from_db(fields=["credits_balance"])
		return user

	@contextmanager
	def savepoint(self) -> Iterator[None]:
		"""
		Nested atomic block whose failure rolls back only its own writes.
		"""
		with transaction.atomic(using=self.using):
			yield

	def on_commit(self, fn: Callable[[], None]) -> None:
		transaction.on_commit(fn, using=self.using)
