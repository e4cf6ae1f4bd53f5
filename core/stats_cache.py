"""Shared TTL cache for derived ledger statistics, on top of django.core.cache.

Keys are namespaced by a generation counter stored in the same backend.
`invalidate()` bumps the generation, so every worker's next read misses, and a
compute that started before the bump stores its result under the old
generation where nobody reads it.
"""

from typing import Any, Callable

from django.conf import settings
from django.core.cache import caches

_MISSING = object()


class StatsCache:

	def __init__(self, alias: str | None = None, timeout: int | None = None, prefix: str = "ledger_stats"):
		self.alias = alias
		self.timeout = timeout
		self.prefix = prefix

	@property
	def backend(self):
		# resolved per call so CACHES overrides apply
		return caches[self.alias or settings.STATS_CACHE_ALIAS]

	@property
	def ttl(self) -> int:
		return self.timeout if self.timeout is not None else settings.STATS_CACHE_TTL

	@property
	def _generation_key(self) -> str:
		return f"{self.prefix}:generation"

	def generation(self) -> int:
		return self.backend.get_or_set(self._generation_key, 0, timeout=None)

	def _key(self, key: str, generation: int) -> str:
		return f"{self.prefix}:{generation}:{key}"

	def get(self, key: str, default=None):
		return self.backend.get(self._key(key, self.generation()), default)

	def get_or_compute(self, key: str, compute: Callable[[], Any]):
		generation = self.generation()
		full_key = self._key(key, generation)
		value = self.backend.get(full_key, _MISSING)
		if value is _MISSING:
			value = compute()
			self.backend.set(full_key, value, timeout=self.ttl)
		return value

	def invalidate(self) -> None:
		"""
		Drop every cached stat for this prefix, in all workers sharing the backend.
		"""
		try:
			self.backend.incr(self._generation_key)
		except ValueError:
			# no generation stored yet; readers have been using 0
			if not self.backend.add(self._generation_key, 1, timeout=None):
				self.backend.incr(self._generation_key)
