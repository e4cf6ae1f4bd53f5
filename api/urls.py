"""Public API surface for the credits service.

- /auth/*: SIWE nonce + verification, session logout
- /credits/*: balance, history, on-chain purchase verification
- /chapters/<id>/*: unlock, access checks, reading progress
- /admin/*: credit adjustments, roles, reconciliation, ledger summary
"""

from django.urls import path
from .views_ops import (
	health, csrf, auth_nonce, auth_verify, auth_logout, verify_purchase, unlock_chapter, record_progress,
	admin_adjust_credits, admin_set_role, admin_reconcile,
)
from .views_read import me, balance, history, library, chapter_access, admin_summary


urlpatterns = [
	path("health", health),
	path("csrf", csrf),
	path("auth/nonce", auth_nonce),
	path("auth/verify", auth_verify),
	path("auth/logout", auth_logout),
	path("me", me),
	path("credits/balance", balance),
	path("credits/history", history),
	path("credits/verify", verify_purchase),
	path("chapters/<uuid:chapter_id>/unlock", unlock_chapter),
	path("chapters/<uuid:chapter_id>/access", chapter_access),
	path("chapters/<uuid:chapter_id>/progress", record_progress),
	path("library", library),
	path("admin/users/<uuid:user_id>/credits", admin_adjust_credits),
	path("admin/users/<uuid:user_id>/role", admin_set_role),
	path("admin/users/<uuid:user_id>/reconcile", admin_reconcile),
	path("admin/summary", admin_summary),
]
