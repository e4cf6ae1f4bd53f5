"""Read-only endpoints to inspect credits state (balance, history, library, summary)."""

from django.conf import settings
from django.http import JsonResponse

from core.services import LedgerServices, UnlockServices
from .helpers import BadRequest, api_view


@api_view("GET")
def me(request, user):
	return JsonResponse({
		"user_id": str(user.id),
		"address": user.wallet_address,
		"display_name": user.display_name,
		"role": user.role,
	})


@api_view("GET")
def balance(request, user):
	"""
	GET: cached credit balance for the session user
	"""
	return JsonResponse({
		"balance": LedgerServices.get_balance(user.id),
		"address": user.wallet_address,
	})


@api_view("GET")
def history(request, user):
	"""
	GET ?limit&offset: newest-first ledger entries (limit capped at HISTORY_MAX_LIMIT)
	"""
	try:
		limit = min(int(request.GET.get("limit", settings.HISTORY_DEFAULT_LIMIT)), settings.HISTORY_MAX_LIMIT)
		offset = int(request.GET.get("offset", 0))
	except ValueError:
		raise BadRequest("limit and offset must be integers")
	limit = max(1, limit)

	rows = LedgerServices.get_history(user.id, limit, offset)
	data = [
		{
			"id": str(r.id),
			"type": r.entry_type,
			"amount": r.amount,
			"description": r.description,
			"transactionHash": r.tx_hash,
			"networkChainId": r.chain_id,
			"status": r.status,
			"createdAt": r.created_at.isoformat(),
		}
		for r in rows
	]
	return JsonResponse({"transactions": data, "hasMore": len(data) == limit})


@api_view("GET")
def library(request, user):
	"""
	GET: chapters the session user has paid to unlock, most recent first
	"""
	data = [
		{
			"chapterId": str(u.chapter_id),
			"chapterTitle": u.chapter.title,
			"comicId": str(u.chapter.comic_id),
			"comicTitle": u.chapter.comic.title,
			"creditsSpent": u.credits_spent,
			"unlockedAt": u.unlocked_at.isoformat(),
		}
		for u in UnlockServices.unlocked_chapters(user.id)[:200]
	]
	return JsonResponse({"unlocks": data})


@api_view("GET", auth=False)
def chapter_access(request, user, chapter_id):
	"""
	GET: whether the caller (or a guest) may read the chapter
	"""
	return JsonResponse({
		"chapterId": str(chapter_id),
		"canRead": UnlockServices.can_read(user.id if user else None, chapter_id),
	})


@api_view("GET", admin=True)
def admin_summary(request, user):
	"""
	GET: platform ledger totals; net should equal cached_total when everything is consistent
	"""
	return JsonResponse(LedgerServices.summary())
