"""Operational endpoints that move credits (sign-in, purchase verification, unlock, admin)."""

import logging

from django.http import JsonResponse
from django.middleware.csrf import get_token

from core.auth import IdentityServices
from core.services import ALREADY_UNLOCKED, FREE, LedgerServices, PaymentServices, UnlockServices
from .helpers import SESSION_USER_KEY, BadRequest, api_view, json_body

logger = logging.getLogger(__name__)


def health(request):
	return JsonResponse({"ok": True})


def csrf(request):
	# Forces creation/rotation of the CSRF token AND sets 'csrftoken' cookie
	return JsonResponse({"csrftoken": get_token(request)})


# --- Sign-in -------------------------------------------------------------------

@api_view("POST", auth=False)
def auth_nonce(request, user):
	"""
	POST {address}: issue a SIWE message bound to a fresh nonce
	"""
	body = json_body(request)
	domain = request.get_host()
	origin = request.headers.get("Origin") or f"{request.scheme}://{domain}"
	message = IdentityServices.issue_nonce(str(body.get("address") or ""), domain, origin)
	return JsonResponse({"message": message})


@api_view("POST", auth=False)
def auth_verify(request, user):
	"""
	POST {message, signature}: verify the signed SIWE message and start a session
	"""
	body = json_body(request)
	message, signature = body.get("message"), body.get("signature")
	if not isinstance(message, str) or not isinstance(signature, str):
		raise BadRequest("message and signature required")

	user = IdentityServices.sign_in(message, signature)
	request.session.cycle_key()
	request.session[SESSION_USER_KEY] = str(user.id)
	return JsonResponse({
		"user_id": str(user.id),
		"address": user.wallet_address,
		"display_name": user.display_name,
		"role": user.role,
		"credits_balance": user.credits_balance,
	})


@api_view("POST", auth=False)
def auth_logout(request, user):
	request.session.flush()
	return JsonResponse({"ok": True})


# --- Credits -------------------------------------------------------------------

@api_view("POST")
def verify_purchase(request, user):
	"""
	POST {transactionHash, chainId}: credit a confirmed on-chain purchase (idempotent)
	"""
	body = json_body(request)
	tx_hash = body.get("transactionHash")
	chain_id = body.get("chainId")
	if not tx_hash:
		raise BadRequest("transactionHash required")
	if chain_id is not None and (not isinstance(chain_id, int) or isinstance(chain_id, bool) or chain_id <= 0):
		raise BadRequest("chainId must be a positive integer")

	result = PaymentServices().verify_and_credit(user.id, user.wallet_address, tx_hash, chain_id)
	data = {"ok": True, "credits": result.credits, "amountPaid": result.amount_paid}
	if result.idempotent:
		data["idempotent"] = True
	return JsonResponse(data)


@api_view("POST")
def unlock_chapter(request, user, chapter_id):
	"""
	POST: unlock a paid chapter for the session user
	"""
	result = UnlockServices.unlock(user.id, chapter_id)
	if result.status == FREE:
		return JsonResponse({"ok": True, "free": True})
	if result.status == ALREADY_UNLOCKED:
		return JsonResponse({"ok": True, "already": True})
	return JsonResponse({"ok": True, "creditsSpent": result.credits_spent, "balance": result.balance})


@api_view("POST")
def record_progress(request, user, chapter_id):
	"""
	POST {currentPage}: remember the last page read in a free or unlocked chapter
	"""
	body = json_body(request)
	page = body.get("currentPage")
	if not isinstance(page, int) or isinstance(page, bool) or page < 1:
		raise BadRequest("currentPage must be a positive integer")
	progress = UnlockServices.record_progress(user.id, chapter_id, page)
	return JsonResponse({
		"ok": True,
		"progress": {
			"chapterId": str(progress.chapter_id),
			"pageNumber": progress.page_number,
			"updatedAt": progress.updated_at.isoformat(),
		},
	})


# --- Admin ---------------------------------------------------------------------

@api_view("POST", admin=True)
def admin_adjust_credits(request, user, user_id):
	"""
	POST {amount, reason}: signed credit adjustment (|amount| <= ADMIN_ADJUSTMENT_MAX)
	"""
	body = json_body(request)
	amount = body.get("amount")
	new_balance = LedgerServices.append_admin_adjustment(user_id, amount, body.get("reason") or "", user.id)
	action = "credited" if amount > 0 else "debited"
	return JsonResponse({
		"ok": True,
		"message": f"Successfully {action} {abs(amount)} credits",
		"newBalance": new_balance,
	})


@api_view("POST", admin=True)
def admin_set_role(request, user, user_id):
	body = json_body(request)
	role = body.get("role")
	if role not in ("USER", "ADMIN"):
		raise BadRequest("role must be USER or ADMIN")
	target = IdentityServices.set_role(user.id, user_id, role)
	return JsonResponse({
		"ok": True,
		"user": {"id": str(target.id), "role": target.role, "address": target.wallet_address},
		"message": f"Role updated to {role}",
	})


@api_view("POST", admin=True)
def admin_reconcile(request, user, user_id):
	"""
	POST: rebuild the user's cached balance from the ledger
	"""
	run = LedgerServices.reconcile_run(user_id)
	return JsonResponse({
		"ok": True,
		"balance": run.ledger_balance,
		"previous": run.cached_balance,
		"drift": run.drift,
	})
