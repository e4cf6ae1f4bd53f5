"""Request plumbing shared by the API views: JSON bodies, session user, error mapping."""

import functools
import json
import logging

from django.core.exceptions import ObjectDoesNotExist
from django.http import JsonResponse

from core.exceptions import ChainUnavailable, CreditsError, PermissionDenied
from core.models import User

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user_id"


class BadRequest(Exception):
	pass


def json_body(request) -> dict:
	try:
		body = json.loads(request.body or b"{}")
	except ValueError as e:
		raise BadRequest("invalid_json") from e
	if not isinstance(body, dict):
		raise BadRequest("invalid_json")
	return body


def session_user(request) -> User | None:
	user_id = request.session.get(SESSION_USER_KEY)
	if not user_id:
		return None
	return User.objects.filter(pk=user_id).first()


def error(code: str, status: int, detail: str | None = None) -> JsonResponse:
	body = {"error": code}
	if detail and detail != code:
		body["detail"] = detail
	return JsonResponse(body, status=status)


def api_view(method: str, *, auth: bool = True, admin: bool = False):
	"""
	Enforce the HTTP method and session, pass the User in, and turn the typed
	core failures into JSON responses:

	- CreditsError (insufficient credits, verification failures, ...) → 400
	- PermissionDenied → 403, unknown rows → 404
	- ChainUnavailable → 502; anything else propagates as a 500
	"""
	def decorator(view):
		@functools.wraps(view)
		def wrapper(request, *args, **kwargs):
			if request.method != method:
				return error(f"{method} only", 405)
			user = session_user(request)
			if (auth or admin) and user is None:
				return error("unauthorized", 401)
			if admin and not user.is_admin:
				return error("forbidden", 403)
			try:
				return view(request, user, *args, **kwargs)
			except BadRequest as e:
				return error(str(e), 400)
			except PermissionDenied as e:
				return error(e.code, 403, e.message)
			except CreditsError as e:
				return error(e.code, 400, e.message)
			except ObjectDoesNotExist as e:
				return error(f"{type(e).__qualname__.split('.')[0].lower()}_not_found", 404)
			except ChainUnavailable:
				logger.error("chain RPC unavailable during %s", view.__name__, exc_info=True)
				return error("chain_unavailable", 502)
		return wrapper
	return decorator
