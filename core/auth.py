"""Sign-In-With-Ethereum challenge/response and user identity.

issue_nonce → wallet signs the returned message → sign_in verifies it, burns the
nonce and finds-or-creates the User. Everything downstream only sees user ids.
"""

import logging
import secrets
from datetime import timedelta

from django.conf import settings
from django.db import transaction, IntegrityError
from django.utils import timezone

from .constants import is_address, normalize_address
from .exceptions import InvalidAddress, NonceExpiredOrUnknown, PermissionDenied
from .models import SiweNonce, User, UserRole
from .siwe import build_message, verify_message

logger = logging.getLogger(__name__)


class IdentityServices:

	@staticmethod
	def sweep_expired_nonces() -> int:
		deleted, _ = SiweNonce.objects.filter(expires_at__lt=timezone.now()).delete()
		return deleted

	@staticmethod
	def issue_nonce(address: str, domain: str, uri: str) -> str:
		"""
		Store a fresh single-use nonce for `address` and return the SIWE message to sign.
		"""
		if not is_address(address):
			raise InvalidAddress()

		IdentityServices.sweep_expired_nonces()

		now = timezone.now()
		expires_at = now + timedelta(minutes=settings.SIWE_NONCE_TTL_MINUTES)
		record = SiweNonce.objects.create(
			address=normalize_address(address),
			nonce=secrets.token_hex(16),
			expires_at=expires_at,
		)
		return build_message(
			domain=domain,
			address=address,
			statement=settings.SIWE_STATEMENT,
			uri=uri,
			chain_id=settings.CHAIN_ID,
			nonce=record.nonce,
			issued_at=now,
			expiration_time=expires_at,
		)

	@staticmethod
	@transaction.atomic
	def verify(message: str, signature: str) -> str:
		"""
		Return the lowercased signer address. The nonce is deleted on success so
		the same signed message cannot be replayed; expired or not-yet-valid
		messages are rejected before the nonce is looked up.
		"""
		parsed = verify_message(message, signature)
		claimed = normalize_address(parsed.address)

		record = SiweNonce.objects.select_for_update().filter(nonce=parsed.nonce).first()
		if record is None or record.address != claimed or record.is_expired:
			logger.info("rejected sign-in for %s: nonce unknown, foreign or expired", claimed)
			raise NonceExpiredOrUnknown()

		record.delete()
		return claimed

	@staticmethod
	def sign_in(message: str, signature: str) -> User:
		"""
		Verify, then find or create the wallet's User.
		"""
		address = IdentityServices.verify(message, signature)
		user = User.objects.filter(wallet_address=address).first()
		if user:
			return user
		try:
			with transaction.atomic():
				user = User.objects.create(wallet_address=address, display_name=f"User_{address[2:8]}")
		except IntegrityError:
			# Concurrent first sign-in for the same wallet
			return User.objects.get(wallet_address=address)
		logger.info("created user %s for %s", user.id, address)
		return user

	@staticmethod
	@transaction.atomic
	def set_role(acting_admin_id, user_id, role: str) -> User:
		if role not in UserRole.values:
			raise ValueError(f"unknown role {role!r}")
		admin = User.objects.get(pk=acting_admin_id)
		if not admin.is_admin:
			raise PermissionDenied()
		user = User.objects.select_for_update().get(pk=user_id)
		if user.pk == admin.pk and role == UserRole.USER:
			raise PermissionDenied("cannot_demote_self")

		user.role = role
		user.save(update_fields=["role"])
		logger.info("admin %s set role of %s to %s", admin.wallet_address, user.wallet_address, role)
		return user
