"""EIP-4361 (Sign-In with Ethereum) messages on top of the `siwe` package.

build_message() renders the text a wallet signs. verify_message() parses it,
checks the signature and the Expiration Time / Not Before window, and returns
the parsed message so the caller can consume the nonce it carries.
"""

from datetime import datetime

import siwe
from eth_keys.exceptions import BadSignature, ValidationError as KeyValidationError
from eth_utils import to_checksum_address

from .exceptions import InvalidSignature, MessageExpired


def build_message(
	*,
	domain: str,
	address: str,
	uri: str,
	chain_id: int,
	nonce: str,
	issued_at: datetime,
	statement: str | None = None,
	expiration_time: datetime | None = None,
	not_before: datetime | None = None,
) -> str:
	message = siwe.SiweMessage(
		domain=domain,
		address=to_checksum_address(address),
		statement=statement or None,
		uri=uri,
		version="1",
		chain_id=chain_id,
		nonce=nonce,
		issued_at=_iso(issued_at),
		expiration_time=_iso(expiration_time) if expiration_time else None,
		not_before=_iso(not_before) if not_before else None,
	)
	return message.prepare_message()


def parse_message(text: str) -> siwe.SiweMessage:
	try:
		return siwe.SiweMessage.from_message(message=text or "")
	except (ValueError, TypeError) as e:
		raise InvalidSignature("malformed_message") from e


def verify_message(text: str, signature: str) -> siwe.SiweMessage:
	"""
	Raises InvalidSignature when the message is malformed or not signed by its
	own address, MessageExpired when it is outside its validity window.
	"""
	message = parse_message(text)
	try:
		message.verify(signature)
	except (siwe.ExpiredMessage, siwe.NotYetValidMessage) as e:
		raise MessageExpired() from e
	except siwe.VerificationError as e:
		raise InvalidSignature() from e
	except (BadSignature, KeyValidationError, ValueError, TypeError) as e:
		raise InvalidSignature() from e
	return message


def _iso(dt: datetime) -> str:
	return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")
