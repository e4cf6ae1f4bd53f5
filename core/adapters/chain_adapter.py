"""Adapter over an Ethereum JSON-RPC endpoint.

Only two things are needed from the chain: a transaction receipt by hash, and
the payment contract's purchase event decoded out of that receipt's logs.
Every RPC call is bounded by CHAIN_RPC_TIMEOUT.
"""

import logging
import re
from dataclasses import dataclass, field

import requests
from django.conf import settings
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_bytes

from core.exceptions import ChainUnavailable, TransactionNotConfirmed

logger = logging.getLogger(__name__)

_EVENT_RE = re.compile(r"^\s*(\w+)\s*\((.*)\)\s*$")


@dataclass(frozen=True)
class EventParam:
	name: str
	abi_type: str
	indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
	"""
	Parsed form of a declaration like
	"CreditsPurchased(address indexed buyer, uint256 credits, uint256 amountWei)".
	"""
	name: str
	params: tuple

	@classmethod
	def parse(cls, declaration: str) -> "EventSpec":
		m = _EVENT_RE.match(declaration or "")
		if not m:
			raise ValueError(f"bad event declaration: {declaration!r}")
		params = []
		for i, raw in enumerate(p.strip() for p in m.group(2).split(",") if p.strip()):
			parts = raw.split()
			indexed = "indexed" in parts[1:]
			rest = [p for p in parts[1:] if p != "indexed"]
			params.append(EventParam(name=rest[0] if rest else f"arg{i}", abi_type=parts[0], indexed=indexed))
		return cls(name=m.group(1), params=tuple(params))

	@property
	def canonical(self) -> str:
		return f"{self.name}({','.join(p.abi_type for p in self.params)})"

	@property
	def topic(self) -> str:
		return "0x" + keccak(text=self.canonical).hex()


@dataclass
class Receipt:
	tx_hash: str
	success: bool
	to: str | None
	block_number: int | None = None
	logs: list = field(default_factory=list)


class ChainAdapter:
	"""
	Minimal JSON-RPC client. Raises ChainUnavailable for transport/RPC errors and
	TransactionNotConfirmed when the call times out.
	"""

	def __init__(self, rpc_url: str | None = None, timeout: float | None = None, session=None):
		self.rpc_url = rpc_url if rpc_url is not None else settings.CHAIN_RPC_URL
		self.timeout = timeout if timeout is not None else settings.CHAIN_RPC_TIMEOUT
		self.session = session or requests.Session()
		self._next_id = 1

	def _call(self, method: str, params: list):
		if not self.rpc_url:
			raise ChainUnavailable("no chain RPC endpoint configured")
		payload = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params}
		self._next_id += 1
		try:
			resp = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
			resp.raise_for_status()
			body = resp.json()
		except requests.Timeout as e:
			logger.warning("RPC %s timed out after %ss", method, self.timeout)
			raise TransactionNotConfirmed("rpc_timeout") from e
		except (requests.RequestException, ValueError) as e:
			raise ChainUnavailable(f"{method} failed: {e}") from e

		if body.get("error"):
			raise ChainUnavailable(f"{method} error: {body['error']}")
		return body.get("result")

	def get_transaction_receipt(self, tx_hash: str) -> Receipt | None:
		"""
		None when the node does not know the transaction or it is not mined yet.
		"""
		raw = self._call("eth_getTransactionReceipt", [tx_hash])
		if not raw:
			return None
		block = raw.get("blockNumber")
		return Receipt(
			tx_hash=raw.get("transactionHash", tx_hash),
			success=_hex_int(raw.get("status")) == 1,
			to=(raw.get("to") or None) and raw["to"].lower(),
			block_number=_hex_int(block) if block else None,
			logs=list(raw.get("logs") or []),
		)

	@staticmethod
	def decode_events(receipt: Receipt, contract_address: str, event: EventSpec) -> list[dict]:
		"""
		Decode every log in `receipt` emitted by `contract_address` whose topic0
		matches `event`. Logs that fail to decode are skipped.
		"""
		contract_address = contract_address.lower()
		topic0 = event.topic
		indexed = [p for p in event.params if p.indexed]
		plain = [p for p in event.params if not p.indexed]

		out = []
		for log in receipt.logs:
			if (log.get("address") or "").lower() != contract_address:
				continue
			topics = [t.lower() for t in (log.get("topics") or [])]
			if not topics or topics[0] != topic0 or len(topics) - 1 != len(indexed):
				continue
			try:
				args = {}
				for param, topic in zip(indexed, topics[1:]):
					(args[param.name],) = abi_decode([param.abi_type], to_bytes(hexstr=topic))
				values = abi_decode([p.abi_type for p in plain], to_bytes(hexstr=log.get("data") or "0x"))
				args.update({p.name: v for p, v in zip(plain, values)})
			except (DecodingError, ValueError):
				logger.debug("skipping undecodable %s log in %s", event.name, receipt.tx_hash, exc_info=True)
				continue
			out.append({"event": event.name, "log_index": _hex_int(log.get("logIndex")), "args": args})
		return out


def _hex_int(value) -> int | None:
	if value is None:
		return None
	if isinstance(value, int):
		return value
	return int(str(value), 16)
