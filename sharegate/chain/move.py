"""
Move Chain Client

Sui backend for the shares_trading Move module:
- Trade events via suix_queryEvents, paged by an opaque EventID cursor
- get_shares_balance via sui_devInspectTransactionBlock on a BCS-encoded
  programmable transaction (base64 TransactionKind)
- Ed25519 personal-message signature verification (PyNaCl)

Cursors are carried around as compact JSON text, e.g.
    {"txDigest":"5Hf...","eventSeq":"0"}
which is what the watermark store persists as metadata.
"""

import base64
import hashlib
import json
import struct
from typing import Any, Dict, List, Optional

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from ..addresses import normalize_address, to_rpc_address
from ..config import MoveChainConfig
from ..errors import ChainRpcError, EventDecodeError, InvalidSignatureError
from ..types import CursorPage, DecodedTradeEvent
from .base import CursorChainClient


ED25519_FLAG = 0x00
ED25519_SIGNATURE_LENGTH = 1 + 64 + 32  # flag || signature || public key

# IntentScope::PersonalMessage, IntentVersion::V0, AppId::Sui
PERSONAL_MESSAGE_INTENT = bytes([3, 0, 0])

# Base58 of 32 zero bytes; used to wrap legacy bare eventSeq cursors.
ZERO_TX_DIGEST = "11111111111111111111111111111111"

MAX_SHARE_AMOUNT = 2 ** 63 - 1

SUI_ADDRESS_LENGTH = 32
DEV_INSPECT_SENDER = "0x" + "00" * SUI_ADDRESS_LENGTH


def _uleb128(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _bcs_string(value: str) -> bytes:
    data = value.encode("utf-8")
    return _uleb128(len(data)) + data


def address_bytes(address: str) -> bytes:
    """32-byte Sui address, left-padded like 0x2 -> 0x00..02."""
    addr = normalize_address(address)
    if len(addr) > 2 * SUI_ADDRESS_LENGTH:
        raise ValueError(f"Sui address longer than {SUI_ADDRESS_LENGTH} bytes: {address!r}")
    return bytes.fromhex(addr.rjust(2 * SUI_ADDRESS_LENGTH, "0"))


def move_call_kind(
    package_id: str,
    module: str,
    function: str,
    shared_object_id: str,
    shared_version: int,
    address_args: List[str]
) -> bytes:
    """
    BCS TransactionKind holding one programmable MoveCall.

    Inputs are the shared object (read-only) followed by one pure address
    per entry of address_args; the call receives them in that order.

        TransactionKind::ProgrammableTransaction = 0
        CallArg::Pure = 0, CallArg::Object = 1
        ObjectArg::SharedObject = 1
        Command::MoveCall = 0
        Argument::Input = 1
    """
    inputs = [
        b"\x01\x01" + address_bytes(shared_object_id) + struct.pack("<Q", shared_version) + b"\x00"
    ]
    for address in address_args:
        inputs.append(b"\x00" + _uleb128(SUI_ADDRESS_LENGTH) + address_bytes(address))

    arguments = b"".join(b"\x01" + struct.pack("<H", index) for index in range(len(inputs)))
    move_call = (
        address_bytes(package_id)
        + _bcs_string(module)
        + _bcs_string(function)
        + _uleb128(0)
        + _uleb128(len(inputs))
        + arguments
    )
    return (
        b"\x00"
        + _uleb128(len(inputs)) + b"".join(inputs)
        + _uleb128(1) + b"\x00" + move_call
    )


def personal_message_digest(message: bytes) -> bytes:
    """BLAKE2b-256 of the intent-wrapped, BCS-encoded personal message."""
    intent_message = PERSONAL_MESSAGE_INTENT + _uleb128(len(message)) + message
    return hashlib.blake2b(intent_message, digest_size=32).digest()


def ed25519_address(public_key: bytes) -> str:
    """Canonical Sui address of an Ed25519 public key."""
    return hashlib.blake2b(bytes([ED25519_FLAG]) + public_key, digest_size=32).hexdigest()


def encode_cursor(cursor: Dict[str, Any]) -> str:
    """Serialize an EventID to the JSON text stored as watermark metadata."""
    return json.dumps(
        {"txDigest": cursor["txDigest"], "eventSeq": str(cursor["eventSeq"])},
        separators=(",", ":"),
    )


def decode_cursor(cursor: Optional[str]) -> Optional[Dict[str, str]]:
    """Parse stored cursor text back into an EventID object."""
    if not cursor:
        return None
    text = cursor.strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
            return {"txDigest": data["txDigest"], "eventSeq": str(data["eventSeq"])}
        except (ValueError, KeyError, TypeError):
            pass
    # Legacy: bare eventSeq
    return {"txDigest": ZERO_TX_DIGEST, "eventSeq": text}


class MoveChainClient(CursorChainClient):
    """JSON-RPC client for the shares_trading module on Sui."""

    def __init__(self, config: MoveChainConfig):
        super().__init__(config.chain_id, config.rpc_url, config.request_timeout)
        self.config = config
        self.package_id = to_rpc_address(config.package_id)
        self.trading_object_id = to_rpc_address(config.trading_object_id)
        self.event_type = f"{self.package_id}::{config.module}::Trade"
        self._shared_version: Optional[int] = None

    async def current_position(self) -> int:
        """Latest checkpoint. Informational only, cursors drive progress."""
        result = await self._rpc("sui_getLatestCheckpointSequenceNumber", [])
        try:
            return int(result)
        except (TypeError, ValueError):
            raise ChainRpcError(f"sui_getLatestCheckpointSequenceNumber returned {result!r}")

    # =========================================================================
    # Event fetching
    # =========================================================================

    async def fetch_page(self, cursor: Optional[str], limit: int) -> CursorPage:
        """
        Fetch the page of Trade events strictly after cursor (ascending).

        Returns the decoded events, the next cursor (JSON text) and the
        node's hasNextPage flag.
        """
        result = await self._rpc("suix_queryEvents", [
            {"MoveEventType": self.event_type},
            decode_cursor(cursor),
            limit,
            False,
        ])
        if not isinstance(result, dict) or not isinstance(result.get("data"), list):
            raise ChainRpcError("suix_queryEvents returned a malformed page")

        events = []
        last_position = None
        for raw in result["data"]:
            try:
                event = self.decode_trade_event(raw)
            except EventDecodeError as e:
                self._logger.warning(f"Skipping undecodable event: {e}")
                continue
            events.append(event)
            if event.position is not None:
                last_position = event.position

        next_cursor = result.get("nextCursor")
        return CursorPage(
            events=events,
            next_cursor=encode_cursor(next_cursor) if next_cursor else None,
            has_next_page=bool(result.get("hasNextPage")),
            last_position=last_position,
        )

    def decode_trade_event(self, raw: Dict[str, Any]) -> DecodedTradeEvent:
        """Decode one suix_queryEvents entry into a DecodedTradeEvent."""
        try:
            parsed = raw["parsedJson"]
            event_id = raw["id"]
            amount = int(str(parsed["amount"]))
            is_buy = parsed["is_buy"]
            trader = normalize_address(parsed["trader"])
            subject = normalize_address(parsed["subject"])
            timestamp_ms = raw.get("timestampMs")
            position = int(timestamp_ms) if timestamp_ms is not None else None
            key = f"{self.chain_id}:{event_id['txDigest']}:{event_id['eventSeq']}"
        except (KeyError, TypeError, ValueError) as e:
            raise EventDecodeError(f"bad Trade event {raw.get('id')}: {e}") from e

        if not isinstance(is_buy, bool):
            raise EventDecodeError(f"bad is_buy {is_buy!r} in {key}")
        if amount < 0 or amount > MAX_SHARE_AMOUNT:
            raise EventDecodeError(f"share amount {amount} out of range in {key}")

        return DecodedTradeEvent(
            trader=trader,
            subject=subject,
            is_buy=is_buy,
            share_amount=amount,
            chain_id=self.chain_id,
            event_key=key,
            position=position,
        )

    # =========================================================================
    # Contract reads
    # =========================================================================

    async def shared_object_version(self) -> int:
        """initial_shared_version of the trading object, looked up once."""
        if self._shared_version is not None:
            return self._shared_version

        result = await self._rpc("sui_getObject", [self.trading_object_id, {"showOwner": True}])
        try:
            owner = result["data"]["owner"]
            version = int(owner["Shared"]["initial_shared_version"])
        except (KeyError, TypeError, ValueError):
            raise ChainRpcError(f"Trading object {self.trading_object_id} is not a shared object: {result!r}")

        self._shared_version = version
        return version

    async def read_balance(self, subject: str, holder: str) -> int:
        """get_shares_balance(trading_object, subject, holder) via dev-inspect."""
        kind = move_call_kind(
            self.package_id,
            self.config.module,
            "get_shares_balance",
            self.trading_object_id,
            await self.shared_object_version(),
            [subject, holder],
        )
        result = await self._rpc("sui_devInspectTransactionBlock", [
            DEV_INSPECT_SENDER,
            base64.b64encode(kind).decode("ascii"),
        ])
        return self._parse_balance(result)

    def _parse_balance(self, result: Any) -> int:
        try:
            value = result["results"][0]["returnValues"][0]
        except (KeyError, IndexError, TypeError):
            raise ChainRpcError(f"get_shares_balance returned no value: {result!r}")

        # BCS form: [[b0, b1, ...], "u64"]
        if isinstance(value, list) and value and isinstance(value[0], list):
            return int.from_bytes(bytes(value[0]), "little")
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
        raise ChainRpcError(f"get_shares_balance returned {value!r}")

    # =========================================================================
    # Signatures
    # =========================================================================

    def recover_signer(self, message: str, signature: str) -> str:
        """
        Verify a serialized Sui signature over a personal message and
        return the signer address.

        Only the Ed25519 scheme is accepted.
        """
        try:
            raw = base64.b64decode(signature.strip(), validate=True)
        except (AttributeError, ValueError) as e:
            raise InvalidSignatureError(f"Invalid signature encoding: {e}")

        if not raw:
            raise InvalidSignatureError("Empty signature")
        if raw[0] != ED25519_FLAG:
            raise InvalidSignatureError(f"Unsupported signature scheme flag {raw[0]:#04x}")
        if len(raw) != ED25519_SIGNATURE_LENGTH:
            raise InvalidSignatureError(f"Ed25519 signature must be {ED25519_SIGNATURE_LENGTH} bytes")

        sig, public_key = raw[1:65], raw[65:]
        digest = personal_message_digest(message.encode("utf-8"))
        try:
            VerifyKey(public_key).verify(digest, sig)
        except (BadSignatureError, ValueError) as e:
            raise InvalidSignatureError(f"Signature verification failed: {e}")

        return ed25519_address(public_key)

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats["event_type"] = self.event_type
        return stats
