"""
Unit tests for the EVM chain client.

Tests:
- Trade log decoding (eth_abi) and event keys
- Emission ordering, removed logs, undecodable logs
- sharesBalance eth_call encoding and decoding
- EIP-191 signer recovery with real eth_account signatures
"""

import pytest
from eth_abi import decode, encode
from eth_account import Account
from eth_account.messages import encode_defunct

from sharegate.chain.evm import (
    EvmChainClient,
    SHARES_BALANCE_SELECTOR,
    TRADE_EVENT_TOPIC,
    TRADE_EVENT_TYPES,
)
from sharegate.config import EvmChainConfig
from sharegate.errors import ChainRpcError, EventDecodeError, InvalidSignatureError


CONTRACT = "0x" + "11" * 20
TRADER = "0x" + "aa" * 20
SUBJECT = "0x" + "bb" * 20


def trade_log(block: int, log_index: int, is_buy: bool = True, amount: int = 5,
              tx_hash: str = None, removed: bool = False) -> dict:
    data = encode(TRADE_EVENT_TYPES, [TRADER, SUBJECT, is_buy, amount, 10 ** 18, 0, 0, 100])
    return {
        "address": CONTRACT,
        "topics": [TRADE_EVENT_TOPIC],
        "data": "0x" + data.hex(),
        "blockNumber": hex(block),
        "logIndex": hex(log_index),
        "transactionHash": tx_hash or "0x" + f"{block:02x}{log_index:02x}".rjust(64, "0"),
        "removed": removed,
    }


@pytest.fixture
def client():
    return EvmChainClient(EvmChainConfig(
        rpc_url="http://localhost:8545",
        contract_address=CONTRACT[2:],
        start_block=0,
    ))


def fake_rpc(responses: dict, calls: list):
    async def _rpc(method, params):
        calls.append((method, params))
        result = responses[method]
        if isinstance(result, Exception):
            raise result
        return result
    return _rpc


class TestDecoding:

    def test_topic_is_keccak_of_signature(self):
        assert TRADE_EVENT_TOPIC.startswith("0x")
        assert len(TRADE_EVENT_TOPIC) == 66

    def test_decode_trade_log(self, client):
        event = client.decode_trade_log(trade_log(12, 3, is_buy=False, amount=7, tx_hash="0x" + "AB" * 32))

        assert event.trader == "aa" * 20
        assert event.subject == "bb" * 20
        assert event.is_buy is False
        assert event.share_amount == 7
        assert event.chain_id == "monad"
        assert event.position == 12
        assert event.event_key == "monad:0x" + "ab" * 32 + ":3"

    def test_truncated_data_raises(self, client):
        log = trade_log(1, 0)
        log["data"] = log["data"][:100]
        with pytest.raises(EventDecodeError):
            client.decode_trade_log(log)


class TestFetchEvents:

    @pytest.mark.asyncio
    async def test_logs_sorted_and_filtered(self, client):
        calls = []
        bad = trade_log(11, 0)
        bad["data"] = "0x1234"
        client._rpc = fake_rpc({"eth_getLogs": [
            trade_log(12, 1),
            trade_log(11, 5),
            trade_log(12, 0),
            trade_log(11, 6, removed=True),
            bad,
        ]}, calls)

        events = await client.fetch_events(10, 20)

        assert [(e.position, e.event_key.rsplit(":", 1)[1]) for e in events] == [
            (11, "5"), (12, "0"), (12, "1")
        ]
        method, params = calls[0]
        assert method == "eth_getLogs"
        assert params[0]["fromBlock"] == "0xa"
        assert params[0]["toBlock"] == "0x14"
        assert params[0]["topics"] == [TRADE_EVENT_TOPIC]
        assert params[0]["address"] == CONTRACT

    @pytest.mark.asyncio
    async def test_rpc_error_propagates(self, client):
        client._rpc = fake_rpc({"eth_getLogs": ChainRpcError("eth_getLogs failed")}, [])
        with pytest.raises(ChainRpcError):
            await client.fetch_events(1, 2)

    @pytest.mark.asyncio
    async def test_current_position_parses_hex(self, client):
        client._rpc = fake_rpc({"eth_blockNumber": "0x1b4"}, [])
        assert await client.current_position() == 436

    @pytest.mark.asyncio
    async def test_current_position_rejects_garbage(self, client):
        client._rpc = fake_rpc({"eth_blockNumber": "latest"}, [])
        with pytest.raises(ChainRpcError):
            await client.current_position()


class TestReadBalance:

    @pytest.mark.asyncio
    async def test_shares_balance_call(self, client):
        calls = []
        client._rpc = fake_rpc({"eth_call": "0x" + encode(["uint256"], [42]).hex()}, calls)

        balance = await client.read_balance("bb" * 20, "aa" * 20)

        assert balance == 42
        call, block = calls[0][1]
        assert block == "latest"
        data = bytes.fromhex(call["data"][2:])
        assert data[:4] == SHARES_BALANCE_SELECTOR
        subject, holder = decode(["address", "address"], data[4:])
        assert subject.lower() == SUBJECT
        assert holder.lower() == TRADER

    @pytest.mark.asyncio
    async def test_malformed_result(self, client):
        client._rpc = fake_rpc({"eth_call": "0x"}, [])
        with pytest.raises(ChainRpcError):
            await client.read_balance(SUBJECT, TRADER)


class TestRecoverSigner:

    def test_recovers_signer(self, client):
        account = Account.create()
        signed = Account.sign_message(encode_defunct(text="123456789"), private_key=account.key)

        recovered = client.recover_signer("123456789", signed.signature.hex())

        assert recovered == account.address.lower()[2:]

    def test_accepts_unprefixed_hex(self, client):
        account = Account.create()
        signed = Account.sign_message(encode_defunct(text="42"), private_key=account.key)
        signature = signed.signature.hex()
        if signature.startswith("0x"):
            signature = signature[2:]

        assert client.recover_signer("42", signature) == account.address.lower()[2:]

    def test_different_message_recovers_other_address(self, client):
        account = Account.create()
        signed = Account.sign_message(encode_defunct(text="42"), private_key=account.key)
        assert client.recover_signer("43", signed.signature.hex()) != account.address.lower()[2:]

    def test_wrong_length(self, client):
        with pytest.raises(InvalidSignatureError):
            client.recover_signer("42", "0x" + "00" * 64)

    def test_not_hex(self, client):
        with pytest.raises(InvalidSignatureError):
            client.recover_signer("42", "0xzz")
