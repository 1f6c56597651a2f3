"""
Tests for the chain clients.

Web3ChainClient is driven through a mocked ``Web3`` handle; MockChainClient
is exercised directly.
"""

from unittest.mock import Mock, PropertyMock

import pytest
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3.exceptions import ContractLogicError, TimeExhausted

from didethresolver.chain_service import (
    ATTRIBUTE_CHANGED_TOPIC,
    DEV_PRIVATE_KEY,
    ChainConnectionError,
    ChainServiceError,
    IdentityParseError,
    LogFilter,
    MockChainClient,
    TransactionError,
    WalletError,
    Web3ChainClient,
    build_chain_client,
    encode_name,
    identity_topic,
    parse_identity,
)
from didethresolver.config import DID_ETH_REGISTRY, Settings
from didethresolver.history import HistoryWalker, TraversalStop

from .conftest import IDENTITY, WALLET


TX_HASH = HexBytes("0x" + "ab" * 32)


@pytest.fixture
def w3():
    w3 = Mock()
    w3.eth.chain_id = 11155111
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.send_raw_transaction.return_value = TX_HASH
    w3.eth.wait_for_transaction_receipt.return_value = {
        "status": 1,
        "blockNumber": 100,
        "gasUsed": 45_000,
    }
    w3.eth.block_number = 109
    contract = w3.eth.contract.return_value
    contract.functions.setAttribute.return_value.build_transaction.return_value = {
        "to": to_checksum_address(DID_ETH_REGISTRY),
        "data": "0x",
        "gas": 100_000,
        "gasPrice": 1_000_000_000,
        "nonce": 7,
        "chainId": 11155111,
        "value": 0,
    }
    return w3


@pytest.fixture
def client(w3):
    return Web3ChainClient(
        "http://localhost:8545",
        DEV_PRIVATE_KEY,
        confirmation_timeout=0,
        poll_interval=0,
        w3=w3,
    )


class TestHelpers:
    def test_parse_identity_checksums(self):
        assert parse_identity(IDENTITY.lower()) == IDENTITY

    def test_parse_identity_rejects_bad_checksum(self):
        mangled = IDENTITY[:2] + IDENTITY[2:].swapcase()

        with pytest.raises(IdentityParseError):
            parse_identity(mangled)

    @pytest.mark.parametrize("value", [
        "0x70997970c51812DC3a010c7D01B50E0D17DC79c8",
        "did:ethr:0x70997970c51812DC3a010c7D01B50E0D17DC79c8",
    ])
    def test_parse_identity_rejects_mixed_case_with_wrong_checksum(self, value):
        with pytest.raises(IdentityParseError):
            parse_identity(value)

    def test_parse_identity_accepts_uppercase(self):
        assert parse_identity("0x" + IDENTITY[2:].upper()) == IDENTITY

    def test_identity_topic_is_left_padded(self):
        topic = identity_topic(IDENTITY)

        assert len(topic) == 66
        assert topic.endswith(IDENTITY[2:].lower())
        assert topic[2:26] == "0" * 24

    def test_encode_name_pads_and_truncates(self):
        assert encode_name("email") == b"email" + b"\x00" * 27
        assert encode_name("n" * 40) == b"n" * 32

    def test_event_topic(self):
        assert ATTRIBUTE_CHANGED_TOPIC == (
            "0x18ab6b2ae3d64306c00ce663125f2bd680e441a098de1635bd7ad8b0d44965e4"
        )


class TestWeb3ChainClientConstruction:
    def test_connects_and_loads_wallet(self, client):
        assert client.chain_id == 11155111
        assert client.address == WALLET
        assert client.contract_address == to_checksum_address(DID_ETH_REGISTRY)

    def test_unreachable_rpc_raises_connection_error(self, w3):
        type(w3.eth).chain_id = PropertyMock(side_effect=OSError("connection refused"))

        with pytest.raises(ChainConnectionError):
            Web3ChainClient("http://localhost:1", DEV_PRIVATE_KEY, w3=w3)

    @pytest.mark.parametrize("key", ["0x1234", "not-hex", ""])
    def test_malformed_key_raises_wallet_error(self, w3, key):
        with pytest.raises(WalletError):
            Web3ChainClient("http://localhost:8545", key, w3=w3)


class TestWeb3ChainClientWrites:
    def test_transact_returns_confirmed_receipt(self, client, w3):
        receipt = client.transact(
            "setAttribute", WALLET, encode_name("email"), b"a@b.com", 10, confirmations=10
        )

        assert receipt.tx_hash == "0x" + "ab" * 32
        assert receipt.block_number == 100
        assert receipt.confirmations == 10
        assert receipt.gas_used == 45_000
        w3.eth.send_raw_transaction.assert_called_once()

    def test_build_uses_wallet_nonce(self, client, w3):
        client.transact("setAttribute", WALLET, encode_name("email"), b"v", 10)

        fn = w3.eth.contract.return_value.functions.setAttribute.return_value
        params = fn.build_transaction.call_args[0][0]
        assert params["from"] == WALLET
        assert params["nonce"] == 7
        assert params["chainId"] == 11155111

    def test_revert_during_build_raises(self, client, w3):
        fn = w3.eth.contract.return_value.functions.setAttribute.return_value
        fn.build_transaction.side_effect = ContractLogicError("execution reverted: bad_actor")

        with pytest.raises(TransactionError):
            client.transact("setAttribute", WALLET, encode_name("email"), b"v", 10)

    def test_failed_status_raises_with_hash(self, client, w3):
        w3.eth.wait_for_transaction_receipt.return_value = {
            "status": 0,
            "blockNumber": 100,
            "gasUsed": 21_000,
        }

        with pytest.raises(TransactionError) as excinfo:
            client.transact("setAttribute", WALLET, encode_name("email"), b"v", 10)

        assert excinfo.value.tx_hash == "0x" + "ab" * 32

    def test_receipt_timeout_raises(self, client, w3):
        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("no receipt")

        with pytest.raises(TransactionError):
            client.transact("setAttribute", WALLET, encode_name("email"), b"v", 10)

    def test_confirmation_timeout_raises(self, client, w3):
        w3.eth.block_number = 100

        with pytest.raises(TransactionError) as excinfo:
            client.transact(
                "setAttribute", WALLET, encode_name("email"), b"v", 10, confirmations=10
            )

        assert "1 observed" in str(excinfo.value)


class TestWeb3ChainClientReads:
    def test_call_invokes_contract_function(self, client, w3):
        w3.eth.contract.return_value.functions.changed.return_value.call.return_value = 42

        assert client.call("changed", IDENTITY) == 42
        w3.eth.contract.return_value.functions.changed.assert_called_once_with(IDENTITY)

    def test_call_failure_raises_connection_error(self, client, w3):
        fn = w3.eth.contract.return_value.functions.identityOwner.return_value
        fn.call.side_effect = OSError("reset")

        with pytest.raises(ChainConnectionError):
            client.call("identityOwner", IDENTITY)

    def test_get_logs_converts_entries(self, client, w3):
        w3.eth.get_logs.return_value = [
            {
                "address": DID_ETH_REGISTRY,
                "topics": [HexBytes(ATTRIBUTE_CHANGED_TOPIC), HexBytes(identity_topic(IDENTITY))],
                "data": HexBytes("0x01"),
                "blockNumber": 500,
                "logIndex": 3,
            }
        ]
        log_filter = LogFilter(
            address=DID_ETH_REGISTRY,
            topics=(ATTRIBUTE_CHANGED_TOPIC, identity_topic(IDENTITY)),
            from_block=500,
            to_block=500,
        )

        logs = client.get_logs(log_filter)

        assert logs[0].block_number == 500
        assert logs[0].log_index == 3
        assert logs[0].data == b"\x01"
        assert logs[0].topics[1][-20:] == bytes.fromhex(IDENTITY[2:])
        params = w3.eth.get_logs.call_args[0][0]
        assert params["fromBlock"] == params["toBlock"] == 500
        assert params["topics"] == list(log_filter.topics)

    def test_get_logs_failure_raises_connection_error(self, client, w3):
        w3.eth.get_logs.side_effect = ValueError("query returned more than 10000 results")

        with pytest.raises(ChainConnectionError):
            client.get_logs(
                LogFilter(address=DID_ETH_REGISTRY, topics=(), from_block=1, to_block=1)
            )

    def test_malformed_log_entry_raises_connection_error(self, client, w3):
        w3.eth.get_logs.return_value = [
            {"address": DID_ETH_REGISTRY, "topics": ["0xzz"], "data": "0x", "blockNumber": 500}
        ]

        with pytest.raises(ChainConnectionError):
            client.get_logs(
                LogFilter(address=DID_ETH_REGISTRY, topics=(), from_block=500, to_block=500)
            )

    def test_malformed_log_entry_stops_walk(self, client, w3):
        w3.eth.get_block.return_value = {"number": 600, "timestamp": 1_700_000_000}
        w3.eth.contract.return_value.functions.changed.return_value.call.return_value = 500
        w3.eth.get_logs.return_value = [{"topics": ["0xzz"], "data": "0x"}]

        result = HistoryWalker(client).walk(IDENTITY)

        assert result.stop is TraversalStop.FETCH_FAILED
        assert result.attributes == []

    def test_head_block(self, client, w3):
        w3.eth.get_block.return_value = {"number": 7, "timestamp": 1_700_000_000}

        head = client.head_block()

        assert head.number == 7
        assert head.timestamp == 1_700_000_000
        w3.eth.get_block.assert_called_once_with("latest")


class TestMockChainClient:
    def test_logs_from_other_contract_are_not_returned(self, mock_chain):
        mock_chain.transact("setAttribute", WALLET, encode_name("email"), b"v", 10)

        logs = mock_chain.get_logs(
            LogFilter(
                address=IDENTITY,
                topics=(ATTRIBUTE_CHANGED_TOPIC,),
                from_block=0,
                to_block=100,
            )
        )

        assert logs == []

    def test_logs_are_filtered_by_identity_topic(self, mock_chain):
        receipt = mock_chain.transact("setAttribute", WALLET, encode_name("email"), b"v", 10)

        logs = mock_chain.get_logs(
            LogFilter(
                address=DID_ETH_REGISTRY,
                topics=(ATTRIBUTE_CHANGED_TOPIC, identity_topic(IDENTITY)),
                from_block=receipt.block_number,
                to_block=receipt.block_number,
            )
        )

        assert logs == []

    def test_name_must_be_32_bytes(self, mock_chain):
        with pytest.raises(TransactionError):
            mock_chain.transact("setAttribute", WALLET, b"email", b"v", 10)

    def test_unknown_query(self, mock_chain):
        with pytest.raises(ChainConnectionError):
            mock_chain.call("nonces", WALLET)


class TestBuildChainClient:
    def test_mock_mode(self):
        chain = build_chain_client(Settings(chain_mode="mock"))

        assert isinstance(chain, MockChainClient)
        assert chain.address == WALLET

    def test_rpc_mode_requires_private_key(self):
        with pytest.raises(WalletError):
            build_chain_client(Settings(chain_mode="rpc", private_key=""))

    def test_unknown_mode(self):
        with pytest.raises(ChainServiceError):
            build_chain_client(Settings(chain_mode="ledger"))
