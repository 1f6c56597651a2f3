from typing import Dict, List, Union

import pytest
from eth_abi import encode as abi_encode

from didethresolver.chain_service import (
    ATTRIBUTE_CHANGED_DATA_TYPES,
    ATTRIBUTE_CHANGED_TOPIC,
    BlockHead,
    LogFilter,
    MockChainClient,
    RawLog,
    encode_name,
    identity_topic,
)
from didethresolver.config import DID_ETH_REGISTRY
from didethresolver.did_registry import DidRegistry
from didethresolver.state import LedgerState


REFERENCE_TIMESTAMP = 1_700_000_000
IDENTITY = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
WALLET = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


def make_log(
    name: str,
    value: str,
    valid_to: int,
    previous_change: int,
    block_number: int,
    identity: str = IDENTITY,
    log_index: int = 0,
) -> RawLog:
    data = abi_encode(
        ATTRIBUTE_CHANGED_DATA_TYPES,
        [encode_name(name), value.encode("utf-8"), valid_to, previous_change],
    )
    return RawLog(
        address=DID_ETH_REGISTRY,
        topics=(
            bytes.fromhex(ATTRIBUTE_CHANGED_TOPIC[2:]),
            bytes.fromhex(identity_topic(identity)[2:]),
        ),
        data=data,
        block_number=block_number,
        log_index=log_index,
    )


class ScriptedChain:
    """Chain client whose logs per block are scripted by the test.

    A block mapped to an exception raises it from ``get_logs``.
    """

    def __init__(
        self,
        changed: int = 0,
        timestamp: int = REFERENCE_TIMESTAMP,
        blocks: Dict[int, Union[List[RawLog], Exception]] = None,
    ) -> None:
        self.address = WALLET
        self.contract_address = DID_ETH_REGISTRY
        self.chain_id = 1
        self.changed = changed
        self.timestamp = timestamp
        self.blocks = blocks or {}
        self.queries: List[LogFilter] = []
        self.head_calls = 0
        self.head_error: Exception = None

    def call(self, function_name, *args):
        if function_name == "changed":
            return self.changed
        if function_name == "identityOwner":
            return args[0]
        raise AssertionError(f"unexpected query {function_name}")

    def transact(self, function_name, *args, confirmations=10):
        raise AssertionError("scripted chain is read-only")

    def get_logs(self, log_filter: LogFilter) -> List[RawLog]:
        self.queries.append(log_filter)
        outcome = self.blocks.get(log_filter.from_block, [])
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)

    def head_block(self) -> BlockHead:
        self.head_calls += 1
        if self.head_error is not None:
            raise self.head_error
        return BlockHead(number=1_000, timestamp=self.timestamp)


@pytest.fixture
def ledger():
    return LedgerState(genesis_timestamp=REFERENCE_TIMESTAMP)


@pytest.fixture
def mock_chain(ledger):
    return MockChainClient(state=ledger)


@pytest.fixture
def registry(mock_chain):
    return DidRegistry(mock_chain, required_confirmations=10)
