from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple
import logging
import time

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import (
    ValidationError,
    is_address,
    is_checksum_address,
    is_checksum_formatted_address,
    keccak,
    to_checksum_address,
)
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .config import DID_ETH_REGISTRY, REQUIRED_CONFIRMATIONS, Settings
from .state import LedgerState


logger = logging.getLogger(__name__)

ATTRIBUTE_CHANGED_SIGNATURE = "DIDAttributeChanged(address,bytes32,bytes,uint256,uint256)"
ATTRIBUTE_CHANGED_TOPIC = "0x" + keccak(text=ATTRIBUTE_CHANGED_SIGNATURE).hex()
ATTRIBUTE_CHANGED_DATA_TYPES = ["bytes32", "bytes", "uint256", "uint256"]

# Well-known development key (first account of the default hardhat/anvil mnemonic).
DEV_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
MOCK_CHAIN_ID = 31337
MOCK_GAS_USED = 50_000

DID_REGISTRY_ABI: List[Dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "identity", "type": "address"}],
        "name": "identityOwner",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "", "type": "address"}],
        "name": "changed",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "identity", "type": "address"},
            {"name": "name", "type": "bytes32"},
            {"name": "value", "type": "bytes"},
            {"name": "validity", "type": "uint256"},
        ],
        "name": "setAttribute",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "identity", "type": "address"},
            {"name": "name", "type": "bytes32"},
            {"name": "value", "type": "bytes"},
        ],
        "name": "revokeAttribute",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "identity", "type": "address"},
            {"indexed": False, "name": "name", "type": "bytes32"},
            {"indexed": False, "name": "value", "type": "bytes"},
            {"indexed": False, "name": "validTo", "type": "uint256"},
            {"indexed": False, "name": "previousChange", "type": "uint256"},
        ],
        "name": "DIDAttributeChanged",
        "type": "event",
    },
]


class ChainServiceError(RuntimeError):
    pass


class ChainConnectionError(ChainServiceError):
    pass


class WalletError(ChainServiceError):
    pass


class IdentityParseError(ChainServiceError):
    pass


class ValueOverflowError(ChainServiceError):
    pass


class TransactionError(ChainServiceError):
    def __init__(self, message: str, tx_hash: Optional[str] = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


@dataclass(frozen=True)
class BlockHead:
    number: int
    timestamp: int


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    block_number: int
    status: int
    gas_used: int
    confirmations: int


@dataclass(frozen=True)
class LogFilter:
    address: str
    topics: Tuple[str, ...]
    from_block: int
    to_block: int

    def to_params(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "topics": list(self.topics),
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
        }


@dataclass(frozen=True)
class RawLog:
    address: str
    topics: Tuple[bytes, ...]
    data: bytes
    block_number: int
    log_index: int

    @classmethod
    def from_rpc(cls, entry: Mapping[str, Any]) -> "RawLog":
        return cls(
            address=entry.get("address", ""),
            topics=tuple(bytes(HexBytes(topic)) for topic in entry.get("topics", [])),
            data=bytes(HexBytes(entry.get("data", b""))),
            block_number=int(entry.get("blockNumber", 0)),
            log_index=int(entry.get("logIndex", 0)),
        )


class ChainClient(Protocol):
    @property
    def address(self) -> str: ...

    @property
    def contract_address(self) -> str: ...

    @property
    def chain_id(self) -> int: ...

    def call(self, function_name: str, *args: Any) -> Any: ...

    def transact(
        self, function_name: str, *args: Any, confirmations: int = REQUIRED_CONFIRMATIONS
    ) -> TxReceipt: ...

    def get_logs(self, log_filter: LogFilter) -> List[RawLog]: ...

    def head_block(self) -> BlockHead: ...


def parse_identity(value: Any) -> str:
    """Return the checksummed address for ``value``.

    Accepts a bare ``0x`` address or a ``did:ethr:[network:]0x...`` DID.
    """
    if isinstance(value, str) and value.startswith("did:ethr:"):
        value = value.rsplit(":", 1)[-1]
    if not isinstance(value, str) or not is_address(value):
        raise IdentityParseError(f"Malformed identity address: {value!r}")
    if is_checksum_formatted_address(value) and not is_checksum_address(value):
        raise IdentityParseError(f"Bad checksum for identity address: {value!r}")
    return to_checksum_address(value)


def identity_topic(identity: str) -> str:
    return "0x" + parse_identity(identity)[2:].lower().rjust(64, "0")


def encode_name(name: str) -> bytes:
    """Encode an attribute name into the registry's bytes32 slot.

    The UTF-8 bytes are zero padded on the right. Names longer than 32 bytes
    are silently truncated to their first 32 bytes, which may split a
    multi-byte character.
    """
    return name.encode("utf-8")[:32].ljust(32, b"\x00")


def contract_checksum(address: str) -> str:
    try:
        return to_checksum_address(address)
    except (ValueError, TypeError) as exc:
        raise IdentityParseError(f"Malformed contract address: {address!r}") from exc


def load_account(private_key: str):
    try:
        return Account.from_key(private_key)
    except (ValueError, TypeError, ValidationError, KeyValidationError) as exc:
        raise WalletError("Unable to construct wallet from private key") from exc


class Web3ChainClient:
    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        registry_address: str = DID_ETH_REGISTRY,
        confirmation_timeout: float = 600.0,
        poll_interval: float = 2.0,
        w3: Optional[Web3] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._w3 = w3 if w3 is not None else Web3(Web3.HTTPProvider(rpc_url))
        try:
            self._chain_id = int(self._w3.eth.chain_id)
        except (Web3Exception, ValueError, OSError) as exc:
            raise ChainConnectionError(f"Cannot connect to RPC: {rpc_url}") from exc
        logger.info("Connected to chain: %s", self._chain_id)

        self._account = load_account(private_key)
        logger.info("Wallet: %s", self._account.address)
        self._contract_address = contract_checksum(registry_address)
        self._contract = self._w3.eth.contract(
            address=self._contract_address, abi=DID_REGISTRY_ABI
        )
        logger.info("Registry contract address: %s", self._contract_address)

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def contract_address(self) -> str:
        return self._contract_address

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def call(self, function_name: str, *args: Any) -> Any:
        try:
            return getattr(self._contract.functions, function_name)(*args).call()
        except (Web3Exception, ValueError, OSError) as exc:
            raise ChainConnectionError(f"{function_name} query failed: {exc}") from exc

    def transact(
        self, function_name: str, *args: Any, confirmations: int = REQUIRED_CONFIRMATIONS
    ) -> TxReceipt:
        try:
            fn = getattr(self._contract.functions, function_name)(*args)
            tx = fn.build_transaction(
                {
                    "from": self.address,
                    "chainId": self._chain_id,
                    "nonce": self._w3.eth.get_transaction_count(self.address, "pending"),
                }
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as exc:
            raise TransactionError(f"{function_name} reverted: {exc}") from exc
        except (Web3Exception, ValueError, OSError) as exc:
            raise TransactionError(f"{function_name} submission failed: {exc}") from exc
        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info("TX sent: %s", tx_hash_hex)

        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.confirmation_timeout, poll_latency=self.poll_interval
            )
        except TimeExhausted as exc:
            raise TransactionError(
                f"Timed out waiting for receipt of {tx_hash_hex}", tx_hash=tx_hash_hex
            ) from exc
        except (Web3Exception, ValueError, OSError) as exc:
            raise TransactionError(
                f"Receipt lookup failed for {tx_hash_hex}: {exc}", tx_hash=tx_hash_hex
            ) from exc
        if receipt["status"] != 1:
            raise TransactionError(
                f"{function_name} reverted in block {receipt['blockNumber']}",
                tx_hash=tx_hash_hex,
            )

        block_number = int(receipt["blockNumber"])
        observed = self._wait_for_confirmations(tx_hash_hex, block_number, confirmations)
        logger.info(
            "TX %s confirmed in block %s (%s confirmations, gas used: %s)",
            tx_hash_hex,
            block_number,
            observed,
            receipt["gasUsed"],
        )
        return TxReceipt(
            tx_hash=tx_hash_hex,
            block_number=block_number,
            status=int(receipt["status"]),
            gas_used=int(receipt["gasUsed"]),
            confirmations=observed,
        )

    def _wait_for_confirmations(self, tx_hash: str, block_number: int, confirmations: int) -> int:
        # The inclusion block counts as the first confirmation.
        deadline = time.monotonic() + self.confirmation_timeout
        while True:
            try:
                head = int(self._w3.eth.block_number)
            except (Web3Exception, ValueError, OSError) as exc:
                raise TransactionError(
                    f"Confirmation wait failed for {tx_hash}: {exc}", tx_hash=tx_hash
                ) from exc
            observed = max(head - block_number + 1, 0)
            if observed >= confirmations:
                return observed
            if time.monotonic() >= deadline:
                raise TransactionError(
                    f"Timed out waiting for {confirmations} confirmations of {tx_hash} "
                    f"({observed} observed)",
                    tx_hash=tx_hash,
                )
            time.sleep(self.poll_interval)

    def get_logs(self, log_filter: LogFilter) -> List[RawLog]:
        try:
            entries = self._w3.eth.get_logs(log_filter.to_params())
            return [RawLog.from_rpc(entry) for entry in entries]
        except (Web3Exception, ValueError, TypeError, OSError) as exc:
            raise ChainConnectionError(f"Log query failed: {exc}") from exc

    def head_block(self) -> BlockHead:
        try:
            block = self._w3.eth.get_block("latest")
        except (Web3Exception, ValueError, OSError) as exc:
            raise ChainConnectionError(f"Head block query failed: {exc}") from exc
        return BlockHead(number=int(block["number"]), timestamp=int(block["timestamp"]))


class MockChainClient:
    """In-memory stand-in for an ERC-1056 registry deployment.

    Every write mines one block carrying the ``DIDAttributeChanged`` log,
    then one empty block per further confirmation requested.
    """

    def __init__(
        self,
        private_key: str = "",
        registry_address: str = DID_ETH_REGISTRY,
        state: Optional[LedgerState] = None,
        chain_id: int = MOCK_CHAIN_ID,
    ) -> None:
        self._account = load_account(private_key or DEV_PRIVATE_KEY)
        self._contract_address = contract_checksum(registry_address)
        self._chain_id = chain_id
        self.state = state if state is not None else LedgerState()
        self.log_queries: List[LogFilter] = []

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def contract_address(self) -> str:
        return self._contract_address

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def call(self, function_name: str, *args: Any) -> Any:
        if function_name == "identityOwner":
            return self.state.identity_owner(parse_identity(args[0]))
        if function_name == "changed":
            return self.state.get_changed(parse_identity(args[0]))
        raise ChainConnectionError(f"Unknown registry query: {function_name}")

    def transact(
        self, function_name: str, *args: Any, confirmations: int = REQUIRED_CONFIRMATIONS
    ) -> TxReceipt:
        if function_name == "setAttribute":
            identity, name, value, validity = args
        elif function_name == "revokeAttribute":
            identity, name, value = args
            validity = None
        else:
            raise TransactionError(f"Unknown registry function: {function_name}")

        identity = parse_identity(identity)
        if len(name) != 32:
            raise TransactionError(f"{function_name} name must be 32 bytes, got {len(name)}")
        if self.state.identity_owner(identity) != self.address:
            raise TransactionError(f"{function_name} reverted: bad_actor")

        topics = [ATTRIBUTE_CHANGED_TOPIC, identity_topic(identity)]

        def build_entry(block_number: int, timestamp: int, previous_change: int) -> Dict[str, Any]:
            valid_to = 0 if validity is None else timestamp + int(validity)
            data = abi_encode(
                ATTRIBUTE_CHANGED_DATA_TYPES,
                [bytes(name), bytes(value), valid_to, previous_change],
            )
            return {"address": self._contract_address, "topics": topics, "data": "0x" + data.hex()}

        block_number, entry = self.state.record_change(identity, build_entry)
        data = bytes(HexBytes(entry["data"]))

        nonce = self.state.next_nonce(self.address)
        tx_hash = Web3.to_hex(
            keccak(abi_encode(["address", "uint256", "bytes"], [self.address, nonce, data]))
        )
        for _ in range(max(confirmations - 1, 0)):
            self.state.mine_block()
        logger.info("TX %s mined in block %s", tx_hash, block_number)
        return TxReceipt(
            tx_hash=tx_hash,
            block_number=block_number,
            status=1,
            gas_used=MOCK_GAS_USED,
            confirmations=max(confirmations, 1),
        )

    def get_logs(self, log_filter: LogFilter) -> List[RawLog]:
        self.log_queries.append(log_filter)
        if contract_checksum(log_filter.address) != self._contract_address:
            return []
        matched = []
        for entry in self.state.logs_in_range(log_filter.from_block, log_filter.to_block):
            topics = [topic.lower() for topic in entry["topics"]]
            wanted = [topic.lower() for topic in log_filter.topics]
            if topics[: len(wanted)] == wanted:
                matched.append(RawLog.from_rpc(entry))
        return matched

    def head_block(self) -> BlockHead:
        number, timestamp = self.state.head()
        return BlockHead(number=number, timestamp=timestamp)


def build_chain_client(settings: Settings) -> ChainClient:
    if settings.chain_mode == "mock":
        return MockChainClient(settings.private_key, settings.registry_address)
    if settings.chain_mode != "rpc":
        raise ChainServiceError(f"Unknown chain mode: {settings.chain_mode}")
    if not settings.private_key:
        raise WalletError("PRIVATE_KEY is required for chain mode 'rpc'")
    return Web3ChainClient(
        settings.rpc_url,
        settings.private_key,
        registry_address=settings.registry_address,
        confirmation_timeout=settings.confirmation_timeout,
        poll_interval=settings.poll_interval,
    )
