from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple
import time


GENESIS_BLOCK = 1
BLOCK_TIME_SECONDS = 12


class LedgerState:
    """In-memory ledger backing the mock registry client.

    Logs are stored per block in the JSON-RPC ``eth_getLogs`` shape so the
    mock and the web3 client share one conversion path.
    """

    def __init__(self, genesis_timestamp: Optional[int] = None) -> None:
        self._lock = Lock()
        self.block_number = GENESIS_BLOCK
        self.timestamp = genesis_timestamp if genesis_timestamp is not None else int(time.time())
        self.owners: Dict[str, str] = {}
        self.changed: Dict[str, int] = {}
        self.logs: Dict[int, List[Dict[str, Any]]] = {}
        self._nonce_by_address: Dict[str, int] = {}

    def head(self) -> Tuple[int, int]:
        with self._lock:
            return self.block_number, self.timestamp

    def mine_block(self, seconds: int = BLOCK_TIME_SECONDS) -> Tuple[int, int]:
        with self._lock:
            self.block_number += 1
            self.timestamp += seconds
            return self.block_number, self.timestamp

    def identity_owner(self, identity: str) -> str:
        return self.owners.get(identity, identity)

    def set_owner(self, identity: str, owner: str) -> None:
        with self._lock:
            self.owners[identity] = owner

    def get_changed(self, identity: str) -> int:
        with self._lock:
            return self.changed.get(identity, 0)

    def record_change(
        self, identity: str, build_entry: Callable[[int, int, int], Dict[str, Any]]
    ) -> Tuple[int, Dict[str, Any]]:
        """Mine a block holding one change of ``identity`` and advance its pointer.

        ``build_entry(block_number, timestamp, previous_change)`` returns the log
        entry. The block, the log and the pointer are updated under one lock
        acquisition.
        """
        with self._lock:
            self.block_number += 1
            self.timestamp += BLOCK_TIME_SECONDS
            block_number = self.block_number
            previous_change = self.changed.get(identity, 0)
            entry = build_entry(block_number, self.timestamp, previous_change)
            block_logs = self.logs.setdefault(block_number, [])
            entry = dict(entry, blockNumber=block_number, logIndex=len(block_logs))
            block_logs.append(entry)
            self.changed[identity] = block_number
            return block_number, entry

    def logs_in_range(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                entry
                for number in range(from_block, to_block + 1)
                for entry in self.logs.get(number, [])
            ]

    def next_nonce(self, address: str) -> int:
        with self._lock:
            current = self._nonce_by_address.get(address, 0)
            self._nonce_by_address[address] = current + 1
            return current
