"""Backward walk over an identity's on-chain attribute change history.

The registry keeps, per identity, the block of its latest
``DIDAttributeChanged`` event; each event carries the block of the one
before it. Resolution follows that chain from the head pointer down to 0,
one ``eth_getLogs`` round trip per hop.

The walk is best effort: once the head block and the head pointer are known,
any failure to fetch or decode a hop truncates the result instead of raising.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List
import logging

from .chain_service import (
    ATTRIBUTE_CHANGED_TOPIC,
    ChainClient,
    ChainConnectionError,
    LogFilter,
    ValueOverflowError,
    identity_topic,
    parse_identity,
)
from .config import MAX_SAFE_INTEGER
from .event_decoder import (
    AttributeChangeEvent,
    ChangePointer,
    EventDecodeError,
    decode_attribute_changed,
)
from .models import ResolvedAttribute


logger = logging.getLogger(__name__)


class TraversalFault(RuntimeError):
    """A hop could not be fetched or decoded. Ends the walk, never escapes it."""

    def __init__(self, message: str, stop: "TraversalStop") -> None:
        super().__init__(message)
        self.stop = stop


class TraversalStop(str, Enum):
    ZERO_POINTER = "ZERO_POINTER"
    NO_LOGS = "NO_LOGS"
    FETCH_FAILED = "FETCH_FAILED"
    DECODE_FAILED = "DECODE_FAILED"


@dataclass
class TraversalState:
    cursor: ChangePointer
    reference_timestamp: int
    attributes: List[ResolvedAttribute] = field(default_factory=list)
    visited: List[int] = field(default_factory=list)


@dataclass
class TraversalResult:
    attributes: List[ResolvedAttribute]
    visited: List[int]
    stop: TraversalStop
    reference_timestamp: int


def is_included(event: AttributeChangeEvent, reference_timestamp: int) -> bool:
    # Observed registry resolver behaviour: an attribute is kept when its
    # validTo lies before the head block timestamp.
    return event.valid_to < reference_timestamp


def read_change_pointer(chain: ChainClient, identity: str) -> ChangePointer:
    changed = int(chain.call("changed", identity))
    if changed > MAX_SAFE_INTEGER:
        logger.warning("changed %s for %s exceeds MAX_SAFE_INTEGER", changed, identity)
        raise ValueOverflowError(f"changed value {changed} exceeds MAX_SAFE_INTEGER")
    return ChangePointer(changed)


class HistoryWalker:
    def __init__(self, chain: ChainClient) -> None:
        self.chain = chain

    def resolve(self, identity: str) -> List[ResolvedAttribute]:
        return self.walk(identity).attributes

    def walk(self, identity: str) -> TraversalResult:
        identity = parse_identity(identity)
        head = self.chain.head_block()
        logger.info("block_timestamp: %s", head.timestamp)
        state = TraversalState(
            cursor=read_change_pointer(self.chain, identity),
            reference_timestamp=head.timestamp,
        )

        stop = TraversalStop.ZERO_POINTER
        while state.cursor != 0:
            try:
                events = self._fetch_hop(identity, state)
            except TraversalFault as fault:
                stop = fault.stop
                logger.warning(
                    "History walk for %s truncated at block %s: %s",
                    identity,
                    state.cursor,
                    fault,
                )
                break
            if not events:
                stop = TraversalStop.NO_LOGS
                logger.debug("no logs at block %s", state.cursor)
                break
            state.cursor = events[-1].previous_change
            logger.debug("prev_change: %s", state.cursor)

        if stop is TraversalStop.ZERO_POINTER:
            logger.debug("last change reached for %s", identity)
        return TraversalResult(
            attributes=state.attributes,
            visited=state.visited,
            stop=stop,
            reference_timestamp=state.reference_timestamp,
        )

    def _fetch_hop(self, identity: str, state: TraversalState) -> List[AttributeChangeEvent]:
        """Fetch and decode the events at ``state.cursor``.

        Attributes of events decoded before a failing log in the same block
        are still accumulated.
        """
        log_filter = LogFilter(
            address=self.chain.contract_address,
            topics=(ATTRIBUTE_CHANGED_TOPIC, identity_topic(identity)),
            from_block=state.cursor,
            to_block=state.cursor,
        )
        logger.debug("filter: %s", log_filter)
        state.visited.append(state.cursor)
        try:
            logs = self.chain.get_logs(log_filter)
        except ChainConnectionError as exc:
            raise TraversalFault(str(exc), TraversalStop.FETCH_FAILED) from exc

        events = []
        for log in logs:
            try:
                event = decode_attribute_changed(log)
            except EventDecodeError as exc:
                raise TraversalFault(str(exc), TraversalStop.DECODE_FAILED) from exc
            logger.debug("decoded %s (valid until %s)", event.name, event.valid_to)
            events.append(event)
            if is_included(event, state.reference_timestamp):
                state.attributes.append(
                    ResolvedAttribute(name=event.name, value=event.value_text())
                )
        return events
