"""Decoding of ``DIDAttributeChanged`` log payloads.

The non-indexed part of the event is ABI encoded as
``(bytes32 name, bytes value, uint256 validTo, uint256 previousChange)``;
the identity travels as the first indexed topic.
"""

from dataclasses import dataclass
from typing import NewType

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from .chain_service import ATTRIBUTE_CHANGED_DATA_TYPES, RawLog
from .config import MAX_SAFE_INTEGER


ChangePointer = NewType("ChangePointer", int)


class EventDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class AttributeChangeEvent:
    identity: str
    name: str
    value: bytes
    valid_to: int
    previous_change: ChangePointer
    block_number: int = 0
    log_index: int = 0

    def value_text(self) -> str:
        try:
            return self.value.decode("utf-8")
        except UnicodeDecodeError:
            return "0x" + self.value.hex()


def decode_name(name: bytes) -> str:
    try:
        return name.rstrip(b"\x00").decode("utf-8")
    except UnicodeDecodeError as exc:
        raise EventDecodeError(f"Attribute name is not UTF-8: 0x{name.hex()}") from exc


def _safe_uint(label: str, value: int) -> int:
    if value > MAX_SAFE_INTEGER:
        raise EventDecodeError(f"{label} {value} exceeds MAX_SAFE_INTEGER")
    return value


def decode_attribute_changed(log: RawLog) -> AttributeChangeEvent:
    """Decode one raw log into an :class:`AttributeChangeEvent`.

    Raises :class:`EventDecodeError` for a missing identity topic, a payload
    that does not match the event layout, a non UTF-8 name or an integer
    field above ``MAX_SAFE_INTEGER``.
    """
    if len(log.topics) < 2 or len(log.topics[1]) != 32:
        raise EventDecodeError("Missing indexed identity topic")
    identity = to_checksum_address(log.topics[1][-20:])

    try:
        name, value, valid_to, previous_change = abi_decode(
            ATTRIBUTE_CHANGED_DATA_TYPES, log.data
        )
    except (DecodingError, ValueError, TypeError) as exc:
        raise EventDecodeError(f"Undecodable DIDAttributeChanged payload: {exc}") from exc

    return AttributeChangeEvent(
        identity=identity,
        name=decode_name(name),
        value=bytes(value),
        valid_to=_safe_uint("validTo", valid_to),
        previous_change=ChangePointer(_safe_uint("previousChange", previous_change)),
        block_number=log.block_number,
        log_index=log.log_index,
    )
