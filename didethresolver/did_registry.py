from typing import List, Optional
import logging

from .chain_service import ChainClient, TxReceipt, encode_name, parse_identity
from .config import DATA_LIFETIME, REQUIRED_CONFIRMATIONS, Settings
from .event_decoder import ChangePointer
from .history import HistoryWalker, read_change_pointer
from .models import DidDocument, ResolvedAttribute


logger = logging.getLogger(__name__)


class DidRegistry:
    def __init__(
        self,
        chain: ChainClient,
        required_confirmations: int = REQUIRED_CONFIRMATIONS,
        data_lifetime: int = DATA_LIFETIME,
    ) -> None:
        self.chain = chain
        self.required_confirmations = required_confirmations
        self.data_lifetime = data_lifetime
        self.walker = HistoryWalker(chain)

    @classmethod
    def from_settings(cls, settings: Settings, chain: ChainClient) -> "DidRegistry":
        return cls(
            chain,
            required_confirmations=settings.required_confirmations,
            data_lifetime=settings.data_lifetime,
        )

    def owner(self, identity: str) -> str:
        identity = parse_identity(identity)
        logger.debug("ID: %s", identity)
        owner = parse_identity(self.chain.call("identityOwner", identity))
        logger.info("Owner: %s", owner)
        return owner

    def changed(self, identity: str) -> ChangePointer:
        identity = parse_identity(identity)
        changed = read_change_pointer(self.chain, identity)
        logger.info("Changed: %s", changed)
        return changed

    def set_attribute(self, name: str, value: str, validity: Optional[int] = None) -> TxReceipt:
        """Write ``name=value`` for the wallet's own identity.

        ``name`` is stored as bytes32: names longer than 32 UTF-8 bytes are
        silently truncated. Blocks until the configured confirmations are seen.
        """
        if validity is None:
            validity = self.data_lifetime
        receipt = self.chain.transact(
            "setAttribute",
            self.chain.address,
            encode_name(name),
            value.encode("utf-8"),
            validity,
            confirmations=self.required_confirmations,
        )
        logger.info("Receipt: %s", receipt)
        return receipt

    def revoke_attribute(self, name: str, value: str) -> TxReceipt:
        receipt = self.chain.transact(
            "revokeAttribute",
            self.chain.address,
            encode_name(name),
            value.encode("utf-8"),
            confirmations=self.required_confirmations,
        )
        logger.info("Receipt: %s", receipt)
        return receipt

    def wallet_address(self) -> str:
        return self.chain.address

    def contract_address(self) -> str:
        return self.chain.contract_address

    def resolve_attributes(self, identity: str) -> List[ResolvedAttribute]:
        return self.walker.resolve(identity)

    def resolve_document(self, identity: str) -> DidDocument:
        identity = parse_identity(identity)
        return DidDocument(
            id=f"did:ethr:{identity}",
            controller=f"did:ethr:{self.owner(identity)}",
            attributes=self.resolve_attributes(identity),
        )
