from typing import List, Optional
from pydantic import BaseModel, Field

from .config import DATA_LIFETIME


class ResolvedAttribute(BaseModel):
    name: str
    value: str


class DidDocument(BaseModel):
    id: str
    controller: str
    attributes: List[ResolvedAttribute] = Field(default_factory=list)


class TxReceiptModel(BaseModel):
    tx_hash: str
    block_number: int
    status: int
    gas_used: int
    confirmations: int


class SetAttributeRequest(BaseModel):
    name: str = Field(min_length=1)
    value: str
    validity: int = Field(default=DATA_LIFETIME, ge=0)


class RevokeAttributeRequest(BaseModel):
    name: str = Field(min_length=1)
    value: str


class OwnerResponse(BaseModel):
    identity: str
    owner: str


class ChangedResponse(BaseModel):
    identity: str
    changed: int


class AppInfo(BaseModel):
    chain_mode: str
    chain_id: int
    registry_address: str
    wallet_address: str
    required_confirmations: int
    api_key_required: bool
    rpc_url: Optional[str] = None
