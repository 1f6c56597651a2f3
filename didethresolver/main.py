from dataclasses import asdict
from typing import List

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .chain_service import (
    ChainConnectionError,
    ChainServiceError,
    TransactionError,
    ValueOverflowError,
    build_chain_client,
)
from .config import Settings
from .did_registry import DidRegistry
from .models import (
    AppInfo,
    ChangedResponse,
    DidDocument,
    OwnerResponse,
    ResolvedAttribute,
    RevokeAttributeRequest,
    SetAttributeRequest,
    TxReceiptModel,
)


load_dotenv()
settings = Settings.from_env()
chain = build_chain_client(settings)
registry = DidRegistry.from_settings(settings, chain)

app = FastAPI(title=settings.app_name)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_registry() -> DidRegistry:
    return registry


def get_settings() -> Settings:
    return settings


def require_api_key(
    x_api_key: str = Header(default=""), current: Settings = Depends(get_settings)
) -> None:
    if current.api_key and x_api_key != current.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


def _http_error(exc: ChainServiceError) -> HTTPException:
    if isinstance(exc, ChainConnectionError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, ValueOverflowError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/api/info", response_model=AppInfo)
def info(
    current: Settings = Depends(get_settings), reg: DidRegistry = Depends(get_registry)
) -> AppInfo:
    return AppInfo(
        chain_mode=current.chain_mode,
        chain_id=reg.chain.chain_id,
        registry_address=reg.contract_address(),
        wallet_address=reg.wallet_address(),
        required_confirmations=reg.required_confirmations,
        api_key_required=bool(current.api_key),
        rpc_url=current.rpc_url.split("v2")[0] if current.chain_mode == "rpc" else None,
    )


@app.get("/api/wallet")
def wallet(reg: DidRegistry = Depends(get_registry)):
    return {"address": reg.wallet_address()}


@app.get("/api/identities/{identity}/owner", response_model=OwnerResponse)
def identity_owner(identity: str, reg: DidRegistry = Depends(get_registry)) -> OwnerResponse:
    try:
        return OwnerResponse(identity=identity, owner=reg.owner(identity))
    except ChainServiceError as exc:
        raise _http_error(exc) from exc


@app.get("/api/identities/{identity}/changed", response_model=ChangedResponse)
def identity_changed(
    identity: str, reg: DidRegistry = Depends(get_registry)
) -> ChangedResponse:
    try:
        return ChangedResponse(identity=identity, changed=reg.changed(identity))
    except ChainServiceError as exc:
        raise _http_error(exc) from exc


@app.get("/api/identities/{identity}/attributes", response_model=List[ResolvedAttribute])
def identity_attributes(
    identity: str, reg: DidRegistry = Depends(get_registry)
) -> List[ResolvedAttribute]:
    try:
        return reg.resolve_attributes(identity)
    except ChainServiceError as exc:
        raise _http_error(exc) from exc


@app.get("/api/identities/{identity}/document", response_model=DidDocument)
def identity_document(identity: str, reg: DidRegistry = Depends(get_registry)) -> DidDocument:
    try:
        return reg.resolve_document(identity)
    except ChainServiceError as exc:
        raise _http_error(exc) from exc


@app.post("/api/attributes", response_model=TxReceiptModel)
def set_attribute(
    payload: SetAttributeRequest,
    reg: DidRegistry = Depends(get_registry),
    _: None = Depends(require_api_key),
) -> TxReceiptModel:
    try:
        receipt = reg.set_attribute(payload.name, payload.value, payload.validity)
    except TransactionError as exc:
        raise _http_error(exc) from exc
    return TxReceiptModel(**asdict(receipt))


@app.post("/api/attributes/revoke", response_model=TxReceiptModel)
def revoke_attribute(
    payload: RevokeAttributeRequest,
    reg: DidRegistry = Depends(get_registry),
    _: None = Depends(require_api_key),
) -> TxReceiptModel:
    try:
        receipt = reg.revoke_attribute(payload.name, payload.value)
    except TransactionError as exc:
        raise _http_error(exc) from exc
    return TxReceiptModel(**asdict(receipt))
