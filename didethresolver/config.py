from dataclasses import dataclass
from typing import List, Tuple
import os


DID_ETH_REGISTRY = "0xd1D374DDE031075157fDb64536eF5cC13Ae75000"
DATA_LIFETIME = 86400 * 365  # 1 year
REQUIRED_CONFIRMATIONS = 10
# Largest integer a double can hold exactly; chain values above it are rejected.
MAX_SAFE_INTEGER = 2**53 - 1


class ConfigError(RuntimeError):
    pass


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    app_name: str = "did:ethr Registry Resolver"
    chain_mode: str = "mock"
    rpc_url: str = "http://127.0.0.1:8545"
    registry_address: str = DID_ETH_REGISTRY
    public_key: str = ""
    private_key: str = ""
    required_confirmations: int = REQUIRED_CONFIRMATIONS
    data_lifetime: int = DATA_LIFETIME
    confirmation_timeout: float = 600.0
    poll_interval: float = 2.0
    api_key: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            chain_mode=os.getenv("CHAIN_MODE", "mock").lower(),
            rpc_url=os.getenv("RPC_URL", cls.rpc_url),
            registry_address=os.getenv("DID_REGISTRY_ADDRESS", DID_ETH_REGISTRY),
            public_key=os.getenv("PUBLIC_KEY", ""),
            private_key=os.getenv("PRIVATE_KEY", ""),
            required_confirmations=_env_number(
                "REQUIRED_CONFIRMATIONS", REQUIRED_CONFIRMATIONS, int
            ),
            data_lifetime=_env_number("DATA_LIFETIME", DATA_LIFETIME, int),
            confirmation_timeout=_env_number("CONFIRMATION_TIMEOUT", 600.0, float),
            poll_interval=_env_number("POLL_INTERVAL", 2.0, float),
            api_key=os.getenv("API_KEY", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@dataclass(frozen=True)
class Environment:
    rpc_url: str
    public_key: str
    private_key: str
    attributes: List[Tuple[str, str]]


def _require(name: str) -> str:
    value = os.getenv(name)
    if value is None:
        raise ConfigError(f"{name} must be set")
    return value


def parse_attributes(raw: str) -> List[Tuple[str, str]]:
    """Parse ``"key=value, key2=value2"`` into trimmed pairs."""
    pairs = []
    for item in raw.split(","):
        if not item.strip():
            continue
        key, sep, value = item.partition("=")
        if not sep:
            raise ConfigError(f"Malformed attribute entry: {item.strip()!r}")
        pairs.append((key.strip(), value.strip()))
    return pairs


def load_environment() -> Environment:
    attribute = _require("ATTRIBUTE")
    return Environment(
        rpc_url=_require("RPC_URL"),
        public_key=_require("PUBLIC_KEY"),
        private_key=_require("PRIVATE_KEY"),
        attributes=parse_attributes(attribute),
    )


def scram(value: str) -> str:
    return "*" * min(len(value), 10)


def describe_environment(env: Environment) -> List[str]:
    lines = [
        f"rpc_url: {env.rpc_url.split('v2')[0]}",
        f"private_key: {scram(env.private_key)}",
    ]
    for key, value in env.attributes:
        lines.append(f"attribute: {key}={value}")
    return lines

