from typing import List, Optional
import argparse
import json
import logging
import sys

from dotenv import load_dotenv

from .chain_service import ChainServiceError, build_chain_client
from .config import ConfigError, Environment, Settings, describe_environment, load_environment
from .did_registry import DidRegistry


logger = logging.getLogger(__name__)


def _connect(settings: Settings) -> DidRegistry:
    return DidRegistry.from_settings(settings, build_chain_client(settings))


def profile(registry: DidRegistry, env: Environment) -> None:
    owner = registry.owner(env.public_key)
    print(f"owner: {owner}")
    for attribute in registry.resolve_attributes(owner):
        print(f"attribute - key: {attribute.name}, value: {attribute.value}")


def set_attributes(registry: DidRegistry, env: Environment) -> None:
    print(f"sender: {registry.wallet_address()}")
    for key, value in env.attributes:
        print(f"set_attribute - key: {key}, value: {value}")
        receipt = registry.set_attribute(key, value)
        print(f"tx: {receipt.tx_hash} block: {receipt.block_number}")


def revoke_attributes(registry: DidRegistry, env: Environment) -> None:
    print(f"sender: {registry.wallet_address()}")
    print(f"owner: {registry.owner(env.public_key)}")
    for key, value in env.attributes:
        print(f"revoke_attribute - key: {key}, value: {value}")
        receipt = registry.revoke_attribute(key, value)
        print(f"tx: {receipt.tx_hash} block: {receipt.block_number}")


def document(registry: DidRegistry, env: Environment) -> None:
    did_document = registry.resolve_document(env.public_key)
    print(json.dumps(did_document.model_dump(), indent=2))


COMMANDS = {
    "profile": profile,
    "set": set_attributes,
    "revoke": revoke_attributes,
    "document": document,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="didethresolver", description="did:ethr registry resolver"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("profile", help="print owner and resolved attributes of PUBLIC_KEY")
    subparsers.add_parser("set", help="write every ATTRIBUTE pair for the wallet identity")
    subparsers.add_parser("revoke", help="revoke every ATTRIBUTE pair for the wallet identity")
    subparsers.add_parser("document", help="print the DID document of PUBLIC_KEY as JSON")
    serve = subparsers.add_parser("serve", help="run the HTTP resolver")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()
    try:
        settings = Settings.from_env()
    except ConfigError as exc:
        logger.error("invalid configuration: %s", exc)
        return 1
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        import uvicorn

        uvicorn.run("didethresolver.main:app", host=args.host, port=args.port)
        return 0

    try:
        env = load_environment()
        for line in describe_environment(env):
            print(line)
        COMMANDS[args.command](_connect(settings), env)
    except (ConfigError, ChainServiceError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
