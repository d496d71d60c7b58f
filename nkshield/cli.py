"""CLI entrypoint for the nkshield service."""

import argparse
import asyncio
import getpass
import json
import logging
import sys

from aiohttp import web

from nkshield.app import create_app
from nkshield.auth import set_admin_password
from nkshield.blocklist import BLOCK_TTL, MAX_BLOCK_TTL, MIN_BLOCK_TTL, BlocklistStore
from nkshield.config import ServiceConfig, load_config
from nkshield.errors import StoreUnavailableError, ValidationError
from nkshield.honeytokens import seed_honeytokens
from nkshield.identity import hash_ip
from nkshield.logging_setup import setup_logging
from nkshield.scoring import ThreatScorer
from nkshield.store import create_store

logger = setup_logging()

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_STORE_UNAVAILABLE = 2


def _open_store(config: ServiceConfig):
    if not config.redis_url:
        logger.warning("REDIS_URL is not set; changes only affect a throwaway in-memory store")
    return create_store(config.redis_url)


def serve_command(args: argparse.Namespace, config: ServiceConfig) -> int:
    """Run the HTTP service until interrupted."""
    host = args.host or config.listen_host
    port = args.port or config.listen_port
    store_kind = "redis" if config.redis_url else "in-memory"
    logger.info(f"Starting nkshield on {host}:{port} ({store_kind} store)")
    web.run_app(create_app(config), host=host, port=port, print=None)
    return EXIT_OK


async def seed_command(args: argparse.Namespace, config: ServiceConfig) -> int:
    store = _open_store(config)
    try:
        seeded = await seed_honeytokens(store)
    finally:
        await store.close()
    logger.info(f"Seeded {seeded} honeytoken(s)")
    return EXIT_OK


def hash_ip_command(args: argparse.Namespace, config: ServiceConfig) -> int:
    print(hash_ip(args.ip, config.rate_limit_salt))
    return EXIT_OK


async def block_command(args: argparse.Namespace, config: ServiceConfig) -> int:
    if not MIN_BLOCK_TTL <= args.ttl <= MAX_BLOCK_TTL:
        logger.error(f"--ttl must be between {MIN_BLOCK_TTL} and {MAX_BLOCK_TTL}")
        return EXIT_USAGE
    store = _open_store(config)
    try:
        await BlocklistStore(store).block_ip(args.hashed_ip, reason=args.reason, ttl_seconds=args.ttl)
    finally:
        await store.close()
    logger.info(f"Blocked {args.hashed_ip[:12]} for {args.ttl}s")
    return EXIT_OK


async def unblock_command(args: argparse.Namespace, config: ServiceConfig) -> int:
    store = _open_store(config)
    try:
        await BlocklistStore(store).unblock_ip(args.hashed_ip)
        await ThreatScorer(store).reset(args.hashed_ip)
    finally:
        await store.close()
    logger.info(f"Unblocked {args.hashed_ip[:12]}")
    return EXIT_OK


async def list_blocked_command(args: argparse.Namespace, config: ServiceConfig) -> int:
    store = _open_store(config)
    try:
        entries = await BlocklistStore(store).get_all_blocked()
    finally:
        await store.close()
    print(json.dumps([e.to_dict() for e in entries], indent=2))
    return EXIT_OK


async def set_password_command(args: argparse.Namespace, config: ServiceConfig) -> int:
    password = args.password or getpass.getpass("New admin password: ")
    store = _open_store(config)
    try:
        await set_admin_password(store, password)
    except ValidationError as e:
        logger.error(str(e))
        return EXIT_USAGE
    finally:
        await store.close()
    return EXIT_OK


# Registry of async store commands
COMMAND_REGISTRY = {
    "seed-honeytokens": seed_command,
    "block": block_command,
    "unblock": unblock_command,
    "list-blocked": list_blocked_command,
    "set-password": set_password_command,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="nkshield adaptive bot defense")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host", default=None, help="Listen address (default: LISTEN_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Listen port (default: LISTEN_PORT)")

    sub.add_parser("seed-honeytokens", help="Write honeytoken decoys where absent")

    hash_cmd = sub.add_parser("hash-ip", help="Print the salted hash of an IP address")
    hash_cmd.add_argument("ip")

    block = sub.add_parser("block", help="Hard block a hashed identity")
    block.add_argument("hashed_ip")
    block.add_argument("--reason", default="manual", help="Block reason")
    block.add_argument("--ttl", type=int, default=BLOCK_TTL, help="Block lifetime in seconds")

    unblock = sub.add_parser("unblock", help="Remove a hard block")
    unblock.add_argument("hashed_ip")

    sub.add_parser("list-blocked", help="List active hard blocks as JSON")

    password = sub.add_parser("set-password", help="Set the admin password")
    password.add_argument("--password", default=None, help="Password (prompted when omitted)")

    return parser


def run(argv: list[str] | None = None) -> int:
    """
    Parse arguments and run a command.

    Returns:
        Exit code (0 = success, 1 = usage error, 2 = store unavailable)
    """
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse exits 2 on bad usage; --help exits 0
        return EXIT_USAGE if e.code else EXIT_OK
    if args.debug:
        logger.setLevel(logging.DEBUG)

    if args.command is None:
        parser.print_help()
        return EXIT_USAGE

    try:
        config = load_config()
    except (KeyError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_USAGE

    if args.command == "serve":
        return serve_command(args, config)
    if args.command == "hash-ip":
        return hash_ip_command(args, config)

    command = COMMAND_REGISTRY[args.command]
    try:
        return asyncio.run(command(args, config))
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable: {e}")
        return EXIT_STORE_UNAVAILABLE


def main() -> None:
    """Main CLI entrypoint."""
    sys.exit(run())


if __name__ == "__main__":
    main()
