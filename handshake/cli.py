"""CLI entrypoints for handshake service operational tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence
from datetime import UTC, datetime

from handshake.config import configure_structlog, get_settings
from handshake.core.signing_keys import get_signing_key_service
from handshake.db.session import dispose_engine, get_session_factory
from handshake.services.challenge_service import get_challenge_service
from handshake.services.sweeper import get_sweeper


async def _run_rotate_signing_key() -> int:
    """Mint a new signing key; earlier keys stay valid until their windows close."""
    signing_key_service = get_signing_key_service()
    session_factory = get_session_factory()

    try:
        async with session_factory() as db_session:
            material = await signing_key_service.rotate(db_session, datetime.now(UTC))
            await db_session.commit()
    finally:
        await dispose_engine()

    print(
        json.dumps(
            {
                "kid": material.kid,
                "valid_from": material.valid_from.isoformat(),
                "valid_until": material.valid_until.isoformat(),
            }
        )
    )
    return 0


async def _run_sweep() -> int:
    """Apply pending time-based failures once and report what changed."""
    try:
        report = await get_sweeper().sweep_once()
    finally:
        await get_challenge_service().aclose()
        await dispose_engine()

    print(
        json.dumps(
            {
                "expired_challenges": [str(item) for item in report.expired_challenges],
                "stalled_uploads": [str(item) for item in report.stalled_uploads],
                "failed_streams": [str(item) for item in report.failed_streams],
                "signing_kid": report.signing_kid,
            }
        )
    )
    return 0


def _build_parser() -> argparse.ArgumentParser:
    """Build command-line parser for supported operational commands."""
    parser = argparse.ArgumentParser(prog="python -m handshake.cli")
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("rotate-signing-key", help="Mint a new acceptance signing key.")
    subcommands.add_parser("sweep", help="Run one sweep of expiry and stall checks.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_structlog(get_settings())
    if args.command == "rotate-signing-key":
        return asyncio.run(_run_rotate_signing_key())
    if args.command == "sweep":
        return asyncio.run(_run_sweep())
    parser.error("Unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
