#!/usr/bin/env python3
"""Simple CLI for driving Relay quotes locally"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from relaykit.config import settings
from relaykit.core.execution import (
    BatchSubmitMode,
    ExecutionError,
    ExecutionOptions,
    GaslessBatchExecutor,
    ProgressData,
    create_calibur_executor,
    execute,
)
from relaykit.logging_config import setup_logging
from relaykit.providers import RelayStatusSocket, get_relay_provider
from relaykit.wallets import EvmWallet


def load_json(path: str) -> Dict[str, Any]:
    if path == "-":
        return json.load(sys.stdin)
    return json.loads(Path(path).read_text())


def print_progress(progress: ProgressData) -> None:
    """Pretty print one progress snapshot"""
    step, item = progress.current_step, progress.current_step_item
    if progress.error is not None:
        print(f"❌ {progress.error}")
        return
    if step is None:
        print("✅ All steps complete")
        return

    state = item.progress_state.value if item and item.progress_state else "pending"
    print(f"➡️  {step.id} [{step.kind.value}] {state}")
    for tx in progress.tx_hashes:
        print(f"   tx {tx.tx_hash} (chain {tx.chain_id})")


async def cli_quote(payload_path: str) -> None:
    """Request a quote and print it"""
    quote = await get_relay_provider().quote(load_json(payload_path))
    print(json.dumps(quote, indent=2))


async def cli_status(request_id: str) -> None:
    status = await get_relay_provider().get_status(request_id)
    print(json.dumps(status, indent=2))


async def cli_fast_fill(request_id: str, amount: Optional[str]) -> None:
    result = await get_relay_provider().fast_fill(request_id, amount)
    print(json.dumps(result, indent=2))


async def cli_execute(
    quote_path: str,
    chain_id: int,
    rpc_url: Optional[str],
    key_env: str,
    fast_fill: bool,
    gasless: Optional[str],
    websocket: bool = False,
) -> None:
    """Execute a saved quote with a local key wallet"""
    private_key = os.environ.get(key_env)
    if not private_key:
        raise ValueError(f"Set {key_env} to the signing key")

    wallet = EvmWallet(private_key, chain_id=chain_id, rpc_url=rpc_url)
    options = ExecutionOptions(on_progress=print_progress, fast_fill=fast_fill, enrich_request_metadata=True)
    if gasless:
        options.batch_executor = GaslessBatchExecutor(
            create_calibur_executor(),
            mode=BatchSubmitMode(gasless),
            rpc=wallet.rpc(chain_id),
        )
    if websocket:
        options.status_socket = RelayStatusSocket()

    print(f"🚀 Executing quote from {quote_path} as {wallet.account.address}...")
    try:
        quote = await execute(load_json(quote_path), wallet, options=options)
    finally:
        await wallet.close()

    print("\nFinal state:")
    print(json.dumps(quote.to_dict(), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Relay quote execution CLI")
    parser.add_argument("--log-level", default=None, help=f"Log level (default: {settings.log_level})")
    subparsers = parser.add_subparsers(dest="command")

    quote_parser = subparsers.add_parser("quote", help="Request a quote")
    quote_parser.add_argument("payload", help="Quote request JSON file ('-' for stdin)")

    status_parser = subparsers.add_parser("status", help="Show the status of a request")
    status_parser.add_argument("request_id", help="Request id")

    execute_parser = subparsers.add_parser("execute", help="Execute a saved quote")
    execute_parser.add_argument("quote", help="Quote JSON file ('-' for stdin)")
    execute_parser.add_argument("--chain-id", type=int, required=True, help="Origin chain id")
    execute_parser.add_argument("--rpc-url", help="Origin chain RPC URL (default: RPC_URLS setting)")
    execute_parser.add_argument("--key-env", default="PRIVATE_KEY", help="Environment variable holding the key")
    execute_parser.add_argument("--fast-fill", action="store_true", help="Request fast-fill after the deposit")
    execute_parser.add_argument(
        "--gasless",
        choices=[mode.value for mode in BatchSubmitMode],
        help="Batch transaction steps through Calibur",
    )
    execute_parser.add_argument(
        "--websocket", action="store_true", help="Follow solver status over WebSocket, polling as fallback"
    )

    fast_fill_parser = subparsers.add_parser("fast-fill", help="Request fast-fill for a request")
    fast_fill_parser.add_argument("request_id", help="Request id")
    fast_fill_parser.add_argument("--amount", help="Solver input currency amount")

    return parser


async def main():
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.log_level)

    if not args.command:
        parser.print_help()
        return

    command = args.command.lower()

    try:
        if command == "quote":
            await cli_quote(args.payload)

        elif command == "status":
            await cli_status(args.request_id)

        elif command == "execute":
            await cli_execute(
                args.quote, args.chain_id, args.rpc_url, args.key_env, args.fast_fill, args.gasless, args.websocket
            )

        elif command == "fast-fill":
            await cli_fast_fill(args.request_id, args.amount)

        else:
            print(f"❌ Unknown command: {command}")
            parser.print_help()
    except (ExecutionError, ValueError) as e:
        print(f"❌ Error: {e}")
        sys.exit(1)
    finally:
        await get_relay_provider().close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
