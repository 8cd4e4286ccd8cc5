#!/usr/bin/env python3
"""
Simple launcher script for the vault swap engine.
"""
import argparse
import asyncio
import json
import sys

from vaultswap.main import main
from vaultswap.orchestrator import DIRECTIONS, SwapRequest


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Vault swap engine')
    subparsers = parser.add_subparsers(dest='command', required=True)

    execute = subparsers.add_parser('execute', help='Execute one swap for a strategy ledger')
    execute.add_argument('--owner', help='Vault owner address')
    execute.add_argument('--strategy', help='Strategy (trader) id used in the ledger seeds')
    execute.add_argument('--ledger', help='Strategy ledger address (instead of --owner/--strategy)')
    execute.add_argument('--direction', choices=sorted(DIRECTIONS), help='Shortcut for a SOL/USDC pair')
    execute.add_argument('--input-mint', help='Input asset mint')
    execute.add_argument('--output-mint', help='Output asset mint')
    execute.add_argument('--amount', type=float, help='Amount in human units (SOL/USDC)')
    execute.add_argument('--raw-amount', type=int, help='Amount in raw token units')
    execute.add_argument('--slippage-bps', type=int, help='Slippage in basis points (capped by MAX_SLIPPAGE_BPS)')
    execute.add_argument('--dry-run', action='store_true', help='Stop after a successful simulation')
    return parser


def request_from_args(args: argparse.Namespace) -> SwapRequest:
    return SwapRequest(
        owner=args.owner,
        strategy_id=args.strategy,
        ledger=args.ledger,
        direction=args.direction,
        input_asset=args.input_mint,
        output_asset=args.output_mint,
        amount=args.raw_amount,
        ui_amount=args.amount,
        slippage_bps=args.slippage_bps,
        dry_run=args.dry_run,
    )


if __name__ == '__main__':
    args = build_parser().parse_args()

    try:
        output = asyncio.run(main(request_from_args(args)))
    except KeyboardInterrupt:
        print("\nStopped by user")
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(output, indent=2))
    sys.exit(0 if output.get("success") else 1)
