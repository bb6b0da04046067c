#!/usr/bin/env python3
"""
Derive (and optionally verify) a committee multisig address.

Computes the multisig account for a signatory set and threshold offline. With
--expected the result is compared against a known address; with --bounty and
--rpc-url it is compared against the bounty's effective multisig on chain.

Usage:
    python scripts/derive_multisig.py --threshold 2 ADDR1 ADDR2 ADDR3
    python scripts/derive_multisig.py --threshold 2 --network kusama ADDR1 ADDR2
    python scripts/derive_multisig.py --threshold 2 --bounty 17 --rpc-url wss://... ADDR1 ADDR2 ADDR3
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from rich.console import Console
from rich.table import Table

from services.discovery_service import StructureDiscoverer, SubstrateChainReader
from utils.error_handling import MultisigServiceError
from utils.multisig_utils import derive_multisig_address, sort_signatories, validate_multisig_config
from utils.ss58_utils import NETWORK_PREFIXES, convert_address

console = Console()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Derive a multisig address from signatories and a threshold")
    parser.add_argument("signatories", nargs="+", help="Signatory addresses (any SS58 prefix)")
    parser.add_argument("--threshold", type=int, required=True, help="Number of approvals required")
    parser.add_argument("--network", choices=sorted(NETWORK_PREFIXES), default="polkadot",
                        help="Network whose SS58 prefix is used for output (default: polkadot)")
    parser.add_argument("--expected", help="Address the derived multisig must match")
    parser.add_argument("--bounty", type=int, help="Bounty id whose effective multisig must match")
    parser.add_argument("--rpc-url", default=os.environ.get("CHAIN_RPC_URL"),
                        help="Chain RPC endpoint for --bounty (default: $CHAIN_RPC_URL)")
    args = parser.parse_args(argv)

    prefix = NETWORK_PREFIXES[args.network]

    try:
        address = derive_multisig_address(args.signatories, args.threshold, prefix)
    except MultisigServiceError as e:
        console.print(f"Error: {e.message}", style="bold red")
        return 1

    table = Table(title=f"Multisig ({args.threshold} of {len(args.signatories)}, {args.network})")
    table.add_column("Component", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Multisig Address", address)
    table.add_row("Threshold", str(args.threshold))
    for i, signatory in enumerate(sort_signatories(args.signatories), 1):
        table.add_row(f"Signatory {i}", convert_address(signatory, prefix))
    console.print(table)

    expected = args.expected
    if args.bounty is not None:
        if not args.rpc_url:
            console.print("Error: --bounty needs --rpc-url or CHAIN_RPC_URL", style="bold red")
            return 1
        reader = SubstrateChainReader(args.rpc_url, ss58_format=prefix)
        try:
            structure = StructureDiscoverer(reader, prefix=prefix, cache_ttl=0).discover(args.bounty)
        except MultisigServiceError as e:
            console.print(f"Error: {e.message}", style="bold red")
            return 1
        finally:
            reader.close()
        if structure is None:
            console.print(f"Bounty {args.bounty} not found or has no curator", style="bold red")
            return 1
        console.print(f"Bounty {args.bounty} curator: {structure.curator}")
        if structure.controlling_multisig:
            console.print(f"Controlled via {structure.proxy_type} proxy by {structure.controlling_multisig}")
        expected = structure.effective_multisig

    if expected:
        result = validate_multisig_config(expected, args.signatories, args.threshold, prefix)
        if result.valid:
            console.print(f"Match: {result.computed_address}", style="bold green")
        else:
            console.print(f"Mismatch: {result.error}", style="bold red")
            console.print(f"  computed: {result.computed_address}")
            console.print(f"  expected: {result.expected_address}")
            return 2

    return 0


if __name__ == "__main__":
    sys.exit(main())
