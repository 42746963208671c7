"""Print the on-ledger state of an NFT: mint, metadata, edition and listing."""
import argparse
import sys
from typing import List, Optional

from solders.pubkey import Pubkey

from errors import MarketplaceError
from escrow_program import decode_listing, listing_state
from layouts import parse_master_edition, parse_metadata, parse_mint
from ledger import Ledger, RpcLedger
from pda import listing_pda, master_edition_pda, metadata_pda
from settings import Settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("mint", help="mint address (base58)")
    parser.add_argument("--rpc", help="RPC URL; defaults to HELIUS_RPC_URL or SOLANA_RPC")
    return parser


def inspect(ledger: Ledger, mint: Pubkey) -> List[str]:
    lines = [f"Mint: {mint}"]
    account = ledger.get_account(mint)
    if account is None:
        lines.append("Mint account not found on-chain")
        return lines
    parsed = parse_mint(account.data)
    lines.append(f"Mint Authority: {parsed.mint_authority}")
    lines.append(f"Freeze Authority: {parsed.freeze_authority}")
    lines.append(f"Decimals: {parsed.decimals} Supply: {parsed.supply} Initialized: {parsed.is_initialized}")

    edition_address = master_edition_pda(mint)
    if parsed.mint_authority is None:
        lines.append("Mint authority is None (supply is fixed)")
    elif parsed.mint_authority == edition_address:
        lines.append("Mint authority is the master edition (supply is fixed)")

    metadata_account = ledger.get_account(metadata_pda(mint))
    metadata = parse_metadata(metadata_account.data) if metadata_account else None
    if metadata is None:
        lines.append("Metadata: none")
    else:
        lines.append(f"Name: {metadata.name} Symbol: {metadata.symbol}")
        lines.append(f"URI: {metadata.uri}")
        lines.append(f"Update Authority: {metadata.update_authority}")

    edition_account = ledger.get_account(edition_address)
    edition = parse_master_edition(edition_account.data) if edition_account else None
    if edition is not None:
        lines.append(f"Master Edition: {edition_address} max_supply={edition.max_supply}")

    listing_address = listing_pda(mint)
    listing_account = ledger.get_account(listing_address)
    data = listing_account.data if listing_account else None
    lines.append(f"Listing: {listing_address} ({listing_state(data).value})")
    listing = decode_listing(data)
    if listing is not None:
        lines.append(f"Seller: {listing.seller} Price: {listing.price} lamports")
    return lines


def main(argv: Optional[List[str]] = None, ledger: Optional[Ledger] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        mint = Pubkey.from_string(args.mint)
    except Exception:  # noqa: BLE001
        print(f"Invalid mint address: {args.mint}")
        return 2
    if ledger is None:
        settings = Settings()
        if args.rpc:
            settings.solana_rpc = args.rpc
            settings.helius_rpc_url = ""
        print(f"RPC: {settings.rpc_url}")
        ledger = RpcLedger.from_settings(settings)
    try:
        for line in inspect(ledger, mint):
            print(line)
    except MarketplaceError as exc:
        print(f"RPC error: {exc.message}")
        return 1
    except ValueError as exc:
        print(f"Not a mint account: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
