"""
Escrow program: the Listing account layout and the list / buy state transitions.

Listing account (81 bytes):

    [0..8)   discriminator  sha256("account:Listing")[:8]
    [8..40)  nft_mint
    [40..72) seller
    [72..80) price, u64 little-endian
    [80]     is_active

A listing address is derived from ["listing", mint] so there is at most one
listing per mint, ever. Once sold it stays on the ledger with is_active = 0.
"""
import enum
import logging
from dataclasses import dataclass
from typing import List, Optional

from solders.instruction import AccountMeta
from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from layouts import parse_token_account
from pda import ESCROW_PROGRAM_ID, ProgramSigner, derive_ata, listing_pda
from runtime import InvokeContext, ProgramError, require_accounts, require_signer
from tx_builder import (
    OPCODE_BUY,
    OPCODE_LIST,
    OPCODE_MINT,
    SYS_PROGRAM_ID,
    build_create_account_ix,
    build_create_ata_ix,
    build_spl_transfer_ix,
    build_system_transfer_ix,
    decode_u64,
    sighash,
)

logger = logging.getLogger("artmint")

LISTING_DISCRIMINATOR = sighash("Listing", namespace="account")
LISTING_LEN = 81
NFT_MINT_OFFSET = 8
SELLER_OFFSET = 40
PRICE_OFFSET = 72
IS_ACTIVE_OFFSET = 80


@dataclass
class Listing:
    nft_mint: Pubkey
    seller: Pubkey
    price: int
    is_active: bool


class ListingState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LISTED = "listed"
    SOLD = "sold"


def encode_listing(listing: Listing) -> bytes:
    return (
        LISTING_DISCRIMINATOR
        + bytes(listing.nft_mint)
        + bytes(listing.seller)
        + listing.price.to_bytes(8, "little")
        + bytes([1 if listing.is_active else 0])
    )


def decode_listing(data: Optional[bytes]) -> Optional[Listing]:
    """None when the bytes are too short or are not a Listing account."""
    if not data or len(data) < LISTING_LEN:
        return None
    if bytes(data[:NFT_MINT_OFFSET]) != LISTING_DISCRIMINATOR:
        return None
    return Listing(
        nft_mint=Pubkey.from_bytes(bytes(data[NFT_MINT_OFFSET:SELLER_OFFSET])),
        seller=Pubkey.from_bytes(bytes(data[SELLER_OFFSET:PRICE_OFFSET])),
        price=decode_u64(bytes(data[PRICE_OFFSET:IS_ACTIVE_OFFSET])),
        is_active=data[IS_ACTIVE_OFFSET] != 0,
    )


def listing_state(data: Optional[bytes]) -> ListingState:
    listing = decode_listing(data)
    if listing is None:
        return ListingState.UNINITIALIZED
    return ListingState.LISTED if listing.is_active else ListingState.SOLD


def _require_key(meta: AccountMeta, expected: Pubkey, code: str) -> None:
    if meta.pubkey != expected:
        raise ProgramError(code, f"expected {expected}, got {meta.pubkey}")


def _process_list(ctx: InvokeContext, accounts: List[AccountMeta], data: bytes) -> None:
    require_accounts(accounts, 9)
    if len(data) != 9:
        raise ProgramError("InvalidInstructionData", "list expects opcode + u64 price")
    price = decode_u64(data[1:9])
    if price == 0:
        raise ProgramError("InvalidPrice", "price must be at least 1 lamport")

    listing_meta, mint_meta, seller_ata_meta, escrow_ata_meta, seller_meta = accounts[:5]
    _require_key(accounts[5], TOKEN_PROGRAM_ID, "IncorrectProgramId")
    _require_key(accounts[6], ASSOCIATED_TOKEN_PROGRAM_ID, "IncorrectProgramId")
    _require_key(accounts[7], SYS_PROGRAM_ID, "IncorrectProgramId")

    mint = mint_meta.pubkey
    seller = seller_meta.pubkey
    listing_address = listing_pda(mint)
    _require_key(listing_meta, listing_address, "InvalidListingAddress")
    _require_key(seller_ata_meta, derive_ata(seller, mint), "InvalidTokenAccount")
    _require_key(escrow_ata_meta, derive_ata(listing_address, mint), "InvalidEscrowAccount")
    require_signer(seller_meta)

    existing = ctx.get(listing_address)
    if existing is not None:
        state = listing_state(existing.data)
        if state is ListingState.LISTED:
            raise ProgramError("AlreadyListed", str(mint))
        if state is ListingState.SOLD:
            raise ProgramError("ListingClosed", "re-listing a sold mint is unsupported")
        raise ProgramError("AccountAlreadyInUse", str(listing_address))

    seller_account = ctx.get(seller_ata_meta.pubkey)
    if seller_account is None or seller_account.owner != TOKEN_PROGRAM_ID:
        raise ProgramError("InvalidTokenAccount", f"{seller_ata_meta.pubkey} is not a token account")
    holding = parse_token_account(seller_account.data)
    if holding.mint != mint or holding.owner != seller or holding.amount != 1:
        raise ProgramError("InsufficientTokenBalance", f"seller must hold exactly 1 of {mint}")

    signer = ProgramSigner.for_listing(mint)
    ctx.invoke(
        build_create_account_ix(seller, listing_address, ctx.rent_exempt(LISTING_LEN), LISTING_LEN, ESCROW_PROGRAM_ID),
        [signer],
    )
    ctx.invoke(build_create_ata_ix(seller, listing_address, mint, escrow_ata_meta.pubkey))
    ctx.invoke(build_spl_transfer_ix(seller_ata_meta.pubkey, escrow_ata_meta.pubkey, seller, 1))
    ctx.write(listing_address, encode_listing(Listing(nft_mint=mint, seller=seller, price=price, is_active=True)))
    logger.info("escrow_listed mint=%s seller=%s price=%s", mint, seller, price)


def _process_buy(ctx: InvokeContext, accounts: List[AccountMeta], data: bytes) -> None:
    require_accounts(accounts, 9)
    if len(data) != 1:
        raise ProgramError("InvalidInstructionData", "buy takes no arguments")

    listing_meta, mint_meta, escrow_ata_meta, buyer_ata_meta, seller_meta, buyer_meta = accounts[:6]
    _require_key(accounts[6], TOKEN_PROGRAM_ID, "IncorrectProgramId")
    _require_key(accounts[7], ASSOCIATED_TOKEN_PROGRAM_ID, "IncorrectProgramId")
    _require_key(accounts[8], SYS_PROGRAM_ID, "IncorrectProgramId")

    account = ctx.get(listing_meta.pubkey)
    if account is None or account.owner != ESCROW_PROGRAM_ID:
        raise ProgramError("InvalidListing", f"{listing_meta.pubkey} is not a listing")
    listing = decode_listing(account.data)
    if listing is None:
        raise ProgramError("InvalidListing", f"{listing_meta.pubkey} is malformed")
    if not listing.is_active:
        raise ProgramError("ListingInactive", f"{listing_meta.pubkey} is not active")

    _require_key(listing_meta, listing_pda(listing.nft_mint), "InvalidListingAddress")
    _require_key(mint_meta, listing.nft_mint, "MintMismatch")
    _require_key(seller_meta, listing.seller, "SellerMismatch")
    buyer = buyer_meta.pubkey
    _require_key(escrow_ata_meta, derive_ata(listing_meta.pubkey, listing.nft_mint), "InvalidEscrowAccount")
    _require_key(buyer_ata_meta, derive_ata(buyer, listing.nft_mint), "InvalidTokenAccount")
    require_signer(buyer_meta)

    # Payment and delivery happen inside this one instruction.
    ctx.invoke(build_create_ata_ix(buyer, buyer, listing.nft_mint, buyer_ata_meta.pubkey))
    ctx.invoke(build_system_transfer_ix(buyer, listing.seller, listing.price))
    ctx.invoke(
        build_spl_transfer_ix(escrow_ata_meta.pubkey, buyer_ata_meta.pubkey, listing_meta.pubkey, 1),
        [ProgramSigner.for_listing(listing.nft_mint)],
    )
    listing.is_active = False
    ctx.write(listing_meta.pubkey, encode_listing(listing))
    logger.info("escrow_sold mint=%s buyer=%s price=%s", listing.nft_mint, buyer, listing.price)


def process_instruction(ctx: InvokeContext, program_id: Pubkey, accounts: List[AccountMeta], data: bytes) -> None:
    if program_id != ESCROW_PROGRAM_ID:
        raise ProgramError("IncorrectProgramId", str(program_id))
    if not data:
        raise ProgramError("InvalidInstructionData", "empty instruction data")
    opcode = data[0]
    if opcode == OPCODE_LIST:
        _process_list(ctx, accounts, data)
    elif opcode == OPCODE_BUY:
        _process_buy(ctx, accounts, data)
    elif opcode == OPCODE_MINT:
        raise ProgramError("UnsupportedInstruction", "minting is not handled by the escrow program")
    else:
        raise ProgramError("InvalidInstructionData", f"unknown opcode {opcode}")
