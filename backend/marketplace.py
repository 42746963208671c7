"""
Mint / list / buy flows.

Each flow validates its inputs, reads whatever ledger state it needs, builds the
instructions and submits them in a single transaction. The ledger executes the
batch all-or-nothing, so a flow either returns a complete result or raises a
MarketplaceError subclass with nothing applied.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID

from errors import (
    InstructionBuildFailure,
    InvalidInput,
    LedgerSubmissionFailure,
    MarketplaceError,
    StateViolation,
)
from escrow_program import LISTING_LEN, Listing, ListingState, decode_listing, listing_state
from layouts import (
    MAX_MASTER_EDITION_LEN,
    MAX_METADATA_LEN,
    MINT_LEN,
    TOKEN_ACCOUNT_LEN,
    parse_metadata,
    parse_mint,
    parse_token_account,
)
from ledger import Ledger
from pda import ESCROW_PROGRAM_ID, derive_ata, listing_pda, master_edition_pda, metadata_pda
from signatures import SignatureVerifier
from submitter import PreparedTransaction, prepare_transaction, submit_transaction
from tx_builder import (
    LAMPORTS_PER_SIGNATURE,
    U64_MAX,
    build_buy_nft_ix,
    build_list_nft_ix,
    build_mint_nft_ixs,
    validate_metadata_fields,
)

logger = logging.getLogger("artmint")


@dataclass
class MintRequest:
    name: str
    symbol: str
    uri: str
    creator: str
    signature: str
    message: str


@dataclass
class MintResult:
    mint: str
    signature: str
    token_account: str
    metadata: str
    master_edition: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ListResult:
    listing: str
    escrow_token_account: str
    mint: str
    seller: str
    price: int
    signature: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BuyResult:
    listing: str
    mint: str
    buyer: str
    seller: str
    price: int
    buyer_token_account: str
    signature: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class NftDetails:
    mint: str
    supply: int
    decimals: int
    mint_authority: Optional[str]
    name: Optional[str]
    symbol: Optional[str]
    uri: Optional[str]
    update_authority: Optional[str]
    listing: str
    listing_state: str
    price: Optional[int]
    seller: Optional[str]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FeeEstimate:
    mint_account_rent: int
    token_account_rent: int
    metadata_rent: int
    master_edition_rent: int
    mint_transaction_fee: int
    mint_total: int
    list_fee: int
    buy_fee: int

    def to_dict(self) -> dict:
        return asdict(self)


def parse_pubkey(value: str, field: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except Exception as exc:  # noqa: BLE001
        raise InvalidInput(f"Invalid {field} address: {value!r}") from exc


def validate_price(price: int) -> int:
    if isinstance(price, bool) or not isinstance(price, int):
        raise InvalidInput("price must be an integer number of lamports")
    if not 1 <= price <= U64_MAX:
        raise InvalidInput(f"price must be between 1 and {U64_MAX} lamports")
    return price


def mint_nft(
    ledger: Ledger,
    service: Keypair,
    request: MintRequest,
    verifier: SignatureVerifier,
    mint_keypair: Optional[Keypair] = None,
) -> MintResult:
    validate_metadata_fields(request.name, request.symbol, request.uri)
    creator = parse_pubkey(request.creator, "creator")
    verifier.require(request.message.encode(), request.signature, creator)

    mint_kp = mint_keypair or Keypair()
    mint = mint_kp.pubkey()
    rent = ledger.get_minimum_balance_for_rent_exemption(MINT_LEN)
    try:
        ixs = build_mint_nft_ixs(service.pubkey(), mint, creator, request.name, request.symbol, request.uri, rent)
    except MarketplaceError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise InstructionBuildFailure(f"Failed to build mint instructions: {exc}") from exc

    signature = submit_transaction(ledger, ixs, service, [mint_kp])
    logger.info("mint_submitted mint=%s creator=%s sig=%s", mint, creator, signature)
    return MintResult(
        mint=str(mint),
        signature=str(signature),
        token_account=str(derive_ata(creator, mint)),
        metadata=str(metadata_pda(mint)),
        master_edition=str(master_edition_pda(mint)),
    )


def fetch_listing(ledger: Ledger, mint: Pubkey) -> Optional[Listing]:
    account = ledger.get_account(listing_pda(mint))
    if account is None:
        return None
    return decode_listing(account.data)


def _ensure_listable(ledger: Ledger, seller: Pubkey, mint: Pubkey) -> None:
    listing = ledger.get_account(listing_pda(mint))
    if listing is not None:
        state = listing_state(listing.data)
        if state is ListingState.LISTED:
            raise StateViolation(f"NFT {mint} is already listed")
        if state is ListingState.SOLD:
            raise StateViolation(f"NFT {mint} was already sold through its listing; re-listing is unsupported")
        raise StateViolation(f"Listing address for {mint} holds unexpected data")
    holding = ledger.get_account(derive_ata(seller, mint))
    if holding is None or holding.owner != TOKEN_PROGRAM_ID or len(holding.data) < TOKEN_ACCOUNT_LEN:
        raise StateViolation(f"Seller {seller} has no token account for {mint}")
    if parse_token_account(holding.data).amount != 1:
        raise StateViolation(f"Seller {seller} does not hold {mint}")


def list_nft(ledger: Ledger, seller: Keypair, mint: str, price: int, payer: Optional[Keypair] = None) -> ListResult:
    validate_price(price)
    mint_pk = parse_pubkey(mint, "mint")
    seller_pk = seller.pubkey()
    _ensure_listable(ledger, seller_pk, mint_pk)

    ix = build_list_nft_ix(seller_pk, mint_pk, price)
    signature = submit_transaction(ledger, [ix], payer or seller, [seller])
    listing = listing_pda(mint_pk)
    logger.info("list_submitted mint=%s seller=%s price=%s sig=%s", mint_pk, seller_pk, price, signature)
    return ListResult(
        listing=str(listing),
        escrow_token_account=str(derive_ata(listing, mint_pk)),
        mint=str(mint_pk),
        seller=str(seller_pk),
        price=price,
        signature=str(signature),
    )


def prepare_list(ledger: Ledger, seller: str, mint: str, price: int) -> PreparedTransaction:
    validate_price(price)
    seller_pk = parse_pubkey(seller, "seller")
    mint_pk = parse_pubkey(mint, "mint")
    _ensure_listable(ledger, seller_pk, mint_pk)
    return prepare_transaction(ledger, [build_list_nft_ix(seller_pk, mint_pk, price)], seller_pk)


def load_active_listing(ledger: Ledger, listing_address: Pubkey) -> Listing:
    account = ledger.get_account(listing_address)
    if account is None:
        raise StateViolation(f"Listing {listing_address} not found")
    if account.owner != ESCROW_PROGRAM_ID or len(account.data) < LISTING_LEN:
        raise StateViolation(f"Listing {listing_address} is malformed or uninitialized")
    listing = decode_listing(account.data)
    if listing is None:
        raise StateViolation(f"Listing {listing_address} is malformed or uninitialized")
    if not listing.is_active:
        raise StateViolation(f"Listing {listing_address} is not active")
    if listing_pda(listing.nft_mint) != listing_address:
        raise StateViolation(f"{listing_address} is not the listing address of {listing.nft_mint}")
    return listing


def buy_nft(ledger: Ledger, buyer: Keypair, listing_address: str) -> BuyResult:
    address = parse_pubkey(listing_address, "listing")
    listing = load_active_listing(ledger, address)
    buyer_pk = buyer.pubkey()
    ix = build_buy_nft_ix(buyer_pk, listing.seller, listing.nft_mint)
    try:
        signature = submit_transaction(ledger, [ix], buyer)
    except LedgerSubmissionFailure as exc:
        if exc.outcome_unknown:
            raise
        account = ledger.get_account(address)
        if listing_state(account.data if account else None) is not ListingState.LISTED:
            raise StateViolation(f"Listing {address} was sold to another buyer") from exc
        raise
    logger.info(
        "buy_submitted mint=%s buyer=%s seller=%s price=%s sig=%s",
        listing.nft_mint,
        buyer_pk,
        listing.seller,
        listing.price,
        signature,
    )
    return BuyResult(
        listing=str(address),
        mint=str(listing.nft_mint),
        buyer=str(buyer_pk),
        seller=str(listing.seller),
        price=listing.price,
        buyer_token_account=str(derive_ata(buyer_pk, listing.nft_mint)),
        signature=str(signature),
    )


def prepare_buy(ledger: Ledger, buyer: str, listing_address: str) -> PreparedTransaction:
    buyer_pk = parse_pubkey(buyer, "buyer")
    address = parse_pubkey(listing_address, "listing")
    listing = load_active_listing(ledger, address)
    return prepare_transaction(ledger, [build_buy_nft_ix(buyer_pk, listing.seller, listing.nft_mint)], buyer_pk)


def get_nft_details(ledger: Ledger, mint: str) -> NftDetails:
    mint_pk = parse_pubkey(mint, "mint")
    account = ledger.get_account(mint_pk)
    if account is None or account.owner != TOKEN_PROGRAM_ID or len(account.data) < MINT_LEN:
        raise StateViolation(f"Mint {mint_pk} not found")
    mint_state = parse_mint(account.data)

    metadata_account = ledger.get_account(metadata_pda(mint_pk))
    metadata = parse_metadata(metadata_account.data) if metadata_account else None

    listing_address = listing_pda(mint_pk)
    listing_account = ledger.get_account(listing_address)
    listing_data = listing_account.data if listing_account else None
    listing = decode_listing(listing_data)
    return NftDetails(
        mint=str(mint_pk),
        supply=mint_state.supply,
        decimals=mint_state.decimals,
        mint_authority=str(mint_state.mint_authority) if mint_state.mint_authority else None,
        name=metadata.name if metadata else None,
        symbol=metadata.symbol if metadata else None,
        uri=metadata.uri if metadata else None,
        update_authority=str(metadata.update_authority) if metadata else None,
        listing=str(listing_address),
        listing_state=listing_state(listing_data).value,
        price=listing.price if listing else None,
        seller=str(listing.seller) if listing else None,
    )


def estimate_fees(ledger: Ledger) -> FeeEstimate:
    mint_rent = ledger.get_minimum_balance_for_rent_exemption(MINT_LEN)
    token_rent = ledger.get_minimum_balance_for_rent_exemption(TOKEN_ACCOUNT_LEN)
    metadata_rent = ledger.get_minimum_balance_for_rent_exemption(MAX_METADATA_LEN)
    edition_rent = ledger.get_minimum_balance_for_rent_exemption(MAX_MASTER_EDITION_LEN)
    listing_rent = ledger.get_minimum_balance_for_rent_exemption(LISTING_LEN)
    # Service + mint keypair sign the mint transaction.
    mint_tx_fee = 2 * LAMPORTS_PER_SIGNATURE
    return FeeEstimate(
        mint_account_rent=mint_rent,
        token_account_rent=token_rent,
        metadata_rent=metadata_rent,
        master_edition_rent=edition_rent,
        mint_transaction_fee=mint_tx_fee,
        mint_total=mint_rent + token_rent + metadata_rent + edition_rent + mint_tx_fee,
        list_fee=listing_rent + token_rent + LAMPORTS_PER_SIGNATURE,
        buy_fee=token_rent + LAMPORTS_PER_SIGNATURE,
    )
