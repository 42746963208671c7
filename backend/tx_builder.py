import base64
import hashlib
from typing import List, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from errors import InvalidInput
from layouts import (
    MAX_NAME_LENGTH,
    MAX_SYMBOL_LENGTH,
    MAX_URI_LENGTH,
    MINT_LEN,
    CreateMasterEditionArgsLayout,
    CreateMetadataAccountArgsV3Layout,
)
from pda import (
    ESCROW_PROGRAM_ID,
    METADATA_PROGRAM_ID,
    derive_ata,
    listing_pda,
    master_edition_pda,
    metadata_pda,
)

SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
SYSVAR_RENT_PUBKEY = Pubkey.from_string("SysvarRent111111111111111111111111111111111")

U64_MAX = 2**64 - 1
LAMPORTS_PER_SIGNATURE = 5000

# Escrow program opcodes (first data byte)
OPCODE_MINT = 0
OPCODE_LIST = 1
OPCODE_BUY = 2

# System program
SYSTEM_IX_CREATE_ACCOUNT = 0
SYSTEM_IX_TRANSFER = 2

# SPL token program
TOKEN_IX_INITIALIZE_MINT = 0
TOKEN_IX_TRANSFER = 3
TOKEN_IX_SET_AUTHORITY = 6
TOKEN_IX_MINT_TO = 7
TOKEN_IX_INITIALIZE_ACCOUNT3 = 18
AUTHORITY_MINT_TOKENS = 0
AUTHORITY_FREEZE_ACCOUNT = 1

# Associated token program
ATA_IX_CREATE = 0
ATA_IX_CREATE_IDEMPOTENT = 1

# Token metadata program
METADATA_IX_CREATE_MASTER_EDITION_V3 = 17
METADATA_IX_CREATE_METADATA_V3 = 33


def sighash(name: str, namespace: str = "global") -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


def encode_u64(value: int) -> bytes:
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= U64_MAX:
        raise InvalidInput(f"Value out of u64 range: {value!r}")
    return value.to_bytes(8, "little")


def decode_u64(data: bytes) -> int:
    if len(data) != 8:
        raise ValueError(f"u64 needs exactly 8 bytes, got {len(data)}")
    return int.from_bytes(data, "little")


def _coption_pubkey(key: Optional[Pubkey]) -> bytes:
    if key is None:
        return bytes([0])
    return bytes([1]) + bytes(key)


def validate_metadata_fields(name: str, symbol: str, uri: str) -> None:
    if not name or not name.strip() or not symbol or not symbol.strip() or not uri or not uri.strip():
        raise InvalidInput("Invalid input: name, symbol, and uri are required")
    if len(name.encode()) > MAX_NAME_LENGTH or len(symbol.encode()) > MAX_SYMBOL_LENGTH:
        raise InvalidInput(
            f"Invalid input: name max {MAX_NAME_LENGTH} bytes, symbol max {MAX_SYMBOL_LENGTH} bytes"
        )
    if len(uri.encode()) > MAX_URI_LENGTH:
        raise InvalidInput(f"Invalid input: uri max {MAX_URI_LENGTH} bytes")


def build_create_account_ix(payer: Pubkey, new_account: Pubkey, lamports: int, space: int, owner: Pubkey) -> Instruction:
    # SystemProgram create_account: instruction = 0 (u32 LE) + lamports (u64 LE) + space (u64 LE) + owner
    data = (
        SYSTEM_IX_CREATE_ACCOUNT.to_bytes(4, "little")
        + lamports.to_bytes(8, "little")
        + space.to_bytes(8, "little")
        + bytes(owner)
    )
    accounts = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=new_account, is_signer=True, is_writable=True),
    ]
    return Instruction(program_id=SYS_PROGRAM_ID, data=data, accounts=accounts)


def build_system_transfer_ix(sender: Pubkey, recipient: Pubkey, lamports: int) -> Instruction:
    # SystemProgram transfer: instruction = 2 (u32 LE) + lamports (u64 LE)
    data = SYSTEM_IX_TRANSFER.to_bytes(4, "little") + lamports.to_bytes(8, "little")
    accounts = [
        AccountMeta(pubkey=sender, is_signer=True, is_writable=True),
        AccountMeta(pubkey=recipient, is_signer=False, is_writable=True),
    ]
    return Instruction(program_id=SYS_PROGRAM_ID, data=data, accounts=accounts)


def build_initialize_mint_ix(mint: Pubkey, mint_authority: Pubkey, freeze_authority: Optional[Pubkey], decimals: int = 0) -> Instruction:
    data = bytes([TOKEN_IX_INITIALIZE_MINT, decimals]) + bytes(mint_authority) + _coption_pubkey(freeze_authority)
    metas = [
        AccountMeta(pubkey=mint, is_signer=False, is_writable=True),
        AccountMeta(pubkey=SYSVAR_RENT_PUBKEY, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=data, accounts=metas)


def build_initialize_account3_ix(account: Pubkey, mint: Pubkey, owner: Pubkey) -> Instruction:
    data = bytes([TOKEN_IX_INITIALIZE_ACCOUNT3]) + bytes(owner)
    metas = [
        AccountMeta(pubkey=account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=data, accounts=metas)


def build_mint_to_ix(mint: Pubkey, destination: Pubkey, authority: Pubkey, amount: int) -> Instruction:
    data = bytes([TOKEN_IX_MINT_TO]) + amount.to_bytes(8, "little")
    metas = [
        AccountMeta(pubkey=mint, is_signer=False, is_writable=True),
        AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=data, accounts=metas)


def build_spl_transfer_ix(source: Pubkey, dest: Pubkey, owner: Pubkey, amount: int) -> Instruction:
    data = bytes([TOKEN_IX_TRANSFER]) + amount.to_bytes(8, "little")
    metas = [
        AccountMeta(pubkey=source, is_signer=False, is_writable=True),
        AccountMeta(pubkey=dest, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=data, accounts=metas)


def build_set_authority_ix(account: Pubkey, current_authority: Pubkey, authority_type: int, new_authority: Optional[Pubkey]) -> Instruction:
    data = bytes([TOKEN_IX_SET_AUTHORITY, authority_type]) + _coption_pubkey(new_authority)
    metas = [
        AccountMeta(pubkey=account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=current_authority, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=data, accounts=metas)


def build_create_ata_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey, ata: Optional[Pubkey] = None, idempotent: bool = True) -> Instruction:
    # Associated token account creation; CreateIdempotent (1) is a no-op when the account already exists
    ata = ata or derive_ata(owner, mint)
    metas = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    opcode = ATA_IX_CREATE_IDEMPOTENT if idempotent else ATA_IX_CREATE
    return Instruction(program_id=ASSOCIATED_TOKEN_PROGRAM_ID, data=bytes([opcode]), accounts=metas)


def encode_create_metadata_v3(name: str, symbol: str, uri: str, is_mutable: bool = True) -> bytes:
    data = CreateMetadataAccountArgsV3Layout.build(
        {
            "data": {
                "name": name,
                "symbol": symbol,
                "uri": uri,
                "seller_fee_basis_points": 0,
                "creators": None,
                "collection": None,
                "uses": None,
            },
            "is_mutable": is_mutable,
            "collection_details": None,
        }
    )
    return bytes([METADATA_IX_CREATE_METADATA_V3]) + data


def build_create_metadata_v3_ix(
    metadata: Pubkey,
    mint: Pubkey,
    mint_authority: Pubkey,
    payer: Pubkey,
    update_authority: Pubkey,
    name: str,
    symbol: str,
    uri: str,
) -> Instruction:
    accounts = [
        AccountMeta(pubkey=metadata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint_authority, is_signer=True, is_writable=False),
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=update_authority, is_signer=True, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYSVAR_RENT_PUBKEY, is_signer=False, is_writable=False),
    ]
    data = encode_create_metadata_v3(name, symbol, uri)
    return Instruction(program_id=METADATA_PROGRAM_ID, data=data, accounts=accounts)


def build_create_master_edition_v3_ix(
    edition: Pubkey,
    mint: Pubkey,
    update_authority: Pubkey,
    mint_authority: Pubkey,
    payer: Pubkey,
    metadata: Pubkey,
    max_supply: Optional[int] = 0,
) -> Instruction:
    accounts = [
        AccountMeta(pubkey=edition, is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=True),
        AccountMeta(pubkey=update_authority, is_signer=True, is_writable=False),
        AccountMeta(pubkey=mint_authority, is_signer=True, is_writable=False),
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=metadata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYSVAR_RENT_PUBKEY, is_signer=False, is_writable=False),
    ]
    data = bytes([METADATA_IX_CREATE_MASTER_EDITION_V3]) + CreateMasterEditionArgsLayout.build({"max_supply": max_supply})
    return Instruction(program_id=METADATA_PROGRAM_ID, data=data, accounts=accounts)


def build_mint_nft_ixs(
    payer: Pubkey,
    mint: Pubkey,
    creator: Pubkey,
    name: str,
    symbol: str,
    uri: str,
    mint_rent_lamports: int,
) -> List[Instruction]:
    """
    The six mint instructions, in the order the ledger must run them:
    create mint account, initialize mint, create creator ATA, mint 1,
    create metadata, create master edition (max_supply 0).

    `payer` is the service signer and becomes mint, freeze and update authority.
    """
    validate_metadata_fields(name, symbol, uri)
    token_account = derive_ata(creator, mint)
    metadata = metadata_pda(mint)
    edition = master_edition_pda(mint)
    return [
        build_create_account_ix(payer, mint, mint_rent_lamports, MINT_LEN, TOKEN_PROGRAM_ID),
        build_initialize_mint_ix(mint, payer, payer, decimals=0),
        build_create_ata_ix(payer, creator, mint, token_account),
        build_mint_to_ix(mint, token_account, payer, 1),
        build_create_metadata_v3_ix(metadata, mint, payer, payer, payer, name, symbol, uri),
        build_create_master_edition_v3_ix(edition, mint, payer, payer, payer, metadata, max_supply=0),
    ]


def encode_list_nft(price: int) -> bytes:
    return bytes([OPCODE_LIST]) + encode_u64(price)


def encode_buy_nft() -> bytes:
    return bytes([OPCODE_BUY])


def build_list_nft_ix(seller: Pubkey, mint: Pubkey, price: int) -> Instruction:
    listing = listing_pda(mint)
    # Enforce on-chain account order from the deployed program; positional list only.
    accounts = [
        AccountMeta(pubkey=listing, is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=derive_ata(seller, mint), is_signer=False, is_writable=True),
        AccountMeta(pubkey=derive_ata(listing, mint), is_signer=False, is_writable=True),
        AccountMeta(pubkey=seller, is_signer=True, is_writable=True),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYSVAR_RENT_PUBKEY, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=ESCROW_PROGRAM_ID, data=encode_list_nft(price), accounts=accounts)


def build_buy_nft_ix(buyer: Pubkey, seller: Pubkey, mint: Pubkey) -> Instruction:
    listing = listing_pda(mint)
    accounts = [
        AccountMeta(pubkey=listing, is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=derive_ata(listing, mint), is_signer=False, is_writable=True),
        AccountMeta(pubkey=derive_ata(buyer, mint), is_signer=False, is_writable=True),
        AccountMeta(pubkey=seller, is_signer=False, is_writable=True),
        AccountMeta(pubkey=buyer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=ESCROW_PROGRAM_ID, data=encode_buy_nft(), accounts=accounts)


def instruction_to_dict(ix: Instruction) -> dict:
    return {
        "program_id": str(ix.program_id),
        "keys": [
            {
                "pubkey": str(k.pubkey),
                "is_signer": k.is_signer,
                "is_writable": k.is_writable,
            }
            for k in ix.accounts
        ],
        "data": base64.b64encode(ix.data).decode(),
    }
