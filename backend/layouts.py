"""
Byte layouts of the accounts and instruction arguments this service reads and writes.

SPL mint / token account layouts: https://github.com/solana-labs/solana-program-library/blob/master/token/program/src/state.rs
Token metadata layouts follow mpl-token-metadata (borsh).
"""
import struct
from dataclasses import dataclass
from typing import Optional

from borsh_construct import Bool, CStruct, Enum, Option, String, U16, U64, U8, Vec
from solders.pubkey import Pubkey

MINT_LEN = 82
TOKEN_ACCOUNT_LEN = 165
MAX_NAME_LENGTH = 32
MAX_SYMBOL_LENGTH = 10
MAX_URI_LENGTH = 200
MAX_METADATA_LEN = 679
MAX_MASTER_EDITION_LEN = 282

METADATA_KEY_MASTER_EDITION_V2 = 6
METADATA_KEY_METADATA_V1 = 4

TOKEN_STATE_INITIALIZED = 1


@dataclass
class MintState:
    mint_authority: Optional[Pubkey]
    supply: int
    decimals: int
    is_initialized: bool
    freeze_authority: Optional[Pubkey]


@dataclass
class TokenAccountState:
    mint: Pubkey
    owner: Pubkey
    amount: int
    state: int = TOKEN_STATE_INITIALIZED

    @property
    def is_initialized(self) -> bool:
        return self.state != 0


def _pack_coption(key: Optional[Pubkey]) -> bytes:
    if key is None:
        return struct.pack("<I", 0) + bytes(32)
    return struct.pack("<I", 1) + bytes(key)


def pack_mint(mint: MintState) -> bytes:
    return (
        _pack_coption(mint.mint_authority)
        + struct.pack("<QBB", mint.supply, mint.decimals, 1 if mint.is_initialized else 0)
        + _pack_coption(mint.freeze_authority)
    )


def parse_mint(data: bytes) -> MintState:
    if len(data) < MINT_LEN:
        raise ValueError(f"Mint account too short: {len(data)} bytes")
    o = 0
    mint_auth_opt = struct.unpack_from("<I", data, o)[0]; o += 4
    mint_auth: Optional[Pubkey] = None
    if mint_auth_opt != 0:
        mint_auth = Pubkey.from_bytes(data[o:o+32])
    o += 32
    supply = struct.unpack_from("<Q", data, o)[0]; o += 8
    decimals = data[o]; o += 1
    is_init = data[o] == 1; o += 1
    freeze_opt = struct.unpack_from("<I", data, o)[0]; o += 4
    freeze_auth: Optional[Pubkey] = None
    if freeze_opt != 0:
        freeze_auth = Pubkey.from_bytes(data[o:o+32])
    return MintState(
        mint_authority=mint_auth,
        supply=supply,
        decimals=decimals,
        is_initialized=is_init,
        freeze_authority=freeze_auth,
    )


def pack_token_account(account: TokenAccountState) -> bytes:
    return (
        bytes(account.mint)
        + bytes(account.owner)
        + struct.pack("<Q", account.amount)
        + _pack_coption(None)  # delegate
        + struct.pack("<B", account.state)
        + struct.pack("<IQ", 0, 0)  # is_native
        + struct.pack("<Q", 0)  # delegated_amount
        + _pack_coption(None)  # close_authority
    )


def parse_token_account(data: bytes) -> TokenAccountState:
    if len(data) < TOKEN_ACCOUNT_LEN:
        raise ValueError(f"Token account too short: {len(data)} bytes")
    return TokenAccountState(
        mint=Pubkey.from_bytes(data[0:32]),
        owner=Pubkey.from_bytes(data[32:64]),
        amount=struct.unpack_from("<Q", data, 64)[0],
        state=data[108],
    )


CreatorLayout = CStruct("address" / U8[32], "verified" / Bool, "share" / U8)
CollectionLayout = CStruct("verified" / Bool, "key" / U8[32])
UseMethodLayout = Enum("Burn" / CStruct(), "Multiple" / CStruct(), "Single" / CStruct(), enum_name="UseMethod")
UsesLayout = CStruct("use_method" / UseMethodLayout, "remaining" / U64, "total" / U64)
DataV2Layout = CStruct(
    "name" / String,
    "symbol" / String,
    "uri" / String,
    "seller_fee_basis_points" / U16,
    "creators" / Option(Vec(CreatorLayout)),
    "collection" / Option(CollectionLayout),
    "uses" / Option(UsesLayout),
)
CollectionDetailsLayout = Enum("V1" / CStruct("size" / U64), enum_name="CollectionDetails")
CreateMetadataAccountArgsV3Layout = CStruct(
    "data" / DataV2Layout,
    "is_mutable" / Bool,
    "collection_details" / Option(CollectionDetailsLayout),
)
CreateMasterEditionArgsLayout = CStruct("max_supply" / Option(U64))

MetadataAccountLayout = CStruct(
    "key" / U8,
    "update_authority" / U8[32],
    "mint" / U8[32],
    "name" / String,
    "symbol" / String,
    "uri" / String,
    "seller_fee_basis_points" / U16,
    "creators" / Option(Vec(CreatorLayout)),
    "primary_sale_happened" / Bool,
    "is_mutable" / Bool,
)
MasterEditionAccountLayout = CStruct("key" / U8, "supply" / U64, "max_supply" / Option(U64))


@dataclass
class MetadataState:
    update_authority: Pubkey
    mint: Pubkey
    name: str
    symbol: str
    uri: str
    seller_fee_basis_points: int
    is_mutable: bool
    primary_sale_happened: bool = False


@dataclass
class MasterEditionState:
    supply: int
    max_supply: Optional[int]


def pack_metadata(metadata: MetadataState) -> bytes:
    data = MetadataAccountLayout.build(
        {
            "key": METADATA_KEY_METADATA_V1,
            "update_authority": list(bytes(metadata.update_authority)),
            "mint": list(bytes(metadata.mint)),
            "name": metadata.name,
            "symbol": metadata.symbol,
            "uri": metadata.uri,
            "seller_fee_basis_points": metadata.seller_fee_basis_points,
            "creators": None,
            "primary_sale_happened": metadata.primary_sale_happened,
            "is_mutable": metadata.is_mutable,
        }
    )
    # The metadata program allocates the maximum size up front.
    return data.ljust(MAX_METADATA_LEN, b"\x00")


def parse_metadata(data: bytes) -> Optional[MetadataState]:
    if not data or data[0] != METADATA_KEY_METADATA_V1:
        return None
    try:
        parsed = MetadataAccountLayout.parse(data)
    except Exception:  # noqa: BLE001
        return None
    return MetadataState(
        update_authority=Pubkey.from_bytes(bytes(parsed.update_authority)),
        mint=Pubkey.from_bytes(bytes(parsed.mint)),
        name=parsed.name.rstrip("\x00"),
        symbol=parsed.symbol.rstrip("\x00"),
        uri=parsed.uri.rstrip("\x00"),
        seller_fee_basis_points=parsed.seller_fee_basis_points,
        is_mutable=parsed.is_mutable,
        primary_sale_happened=parsed.primary_sale_happened,
    )


def pack_master_edition(edition: MasterEditionState) -> bytes:
    data = MasterEditionAccountLayout.build(
        {"key": METADATA_KEY_MASTER_EDITION_V2, "supply": edition.supply, "max_supply": edition.max_supply}
    )
    return data.ljust(MAX_MASTER_EDITION_LEN, b"\x00")


def parse_master_edition(data: bytes) -> Optional[MasterEditionState]:
    if not data or data[0] != METADATA_KEY_MASTER_EDITION_V2:
        return None
    try:
        parsed = MasterEditionAccountLayout.parse(data)
    except Exception:  # noqa: BLE001
        return None
    return MasterEditionState(supply=parsed.supply, max_supply=parsed.max_supply)
