import pytest
from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from errors import InvalidInput
from pda import ESCROW_PROGRAM_ID, METADATA_PROGRAM_ID, derive_ata, listing_pda, master_edition_pda, metadata_pda
from tx_builder import (
    SYS_PROGRAM_ID,
    SYSVAR_RENT_PUBKEY,
    U64_MAX,
    build_buy_nft_ix,
    build_list_nft_ix,
    build_mint_nft_ixs,
    decode_u64,
    encode_u64,
    instruction_to_dict,
    sighash,
    validate_metadata_fields,
)


@pytest.fixture
def keys():
    return {name: Pubkey.new_unique() for name in ("payer", "mint", "creator", "seller", "buyer")}


class TestU64:

    @pytest.mark.parametrize("value", [0, 1, 2_000_000_000, U64_MAX])
    def test_round_trip(self, value):
        encoded = encode_u64(value)
        assert len(encoded) == 8
        assert decode_u64(encoded) == value

    def test_little_endian(self):
        assert encode_u64(1) == b"\x01" + b"\x00" * 7

    @pytest.mark.parametrize("value", [-1, U64_MAX + 1, True])
    def test_out_of_range(self, value):
        with pytest.raises(InvalidInput):
            encode_u64(value)

    def test_decode_wrong_length(self):
        with pytest.raises(ValueError):
            decode_u64(b"\x00" * 7)


class TestMetadataFields:

    def test_valid(self):
        validate_metadata_fields("Art#1", "ART", "https://x/1.png")

    def test_limits_are_inclusive(self):
        validate_metadata_fields("n" * 32, "s" * 10, "u" * 200)

    @pytest.mark.parametrize(
        "name,symbol,uri",
        [
            ("", "ART", "https://x"),
            ("Art", "", "https://x"),
            ("Art", "ART", ""),
            ("   ", "ART", "https://x"),
            ("n" * 33, "ART", "https://x"),
            ("Art", "s" * 11, "https://x"),
            ("Art", "ART", "u" * 201),
            ("é" * 17, "ART", "https://x"),
        ],
    )
    def test_rejected(self, name, symbol, uri):
        with pytest.raises(InvalidInput):
            validate_metadata_fields(name, symbol, uri)


class TestMintInstructions:

    def test_six_instructions_in_order(self, keys):
        ixs = build_mint_nft_ixs(keys["payer"], keys["mint"], keys["creator"], "Art#1", "ART", "https://x/1.png", 1461600)
        assert [ix.program_id for ix in ixs] == [
            SYS_PROGRAM_ID,
            TOKEN_PROGRAM_ID,
            ASSOCIATED_TOKEN_PROGRAM_ID,
            TOKEN_PROGRAM_ID,
            METADATA_PROGRAM_ID,
            METADATA_PROGRAM_ID,
        ]

    def test_instruction_payloads(self, keys):
        ixs = build_mint_nft_ixs(keys["payer"], keys["mint"], keys["creator"], "Art#1", "ART", "https://x/1.png", 1461600)
        create, init_mint, create_ata, mint_to, metadata, edition = ixs

        assert create.data[:4] == (0).to_bytes(4, "little")
        assert int.from_bytes(create.data[4:12], "little") == 1461600
        assert int.from_bytes(create.data[12:20], "little") == 82
        assert create.data[20:] == bytes(TOKEN_PROGRAM_ID)

        assert init_mint.data[0] == 0
        assert init_mint.data[1] == 0  # decimals
        assert init_mint.data[2:34] == bytes(keys["payer"])
        assert init_mint.data[34] == 1
        assert init_mint.data[35:67] == bytes(keys["payer"])

        assert create_ata.data == bytes([1])
        assert create_ata.accounts[1].pubkey == derive_ata(keys["creator"], keys["mint"])
        assert create_ata.accounts[2].pubkey == keys["creator"]

        assert mint_to.data == bytes([7]) + (1).to_bytes(8, "little")
        assert mint_to.accounts[1].pubkey == derive_ata(keys["creator"], keys["mint"])

        assert metadata.data[0] == 33
        assert metadata.accounts[0].pubkey == metadata_pda(keys["mint"])

        assert edition.data == bytes([17, 1]) + (0).to_bytes(8, "little")
        assert edition.accounts[0].pubkey == master_edition_pda(keys["mint"])
        assert edition.accounts[5].pubkey == metadata_pda(keys["mint"])

    def test_rejects_long_name_before_building(self, keys):
        with pytest.raises(InvalidInput):
            build_mint_nft_ixs(keys["payer"], keys["mint"], keys["creator"], "n" * 33, "ART", "https://x", 1)


class TestEscrowInstructions:

    def test_list_instruction(self, keys):
        ix = build_list_nft_ix(keys["seller"], keys["mint"], 2_000_000_000)
        listing = listing_pda(keys["mint"])
        assert ix.program_id == ESCROW_PROGRAM_ID
        assert ix.data == bytes([1]) + (2_000_000_000).to_bytes(8, "little")
        assert [m.pubkey for m in ix.accounts] == [
            listing,
            keys["mint"],
            derive_ata(keys["seller"], keys["mint"]),
            derive_ata(listing, keys["mint"]),
            keys["seller"],
            TOKEN_PROGRAM_ID,
            ASSOCIATED_TOKEN_PROGRAM_ID,
            SYS_PROGRAM_ID,
            SYSVAR_RENT_PUBKEY,
        ]
        assert not ix.accounts[1].is_writable
        assert [m.pubkey for m in ix.accounts if m.is_signer] == [keys["seller"]]

    def test_list_instruction_max_price(self, keys):
        ix = build_list_nft_ix(keys["seller"], keys["mint"], U64_MAX)
        assert ix.data[1:] == b"\xff" * 8

    def test_buy_instruction(self, keys):
        ix = build_buy_nft_ix(keys["buyer"], keys["seller"], keys["mint"])
        listing = listing_pda(keys["mint"])
        assert ix.data == bytes([2])
        assert [m.pubkey for m in ix.accounts] == [
            listing,
            keys["mint"],
            derive_ata(listing, keys["mint"]),
            derive_ata(keys["buyer"], keys["mint"]),
            keys["seller"],
            keys["buyer"],
            TOKEN_PROGRAM_ID,
            ASSOCIATED_TOKEN_PROGRAM_ID,
            SYS_PROGRAM_ID,
        ]
        assert ix.accounts[4].is_writable
        assert [m.pubkey for m in ix.accounts if m.is_signer] == [keys["buyer"]]


def test_sighash_namespace():
    assert len(sighash("Listing", namespace="account")) == 8
    assert sighash("Listing", namespace="account") != sighash("Listing")


def test_instruction_to_dict(keys):
    data = instruction_to_dict(build_buy_nft_ix(keys["buyer"], keys["seller"], keys["mint"]))
    assert data["program_id"] == str(ESCROW_PROGRAM_ID)
    assert data["data"] == "Ag=="
    assert len(data["keys"]) == 9
