import pytest
from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from errors import DerivationFailure
from pda import (
    ESCROW_PROGRAM_ID,
    METADATA_PROGRAM_ID,
    ProgramSigner,
    derive,
    derive_ata,
    listing_pda,
    listing_seeds,
    master_edition_pda,
    metadata_pda,
)


def test_program_ids():
    assert str(ESCROW_PROGRAM_ID) == "Fg6PaFpoGXkYsidMpWTK6W2BeZ7FEfcYkg476zPFsLnS"
    assert str(METADATA_PROGRAM_ID) == "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"


def test_derive_is_deterministic():
    mint = Pubkey.new_unique()
    assert listing_pda(mint) == listing_pda(mint)
    assert metadata_pda(mint) == metadata_pda(mint)
    assert derive([b"listing", bytes(mint)], ESCROW_PROGRAM_ID) == derive([b"listing", bytes(mint)], ESCROW_PROGRAM_ID)


def test_derive_matches_canonical_bump_search():
    mint = Pubkey.new_unique()
    seeds = [b"listing", bytes(mint)]
    assert derive(seeds, ESCROW_PROGRAM_ID) == Pubkey.find_program_address(seeds, ESCROW_PROGRAM_ID)


def test_distinct_mints_give_distinct_addresses():
    a, b = Pubkey.new_unique(), Pubkey.new_unique()
    assert listing_pda(a) != listing_pda(b)
    assert metadata_pda(a) != metadata_pda(b)
    assert master_edition_pda(a) != master_edition_pda(b)


def test_metadata_and_edition_differ():
    mint = Pubkey.new_unique()
    assert metadata_pda(mint) != master_edition_pda(mint)


def test_ata_derivation():
    owner, mint = Pubkey.new_unique(), Pubkey.new_unique()
    expected, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )
    assert derive_ata(owner, mint) == expected
    assert derive_ata(mint, owner) != expected


def test_derived_addresses_are_off_curve():
    mint = Pubkey.new_unique()
    assert not listing_pda(mint).is_on_curve()
    assert not derive_ata(Pubkey.new_unique(), mint).is_on_curve()


class TestProgramSigner:

    def test_listing_signer_matches_listing_address(self):
        mint = Pubkey.new_unique()
        signer = ProgramSigner.for_listing(mint)
        assert signer.address == listing_pda(mint)
        assert signer.program_id == ESCROW_PROGRAM_ID
        assert signer.signs_for(listing_pda(mint))
        assert signer.seeds == listing_seeds(mint)

    def test_wrong_bump_does_not_sign_for_listing(self):
        mint = Pubkey.new_unique()
        _, bump = derive(listing_seeds(mint), ESCROW_PROGRAM_ID)
        try:
            other = ProgramSigner(listing_seeds(mint), (bump - 1) % 256, ESCROW_PROGRAM_ID)
        except DerivationFailure:
            return
        assert not other.signs_for(listing_pda(mint))

    def test_bump_out_of_range(self):
        with pytest.raises(DerivationFailure):
            ProgramSigner([b"listing"], 256, ESCROW_PROGRAM_ID)

    def test_other_program_gives_other_address(self):
        mint = Pubkey.new_unique()
        signer = ProgramSigner.for_seeds(listing_seeds(mint), METADATA_PROGRAM_ID)
        assert not signer.signs_for(listing_pda(mint))


@pytest.mark.parametrize("seeds", [[b"x" * 33], [b"s"] * 16])
def test_derive_rejects_oversized_seeds(seeds):
    with pytest.raises(DerivationFailure):
        derive(seeds, ESCROW_PROGRAM_ID)
