"""
Deterministic program-derived addresses.

Every party (seller, buyer, this service, the on-ledger programs) recomputes
these from seeds; nothing here is ever looked up from a side table.
"""
import os
from typing import List, Sequence, Tuple

from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from errors import ConfigurationError, DerivationFailure

DEFAULT_ESCROW_PROGRAM_ID = "Fg6PaFpoGXkYsidMpWTK6W2BeZ7FEfcYkg476zPFsLnS"
DEFAULT_METADATA_PROGRAM_ID = "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"

METADATA_SEED = b"metadata"
EDITION_SEED = b"edition"
LISTING_SEED = b"listing"
MAX_BUMP = 255
MAX_SEEDS = 16
MAX_SEED_LEN = 32


def load_pubkey(env_name: str, default: str) -> Pubkey:
    value = os.environ.get(env_name) or default
    try:
        return Pubkey.from_string(value)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(f"{env_name} is not a valid pubkey: {exc}") from exc


ESCROW_PROGRAM_ID = load_pubkey("ESCROW_PROGRAM_ID", DEFAULT_ESCROW_PROGRAM_ID)
METADATA_PROGRAM_ID = load_pubkey("METADATA_PROGRAM_ID", DEFAULT_METADATA_PROGRAM_ID)


def derive(seeds: Sequence[bytes], program_id: Pubkey) -> Tuple[Pubkey, int]:
    """Canonical address and bump for `seeds` under `program_id`."""
    base = [bytes(seed) for seed in seeds]
    # Seed limits are checked up front; the library aborts on them instead of raising.
    if len(base) >= MAX_SEEDS or any(len(seed) > MAX_SEED_LEN for seed in base):
        raise DerivationFailure(f"Seeds exceed {MAX_SEEDS - 1} entries or {MAX_SEED_LEN} bytes each")
    try:
        return Pubkey.find_program_address(base, program_id)
    except Exception as exc:  # noqa: BLE001
        raise DerivationFailure(f"No viable bump for {len(base)} seeds under program {program_id}: {exc}") from exc


def metadata_seeds(mint: Pubkey) -> List[bytes]:
    return [METADATA_SEED, bytes(METADATA_PROGRAM_ID), bytes(mint)]


def master_edition_seeds(mint: Pubkey) -> List[bytes]:
    return [METADATA_SEED, bytes(METADATA_PROGRAM_ID), bytes(mint), EDITION_SEED]


def listing_seeds(mint: Pubkey) -> List[bytes]:
    return [LISTING_SEED, bytes(mint)]


def ata_seeds(owner: Pubkey, mint: Pubkey) -> List[bytes]:
    return [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)]


def metadata_pda(mint: Pubkey) -> Pubkey:
    return derive(metadata_seeds(mint), METADATA_PROGRAM_ID)[0]


def master_edition_pda(mint: Pubkey) -> Pubkey:
    return derive(master_edition_seeds(mint), METADATA_PROGRAM_ID)[0]


def listing_pda(mint: Pubkey) -> Pubkey:
    return derive(listing_seeds(mint), ESCROW_PROGRAM_ID)[0]


def derive_ata(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return derive(ata_seeds(owner, mint), ASSOCIATED_TOKEN_PROGRAM_ID)[0]


class ProgramSigner:
    """
    Authority over a derived address, proven by reproducing its exact seeds plus bump.

    Only the program the address is derived under can present one of these
    when invoking another program.
    """

    def __init__(self, seeds: Sequence[bytes], bump: int, program_id: Pubkey):
        if not 0 <= bump <= MAX_BUMP:
            raise DerivationFailure(f"bump out of range: {bump}")
        self.seeds = [bytes(seed) for seed in seeds]
        self.bump = bump
        self.program_id = program_id
        try:
            self.address = Pubkey.create_program_address(self.seeds + [bytes([bump])], program_id)
        except Exception as exc:  # noqa: BLE001
            raise DerivationFailure(f"seeds and bump {bump} do not derive an address: {exc}") from exc

    @classmethod
    def for_seeds(cls, seeds: Sequence[bytes], program_id: Pubkey) -> "ProgramSigner":
        _, bump = derive(seeds, program_id)
        return cls(seeds, bump, program_id)

    @classmethod
    def for_listing(cls, mint: Pubkey) -> "ProgramSigner":
        return cls.for_seeds(listing_seeds(mint), ESCROW_PROGRAM_ID)

    def signs_for(self, address: Pubkey) -> bool:
        return self.address == address

    def __repr__(self) -> str:
        return f"ProgramSigner(address={self.address}, bump={self.bump}, program_id={self.program_id})"
