"""
Shared pytest fixtures for the artmint test suite.
"""

import pytest
from solders.keypair import Keypair

from local_ledger import LocalLedger
from marketplace import MintRequest, mint_nft
from signatures import SignatureVerifier

LAMPORTS_PER_SOL = 1_000_000_000


@pytest.fixture
def ledger():
    """Empty in-memory ledger."""
    return LocalLedger()


@pytest.fixture
def service(ledger):
    """Service keypair: fee payer and authority for mints."""
    kp = Keypair()
    ledger.airdrop(kp.pubkey(), 10 * LAMPORTS_PER_SOL)
    return kp


@pytest.fixture
def seller(ledger):
    kp = Keypair()
    ledger.airdrop(kp.pubkey(), LAMPORTS_PER_SOL)
    return kp


@pytest.fixture
def buyer(ledger):
    kp = Keypair()
    ledger.airdrop(kp.pubkey(), 5 * LAMPORTS_PER_SOL)
    return kp


@pytest.fixture
def verifier():
    return SignatureVerifier()


@pytest.fixture
def mint_request_for():
    """Factory for a creator-signed mint request."""

    def make(creator, name="Art#1", symbol="ART", uri="https://x/1.png", message="mint Art#1"):
        signature = creator.sign_message(message.encode())
        return MintRequest(
            name=name,
            symbol=symbol,
            uri=uri,
            creator=str(creator.pubkey()),
            signature=str(signature),
            message=message,
        )

    return make


@pytest.fixture
def minted(ledger, service, seller, verifier, mint_request_for):
    """An NFT minted to the seller."""
    return mint_nft(ledger, service, mint_request_for(seller), verifier)
