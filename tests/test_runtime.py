import pytest
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID

from errors import LedgerSubmissionFailure
from layouts import MintState, TokenAccountState, pack_mint, pack_token_account, parse_mint
from local_ledger import system_program
from pda import ESCROW_PROGRAM_ID, METADATA_PROGRAM_ID, ProgramSigner, listing_pda, listing_seeds
from runtime import AccountState, InvokeContext, ProgramError, rent_exempt_minimum
from submitter import submit_transaction
from tx_builder import SYS_PROGRAM_ID, U64_MAX, build_create_account_ix, build_mint_to_ix, build_system_transfer_ix


def make_ctx(payer, writable, caller=ESCROW_PROGRAM_ID):
    return InvokeContext(
        accounts={payer: AccountState(lamports=10**9)},
        signers={payer},
        writable=set(writable),
        programs={SYS_PROGRAM_ID: system_program},
        call_stack=[caller],
    )


def test_rent_formula():
    assert rent_exempt_minimum(0) == 128 * 3480 * 2
    assert rent_exempt_minimum(82) == 1461600
    assert rent_exempt_minimum(165) == 2039280


def test_program_signer_creates_derived_account():
    payer, mint = Pubkey.new_unique(), Pubkey.new_unique()
    listing = listing_pda(mint)
    ctx = make_ctx(payer, [payer, listing])
    ix = build_create_account_ix(payer, listing, 1000, 81, ESCROW_PROGRAM_ID)
    ctx.invoke(ix, [ProgramSigner.for_listing(mint)])
    assert ctx.get(listing).owner == ESCROW_PROGRAM_ID
    assert len(ctx.get(listing).data) == 81
    assert ctx.get(payer).lamports == 10**9 - 1000


def test_derived_signer_without_capability_fails():
    payer, mint = Pubkey.new_unique(), Pubkey.new_unique()
    listing = listing_pda(mint)
    ctx = make_ctx(payer, [payer, listing])
    with pytest.raises(ProgramError) as exc_info:
        ctx.invoke(build_create_account_ix(payer, listing, 1000, 81, ESCROW_PROGRAM_ID))
    assert exc_info.value.code == "PrivilegeEscalation"


def test_signer_derived_under_other_program_fails():
    payer, mint = Pubkey.new_unique(), Pubkey.new_unique()
    foreign = ProgramSigner.for_seeds(listing_seeds(mint), METADATA_PROGRAM_ID)
    ctx = make_ctx(payer, [payer, foreign.address])
    with pytest.raises(ProgramError) as exc_info:
        ctx.invoke(build_create_account_ix(payer, foreign.address, 1000, 81, ESCROW_PROGRAM_ID), [foreign])
    assert exc_info.value.code == "PrivilegeEscalation"


def test_writable_privilege_cannot_be_gained():
    payer, recipient = Pubkey.new_unique(), Pubkey.new_unique()
    ctx = make_ctx(payer, [payer])
    with pytest.raises(ProgramError) as exc_info:
        ctx.invoke(build_system_transfer_ix(payer, recipient, 5))
    assert exc_info.value.code == "PrivilegeEscalation"


def test_only_owner_can_write():
    payer, other = Pubkey.new_unique(), Pubkey.new_unique()
    ctx = make_ctx(payer, [payer, other])
    ctx.accounts[other] = AccountState(lamports=1, data=bytes(4), owner=METADATA_PROGRAM_ID)
    with pytest.raises(ProgramError) as exc_info:
        ctx.write(other, b"\x01\x02\x03\x04")
    assert exc_info.value.code == "ExternalAccountModified"


def test_create_over_existing_account_fails():
    payer, mint = Pubkey.new_unique(), Pubkey.new_unique()
    listing = listing_pda(mint)
    ctx = make_ctx(payer, [payer, listing])
    ctx.accounts[listing] = AccountState(lamports=1)
    with pytest.raises(ProgramError) as exc_info:
        ctx.invoke(build_create_account_ix(payer, listing, 1000, 81, ESCROW_PROGRAM_ID), [ProgramSigner.for_listing(mint)])
    assert exc_info.value.code == "AccountAlreadyInUse"


def test_unknown_program():
    payer = Pubkey.new_unique()
    ctx = make_ctx(payer, [payer])
    ix = build_system_transfer_ix(payer, payer, 1)
    ctx.programs = {}
    with pytest.raises(ProgramError) as exc_info:
        ctx.execute(ix)
    assert exc_info.value.code == "UnknownProgram"


def test_credit_overflow():
    payer, rich = Pubkey.new_unique(), Pubkey.new_unique()
    ctx = make_ctx(payer, [payer, rich])
    ctx.accounts[rich] = AccountState(lamports=U64_MAX)
    with pytest.raises(ProgramError) as exc_info:
        ctx.invoke(build_system_transfer_ix(payer, rich, 1))
    assert exc_info.value.code == "ArithmeticOverflow"


def test_mint_to_overflow_is_rejected_atomically(ledger, buyer):
    mint, holding = Pubkey.new_unique(), Pubkey.new_unique()
    mint_state = MintState(
        mint_authority=buyer.pubkey(), supply=U64_MAX - 1, decimals=0, is_initialized=True, freeze_authority=None
    )
    ledger.accounts[mint] = AccountState(
        lamports=rent_exempt_minimum(82), data=pack_mint(mint_state), owner=TOKEN_PROGRAM_ID
    )
    ledger.accounts[holding] = AccountState(
        lamports=rent_exempt_minimum(165),
        data=pack_token_account(TokenAccountState(mint=mint, owner=buyer.pubkey(), amount=0)),
        owner=TOKEN_PROGRAM_ID,
    )
    balance = ledger.get_balance(buyer.pubkey())
    with pytest.raises(LedgerSubmissionFailure) as exc_info:
        submit_transaction(ledger, [build_mint_to_ix(mint, holding, buyer.pubkey(), 2)], buyer)
    assert exc_info.value.reason == "ArithmeticOverflow"
    assert parse_mint(ledger.get_account(mint).data).supply == U64_MAX - 1
    assert ledger.get_balance(buyer.pubkey()) == balance
