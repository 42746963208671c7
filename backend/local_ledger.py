"""
In-memory ledger for development and tests.

Runs the system, SPL token, associated token, token metadata and escrow
programs against a dict of accounts. A transaction either commits every
instruction or none: execution happens on a snapshot that only replaces the
live state once the last instruction succeeds.
"""
import hashlib
import logging
import threading
from collections import deque
from dataclasses import replace
from typing import Dict, List, Optional, Set

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

import escrow_program
from errors import LedgerSubmissionFailure
from layouts import (
    MAX_MASTER_EDITION_LEN,
    MAX_METADATA_LEN,
    MAX_NAME_LENGTH,
    MAX_SYMBOL_LENGTH,
    MAX_URI_LENGTH,
    MINT_LEN,
    TOKEN_ACCOUNT_LEN,
    CreateMasterEditionArgsLayout,
    CreateMetadataAccountArgsV3Layout,
    MasterEditionState,
    MetadataState,
    MintState,
    TokenAccountState,
    pack_master_edition,
    pack_metadata,
    pack_mint,
    pack_token_account,
    parse_metadata,
    parse_mint,
    parse_token_account,
)
from ledger import LedgerAccount
from pda import (
    ESCROW_PROGRAM_ID,
    METADATA_PROGRAM_ID,
    ProgramSigner,
    ata_seeds,
    derive_ata,
    master_edition_pda,
    master_edition_seeds,
    metadata_pda,
    metadata_seeds,
)
from runtime import (
    AccountState,
    InvokeContext,
    ProgramError,
    checked_add,
    rent_exempt_minimum,
    require_accounts,
    require_signer,
)
from tx_builder import (
    ATA_IX_CREATE,
    ATA_IX_CREATE_IDEMPOTENT,
    AUTHORITY_FREEZE_ACCOUNT,
    AUTHORITY_MINT_TOKENS,
    LAMPORTS_PER_SIGNATURE,
    METADATA_IX_CREATE_MASTER_EDITION_V3,
    METADATA_IX_CREATE_METADATA_V3,
    SYS_PROGRAM_ID,
    SYSTEM_IX_CREATE_ACCOUNT,
    SYSTEM_IX_TRANSFER,
    TOKEN_IX_INITIALIZE_ACCOUNT3,
    TOKEN_IX_INITIALIZE_MINT,
    TOKEN_IX_MINT_TO,
    TOKEN_IX_SET_AUTHORITY,
    TOKEN_IX_TRANSFER,
    build_create_account_ix,
    build_initialize_account3_ix,
    build_set_authority_ix,
)

logger = logging.getLogger("artmint")

MAX_RECENT_BLOCKHASHES = 150


# --- system program -------------------------------------------------------


def system_program(ctx: InvokeContext, program_id: Pubkey, accounts: List[AccountMeta], data: bytes) -> None:
    if len(data) < 4:
        raise ProgramError("InvalidInstructionData", "system instruction too short")
    opcode = int.from_bytes(data[:4], "little")
    if opcode == SYSTEM_IX_CREATE_ACCOUNT:
        require_accounts(accounts, 2)
        if len(data) != 52:
            raise ProgramError("InvalidInstructionData", "create_account expects 52 bytes")
        lamports = int.from_bytes(data[4:12], "little")
        space = int.from_bytes(data[12:20], "little")
        owner = Pubkey.from_bytes(data[20:52])
        payer, new_account = accounts[0], accounts[1]
        require_signer(payer)
        require_signer(new_account)
        ctx.debit(payer.pubkey, lamports)
        ctx.create(new_account.pubkey, lamports, space, owner)
    elif opcode == SYSTEM_IX_TRANSFER:
        require_accounts(accounts, 2)
        if len(data) != 12:
            raise ProgramError("InvalidInstructionData", "transfer expects 12 bytes")
        lamports = int.from_bytes(data[4:12], "little")
        sender, recipient = accounts[0], accounts[1]
        require_signer(sender)
        ctx.debit(sender.pubkey, lamports)
        ctx.credit(recipient.pubkey, lamports)
    else:
        raise ProgramError("InvalidInstructionData", f"unsupported system instruction {opcode}")


# --- SPL token program ----------------------------------------------------


def _read_coption(data: bytes, offset: int) -> Optional[Pubkey]:
    if len(data) <= offset:
        raise ProgramError("InvalidInstructionData", "missing option tag")
    if data[offset] == 0:
        return None
    if len(data) < offset + 33:
        raise ProgramError("InvalidInstructionData", "truncated pubkey")
    return Pubkey.from_bytes(data[offset + 1 : offset + 33])


def _token_owned(ctx: InvokeContext, address: Pubkey, size: int) -> bytes:
    account = ctx.get(address)
    if account is None or account.owner != TOKEN_PROGRAM_ID:
        raise ProgramError("IncorrectProgramId", f"{address} is not owned by the token program")
    if len(account.data) != size:
        raise ProgramError("InvalidAccountData", f"{address} has {len(account.data)} bytes, expected {size}")
    return account.data


def _load_mint(ctx: InvokeContext, address: Pubkey) -> MintState:
    mint = parse_mint(_token_owned(ctx, address, MINT_LEN))
    if not mint.is_initialized:
        raise ProgramError("UninitializedAccount", str(address))
    return mint


def _load_token_account(ctx: InvokeContext, address: Pubkey) -> TokenAccountState:
    holding = parse_token_account(_token_owned(ctx, address, TOKEN_ACCOUNT_LEN))
    if not holding.is_initialized:
        raise ProgramError("UninitializedAccount", str(address))
    return holding


def _require_authority(meta: AccountMeta, expected: Optional[Pubkey]) -> None:
    if expected is None or meta.pubkey != expected:
        raise ProgramError("OwnerMismatch", f"{meta.pubkey} is not the authority")
    require_signer(meta)


def token_program(ctx: InvokeContext, program_id: Pubkey, accounts: List[AccountMeta], data: bytes) -> None:
    if not data:
        raise ProgramError("InvalidInstructionData", "empty token instruction")
    opcode = data[0]
    if opcode == TOKEN_IX_INITIALIZE_MINT:
        require_accounts(accounts, 1)
        if len(data) < 35:
            raise ProgramError("InvalidInstructionData", "initialize_mint too short")
        mint_address = accounts[0].pubkey
        current = parse_mint(_token_owned(ctx, mint_address, MINT_LEN))
        if current.is_initialized:
            raise ProgramError("AlreadyInUse", str(mint_address))
        state = MintState(
            mint_authority=Pubkey.from_bytes(data[2:34]),
            supply=0,
            decimals=data[1],
            is_initialized=True,
            freeze_authority=_read_coption(data, 34),
        )
        ctx.write(mint_address, pack_mint(state))
    elif opcode == TOKEN_IX_INITIALIZE_ACCOUNT3:
        require_accounts(accounts, 2)
        if len(data) != 33:
            raise ProgramError("InvalidInstructionData", "initialize_account3 expects 33 bytes")
        address, mint_address = accounts[0].pubkey, accounts[1].pubkey
        current = parse_token_account(_token_owned(ctx, address, TOKEN_ACCOUNT_LEN))
        if current.is_initialized:
            raise ProgramError("AlreadyInUse", str(address))
        _load_mint(ctx, mint_address)
        holding = TokenAccountState(mint=mint_address, owner=Pubkey.from_bytes(data[1:33]), amount=0)
        ctx.write(address, pack_token_account(holding))
    elif opcode == TOKEN_IX_TRANSFER:
        require_accounts(accounts, 3)
        amount = int.from_bytes(data[1:9], "little")
        source_meta, dest_meta, authority = accounts[0], accounts[1], accounts[2]
        source = _load_token_account(ctx, source_meta.pubkey)
        dest = _load_token_account(ctx, dest_meta.pubkey)
        if source.mint != dest.mint:
            raise ProgramError("MintMismatch", f"{source.mint} != {dest.mint}")
        _require_authority(authority, source.owner)
        if source.amount < amount:
            raise ProgramError("InsufficientFunds", f"{source_meta.pubkey} holds {source.amount}, needs {amount}")
        if source_meta.pubkey == dest_meta.pubkey:
            return
        source.amount -= amount
        dest.amount = checked_add(dest.amount, amount)
        ctx.write(source_meta.pubkey, pack_token_account(source))
        ctx.write(dest_meta.pubkey, pack_token_account(dest))
    elif opcode == TOKEN_IX_MINT_TO:
        require_accounts(accounts, 3)
        amount = int.from_bytes(data[1:9], "little")
        mint_meta, dest_meta, authority = accounts[0], accounts[1], accounts[2]
        mint = _load_mint(ctx, mint_meta.pubkey)
        dest = _load_token_account(ctx, dest_meta.pubkey)
        if dest.mint != mint_meta.pubkey:
            raise ProgramError("MintMismatch", f"{dest_meta.pubkey} holds {dest.mint}")
        _require_authority(authority, mint.mint_authority)
        mint.supply = checked_add(mint.supply, amount)
        dest.amount = checked_add(dest.amount, amount)
        ctx.write(mint_meta.pubkey, pack_mint(mint))
        ctx.write(dest_meta.pubkey, pack_token_account(dest))
    elif opcode == TOKEN_IX_SET_AUTHORITY:
        require_accounts(accounts, 2)
        if len(data) < 3:
            raise ProgramError("InvalidInstructionData", "set_authority too short")
        mint_meta, authority = accounts[0], accounts[1]
        mint = _load_mint(ctx, mint_meta.pubkey)
        new_authority = _read_coption(data, 2)
        if data[1] == AUTHORITY_MINT_TOKENS:
            _require_authority(authority, mint.mint_authority)
            mint.mint_authority = new_authority
        elif data[1] == AUTHORITY_FREEZE_ACCOUNT:
            _require_authority(authority, mint.freeze_authority)
            mint.freeze_authority = new_authority
        else:
            raise ProgramError("InvalidInstructionData", f"unsupported authority type {data[1]}")
        ctx.write(mint_meta.pubkey, pack_mint(mint))
    else:
        raise ProgramError("InvalidInstructionData", f"unsupported token instruction {opcode}")


# --- associated token account program --------------------------------------


def associated_token_program(ctx: InvokeContext, program_id: Pubkey, accounts: List[AccountMeta], data: bytes) -> None:
    require_accounts(accounts, 6)
    opcode = data[0] if data else ATA_IX_CREATE
    if opcode not in (ATA_IX_CREATE, ATA_IX_CREATE_IDEMPOTENT):
        raise ProgramError("InvalidInstructionData", f"unsupported associated token instruction {opcode}")
    payer, ata, owner, mint = (meta.pubkey for meta in accounts[:4])
    if ata != derive_ata(owner, mint):
        raise ProgramError("InvalidSeeds", f"{ata} is not the associated account of {owner} for {mint}")
    existing = ctx.get(ata)
    if existing is not None:
        if opcode == ATA_IX_CREATE_IDEMPOTENT and existing.owner == TOKEN_PROGRAM_ID:
            holding = parse_token_account(existing.data)
            if holding.owner == owner and holding.mint == mint:
                return
        raise ProgramError("AccountAlreadyInUse", str(ata))
    signer = ProgramSigner.for_seeds(ata_seeds(owner, mint), ASSOCIATED_TOKEN_PROGRAM_ID)
    ctx.invoke(
        build_create_account_ix(payer, ata, ctx.rent_exempt(TOKEN_ACCOUNT_LEN), TOKEN_ACCOUNT_LEN, TOKEN_PROGRAM_ID),
        [signer],
    )
    ctx.invoke(build_initialize_account3_ix(ata, mint, owner))


# --- token metadata program ------------------------------------------------


def _create_metadata(ctx: InvokeContext, accounts: List[AccountMeta], data: bytes) -> None:
    require_accounts(accounts, 5)
    metadata_meta, mint_meta, mint_authority, payer, update_authority = accounts[:5]
    mint_address = mint_meta.pubkey
    if metadata_meta.pubkey != metadata_pda(mint_address):
        raise ProgramError("InvalidMetadataKey", str(metadata_meta.pubkey))
    if ctx.exists(metadata_meta.pubkey):
        raise ProgramError("AlreadyInitialized", str(metadata_meta.pubkey))
    mint = _load_mint(ctx, mint_address)
    _require_authority(mint_authority, mint.mint_authority)
    require_signer(payer)
    try:
        args = CreateMetadataAccountArgsV3Layout.parse(data[1:])
    except Exception as exc:  # noqa: BLE001
        raise ProgramError("InvalidInstructionData", f"metadata args: {exc}") from exc
    fields = args.data
    if len(fields.name.encode()) > MAX_NAME_LENGTH:
        raise ProgramError("NameTooLong", fields.name)
    if len(fields.symbol.encode()) > MAX_SYMBOL_LENGTH:
        raise ProgramError("SymbolTooLong", fields.symbol)
    if len(fields.uri.encode()) > MAX_URI_LENGTH:
        raise ProgramError("UriTooLong", fields.uri)
    signer = ProgramSigner.for_seeds(metadata_seeds(mint_address), METADATA_PROGRAM_ID)
    ctx.invoke(
        build_create_account_ix(
            payer.pubkey, metadata_meta.pubkey, ctx.rent_exempt(MAX_METADATA_LEN), MAX_METADATA_LEN, METADATA_PROGRAM_ID
        ),
        [signer],
    )
    state = MetadataState(
        update_authority=update_authority.pubkey,
        mint=mint_address,
        name=fields.name,
        symbol=fields.symbol,
        uri=fields.uri,
        seller_fee_basis_points=fields.seller_fee_basis_points,
        is_mutable=args.is_mutable,
    )
    ctx.write(metadata_meta.pubkey, pack_metadata(state))


def _create_master_edition(ctx: InvokeContext, accounts: List[AccountMeta], data: bytes) -> None:
    require_accounts(accounts, 8)
    edition_meta, mint_meta, update_authority, mint_authority, payer, metadata_meta = accounts[:6]
    mint_address = mint_meta.pubkey
    if edition_meta.pubkey != master_edition_pda(mint_address):
        raise ProgramError("InvalidEditionKey", str(edition_meta.pubkey))
    if ctx.exists(edition_meta.pubkey):
        raise ProgramError("AlreadyInitialized", str(edition_meta.pubkey))
    metadata = parse_metadata(ctx.data(metadata_meta.pubkey))
    if metadata is None or metadata.mint != mint_address:
        raise ProgramError("InvalidMetadataKey", str(metadata_meta.pubkey))
    _require_authority(update_authority, metadata.update_authority)
    mint = _load_mint(ctx, mint_address)
    _require_authority(mint_authority, mint.mint_authority)
    if mint.supply != 1 or mint.decimals != 0:
        raise ProgramError("EditionsMustHaveExactlyOneToken", f"supply={mint.supply} decimals={mint.decimals}")
    try:
        args = CreateMasterEditionArgsLayout.parse(data[1:])
    except Exception as exc:  # noqa: BLE001
        raise ProgramError("InvalidInstructionData", f"master edition args: {exc}") from exc
    signer = ProgramSigner.for_seeds(master_edition_seeds(mint_address), METADATA_PROGRAM_ID)
    ctx.invoke(
        build_create_account_ix(
            payer.pubkey,
            edition_meta.pubkey,
            ctx.rent_exempt(MAX_MASTER_EDITION_LEN),
            MAX_MASTER_EDITION_LEN,
            METADATA_PROGRAM_ID,
        ),
        [signer],
    )
    ctx.write(edition_meta.pubkey, pack_master_edition(MasterEditionState(supply=0, max_supply=args.max_supply)))
    # The edition takes over the mint so no further supply can ever be created.
    ctx.invoke(build_set_authority_ix(mint_address, mint_authority.pubkey, AUTHORITY_MINT_TOKENS, edition_meta.pubkey))
    if mint.freeze_authority is not None:
        ctx.invoke(
            build_set_authority_ix(mint_address, mint.freeze_authority, AUTHORITY_FREEZE_ACCOUNT, edition_meta.pubkey)
        )


def metadata_program(ctx: InvokeContext, program_id: Pubkey, accounts: List[AccountMeta], data: bytes) -> None:
    if not data:
        raise ProgramError("InvalidInstructionData", "empty metadata instruction")
    if data[0] == METADATA_IX_CREATE_METADATA_V3:
        _create_metadata(ctx, accounts, data)
    elif data[0] == METADATA_IX_CREATE_MASTER_EDITION_V3:
        _create_master_edition(ctx, accounts, data)
    else:
        raise ProgramError("InvalidInstructionData", f"unsupported metadata instruction {data[0]}")


DEFAULT_PROGRAMS = {
    SYS_PROGRAM_ID: system_program,
    TOKEN_PROGRAM_ID: token_program,
    ASSOCIATED_TOKEN_PROGRAM_ID: associated_token_program,
    METADATA_PROGRAM_ID: metadata_program,
    ESCROW_PROGRAM_ID: escrow_program.process_instruction,
}


class LocalLedger:
    def __init__(self, programs=None, max_recent_blockhashes: int = MAX_RECENT_BLOCKHASHES):
        self.programs = dict(programs or DEFAULT_PROGRAMS)
        self.accounts: Dict[Pubkey, AccountState] = {}
        self._blockhashes = deque(maxlen=max_recent_blockhashes)
        self._processed: Set[Signature] = set()
        self._slot = 0
        self._lock = threading.Lock()

    def airdrop(self, address: Pubkey, lamports: int) -> None:
        with self._lock:
            account = self.accounts.setdefault(address, AccountState())
            account.lamports += lamports

    def get_balance(self, address: Pubkey) -> int:
        with self._lock:
            account = self.accounts.get(address)
            return account.lamports if account else 0

    def get_latest_blockhash(self) -> Hash:
        with self._lock:
            self._slot += 1
            blockhash = Hash(hashlib.sha256(f"artmint-slot-{self._slot}".encode()).digest())
            self._blockhashes.append(blockhash)
            return blockhash

    def expire_blockhashes(self) -> None:
        with self._lock:
            self._blockhashes.clear()

    def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        return rent_exempt_minimum(size)

    def get_account(self, address: Pubkey) -> Optional[LedgerAccount]:
        with self._lock:
            account = self.accounts.get(address)
            if account is None or account.is_empty:
                return None
            return LedgerAccount(
                lamports=account.lamports,
                data=account.data,
                owner=account.owner,
                executable=account.executable,
            )

    def send_and_confirm_transaction(self, tx: VersionedTransaction) -> Signature:
        try:
            tx = VersionedTransaction.from_bytes(bytes(tx))
        except Exception as exc:  # noqa: BLE001
            raise LedgerSubmissionFailure(f"Malformed transaction: {exc}", reason="malformed") from exc
        with self._lock:
            return self._process(tx)

    def _reject(self, message: str, reason: str) -> LedgerSubmissionFailure:
        logger.warning("ledger_tx_rejected reason=%s detail=%s", reason, message)
        return LedgerSubmissionFailure(message, reason=reason)

    def _process(self, tx: VersionedTransaction) -> Signature:
        message = tx.message
        header = message.header
        keys = list(message.account_keys)
        required = header.num_required_signatures
        signatures = list(tx.signatures)
        if getattr(message, "address_table_lookups", None):
            raise self._reject("Address lookup tables are not supported", "unsupported")
        if required == 0 or len(signatures) != required:
            raise self._reject(f"Expected {required} signatures, got {len(signatures)}", "signature_count")
        payload = to_bytes_versioned(message)
        for key, signature in zip(keys[:required], signatures):
            if not signature.verify(key, payload):
                raise self._reject(f"Signature verification failed for {key}", "signature_verification_failed")
        if message.recent_blockhash not in self._blockhashes:
            raise self._reject("Blockhash not found", "blockhash_not_found")
        if signatures[0] in self._processed:
            raise self._reject(f"Transaction {signatures[0]} already processed", "already_processed")

        writable = set()
        for index, key in enumerate(keys):
            if index < required:
                if index < required - header.num_readonly_signed_accounts:
                    writable.add(key)
            elif index < len(keys) - header.num_readonly_unsigned_accounts:
                writable.add(key)

        snapshot = {address: replace(account) for address, account in self.accounts.items()}
        ctx = InvokeContext(accounts=snapshot, signers=set(keys[:required]), writable=writable, programs=self.programs)
        for position, compiled in enumerate(message.instructions):
            try:
                metas = [
                    AccountMeta(pubkey=keys[index], is_signer=index < required, is_writable=keys[index] in writable)
                    for index in compiled.accounts
                ]
                ix = Instruction(program_id=keys[compiled.program_id_index], data=bytes(compiled.data), accounts=metas)
                ctx.execute(ix)
            except ProgramError as exc:
                raise self._reject(f"Instruction {position} failed: {exc.message}", exc.code) from exc
            except (ValueError, IndexError) as exc:
                raise self._reject(f"Instruction {position} failed: {exc}", "InvalidAccountData") from exc

        fee = LAMPORTS_PER_SIGNATURE * required
        fee_payer = snapshot.get(keys[0])
        if fee_payer is None or fee_payer.lamports < fee:
            raise self._reject(f"Fee payer {keys[0]} cannot cover {fee} lamports", "insufficient_funds_for_fee")
        fee_payer.lamports -= fee

        self.accounts = {address: account for address, account in snapshot.items() if not account.is_empty}
        self._processed.add(signatures[0])
        logger.info("ledger_tx_committed sig=%s instructions=%s fee=%s", signatures[0], len(message.instructions), fee)
        return signatures[0]
