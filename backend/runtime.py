"""
Account model and invocation context shared by the locally executed programs.

A program handler has the signature ``handler(ctx, program_id, accounts, data)``
where ``accounts`` is the instruction's ordered ``AccountMeta`` list after the
signer and writable privileges have been checked against the transaction.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from pda import ProgramSigner
from tx_builder import SYS_PROGRAM_ID, U64_MAX

logger = logging.getLogger("artmint")

LAMPORTS_PER_BYTE_YEAR = 3480
EXEMPTION_THRESHOLD_YEARS = 2
ACCOUNT_STORAGE_OVERHEAD = 128
MAX_INVOKE_DEPTH = 4


def rent_exempt_minimum(size: int) -> int:
    return (ACCOUNT_STORAGE_OVERHEAD + size) * LAMPORTS_PER_BYTE_YEAR * EXEMPTION_THRESHOLD_YEARS


class ProgramError(Exception):
    def __init__(self, code: str, message: str = ""):
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message or code


def checked_add(a: int, b: int) -> int:
    total = a + b
    if total > U64_MAX:
        raise ProgramError("ArithmeticOverflow", f"{a} + {b} exceeds u64")
    return total


@dataclass
class AccountState:
    lamports: int = 0
    data: bytes = b""
    owner: Pubkey = SYS_PROGRAM_ID
    executable: bool = False

    @property
    def is_empty(self) -> bool:
        return self.lamports == 0 and not self.data


Handler = Callable[["InvokeContext", Pubkey, List[AccountMeta], bytes], None]


@dataclass
class InvokeContext:
    accounts: Dict[Pubkey, AccountState]
    signers: Set[Pubkey]
    writable: Set[Pubkey]
    programs: Dict[Pubkey, Handler]
    call_stack: List[Pubkey] = field(default_factory=list)

    @property
    def program_id(self) -> Optional[Pubkey]:
        return self.call_stack[-1] if self.call_stack else None

    def get(self, address: Pubkey) -> Optional[AccountState]:
        account = self.accounts.get(address)
        if account is None or account.is_empty:
            return None
        return account

    def exists(self, address: Pubkey) -> bool:
        return self.get(address) is not None

    def data(self, address: Pubkey) -> bytes:
        account = self.get(address)
        return account.data if account else b""

    def _require_writable(self, address: Pubkey) -> None:
        if address not in self.writable:
            raise ProgramError("ReadonlyAccount", f"{address} is not writable")

    def _require_owner(self, address: Pubkey, account: AccountState) -> None:
        if account.owner != self.program_id:
            raise ProgramError(
                "ExternalAccountModified",
                f"{address} is owned by {account.owner}, not {self.program_id}",
            )

    def write(self, address: Pubkey, data: bytes) -> None:
        account = self.accounts.get(address)
        if account is None:
            raise ProgramError("AccountNotFound", str(address))
        self._require_writable(address)
        self._require_owner(address, account)
        if len(data) != len(account.data):
            raise ProgramError("InvalidRealloc", f"{address} is {len(account.data)} bytes, got {len(data)}")
        account.data = bytes(data)

    def create(self, address: Pubkey, lamports: int, space: int, owner: Pubkey) -> None:
        self._require_writable(address)
        current = self.accounts.get(address)
        if current is not None and not current.is_empty:
            raise ProgramError("AccountAlreadyInUse", str(address))
        self.accounts[address] = AccountState(lamports=lamports, data=bytes(space), owner=owner)

    def assign(self, address: Pubkey, owner: Pubkey) -> None:
        account = self.accounts.get(address)
        if account is None:
            raise ProgramError("AccountNotFound", str(address))
        self._require_owner(address, account)
        account.owner = owner

    def debit(self, address: Pubkey, lamports: int) -> None:
        account = self.accounts.get(address)
        if account is None or account.lamports < lamports:
            have = account.lamports if account else 0
            raise ProgramError("InsufficientFunds", f"{address} has {have}, needs {lamports}")
        self._require_writable(address)
        self._require_owner(address, account)
        account.lamports -= lamports

    def credit(self, address: Pubkey, lamports: int) -> None:
        self._require_writable(address)
        account = self.accounts.setdefault(address, AccountState())
        account.lamports = checked_add(account.lamports, lamports)

    def rent_exempt(self, size: int) -> int:
        return rent_exempt_minimum(size)

    def execute(self, ix: Instruction) -> None:
        """Top-level dispatch of one transaction instruction."""
        for meta in ix.accounts:
            if meta.is_signer and meta.pubkey not in self.signers:
                raise ProgramError("MissingRequiredSignature", str(meta.pubkey))
            if meta.is_writable and meta.pubkey not in self.writable:
                raise ProgramError("ReadonlyAccount", str(meta.pubkey))
        self._dispatch(ix, list(ix.accounts))

    def invoke(self, ix: Instruction, program_signers: Iterable[ProgramSigner] = ()) -> None:
        """
        Cross-program call from the running program.

        An account may be marked signer only if it signed the transaction or is
        vouched for by a ProgramSigner derived under the calling program.
        """
        caller = self.program_id
        derived: Set[Pubkey] = set()
        for signer in program_signers:
            if signer.program_id != caller:
                raise ProgramError(
                    "PrivilegeEscalation",
                    f"{signer.address} is derived under {signer.program_id}, caller is {caller}",
                )
            derived.add(signer.address)
        metas: List[AccountMeta] = []
        for meta in ix.accounts:
            if meta.is_signer and meta.pubkey not in self.signers and meta.pubkey not in derived:
                raise ProgramError("PrivilegeEscalation", f"{meta.pubkey} did not sign")
            if meta.is_writable and meta.pubkey not in self.writable:
                raise ProgramError("PrivilegeEscalation", f"{meta.pubkey} is not writable")
            metas.append(meta)
        self._dispatch(ix, metas)

    def _dispatch(self, ix: Instruction, metas: Sequence[AccountMeta]) -> None:
        handler = self.programs.get(ix.program_id)
        if handler is None:
            raise ProgramError("UnknownProgram", str(ix.program_id))
        if len(self.call_stack) >= MAX_INVOKE_DEPTH:
            raise ProgramError("CallDepth", f"exceeded {MAX_INVOKE_DEPTH} nested invocations")
        self.call_stack.append(ix.program_id)
        try:
            handler(self, ix.program_id, list(metas), bytes(ix.data))
        finally:
            self.call_stack.pop()


def require_signer(meta: AccountMeta) -> None:
    if not meta.is_signer:
        raise ProgramError("MissingRequiredSignature", str(meta.pubkey))


def require_accounts(accounts: Sequence[AccountMeta], count: int) -> None:
    if len(accounts) < count:
        raise ProgramError("NotEnoughAccountKeys", f"expected {count}, got {len(accounts)}")
