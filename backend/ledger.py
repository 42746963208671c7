import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client as SolanaClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from errors import ConfirmationTimeout, LedgerQueryFailure, LedgerSubmissionFailure

logger = logging.getLogger("artmint")

CONFIRMATION_POLL_SECONDS = 0.8


def _may_have_been_sent(exc: BaseException) -> bool:
    """False only when the request provably never reached the node."""
    if isinstance(exc, SolanaRpcException) and exc.__cause__ is not None:
        exc = exc.__cause__
    return not isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))


@dataclass
class LedgerAccount:
    lamports: int
    data: bytes
    owner: Pubkey
    executable: bool = False


class Ledger(Protocol):
    def get_latest_blockhash(self) -> Hash: ...

    def get_minimum_balance_for_rent_exemption(self, size: int) -> int: ...

    def get_account(self, address: Pubkey) -> Optional[LedgerAccount]: ...

    def get_balance(self, address: Pubkey) -> int: ...

    def send_and_confirm_transaction(self, tx: VersionedTransaction) -> Signature: ...


class RpcLedger:
    """Ledger backed by a JSON-RPC node through solana-py."""

    def __init__(
        self,
        client: SolanaClient,
        confirmation_timeout: float = 30,
        poll_interval: float = CONFIRMATION_POLL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "RpcLedger":
        return cls(SolanaClient(settings.rpc_url), confirmation_timeout=settings.confirmation_timeout_seconds)

    def get_latest_blockhash(self) -> Hash:
        try:
            resp = self.client.get_latest_blockhash(commitment=Confirmed)
            return resp.value.blockhash
        except Exception as exc:  # noqa: BLE001
            raise LedgerQueryFailure(f"Failed to fetch blockhash: {exc}") from exc

    def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        try:
            return self.client.get_minimum_balance_for_rent_exemption(size).value
        except Exception as exc:  # noqa: BLE001
            raise LedgerQueryFailure(f"Failed to fetch rent exemption for {size} bytes: {exc}") from exc

    def get_account(self, address: Pubkey) -> Optional[LedgerAccount]:
        try:
            resp = self.client.get_account_info(address, commitment=Confirmed)
        except Exception as exc:  # noqa: BLE001
            raise LedgerQueryFailure(f"Failed to read account {address}: {exc}") from exc
        if resp.value is None or resp.value.data is None:
            return None
        value = resp.value
        return LedgerAccount(
            lamports=value.lamports,
            data=bytes(value.data),
            owner=value.owner,
            executable=value.executable,
        )

    def get_balance(self, address: Pubkey) -> int:
        try:
            return self.client.get_balance(address, commitment=Confirmed).value
        except Exception as exc:  # noqa: BLE001
            raise LedgerQueryFailure(f"Failed to read balance of {address}: {exc}") from exc

    def send_and_confirm_transaction(self, tx: VersionedTransaction) -> Signature:
        try:
            resp = self.client.send_raw_transaction(
                bytes(tx), opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            )
        except RPCException as exc:
            logger.warning("ledger_send_rejected error=%s", exc)
            raise LedgerSubmissionFailure(f"Transaction rejected: {exc}", reason="rejected") from exc
        except Exception as exc:  # noqa: BLE001
            if not _may_have_been_sent(exc):
                logger.warning("ledger_send_failed error=%s", exc)
                raise LedgerSubmissionFailure(f"Transaction not sent: {exc}", reason="unreachable") from exc
            # The node may have the bytes; only the confirmation poll can tell.
            signature = tx.signatures[0]
            logger.warning("ledger_send_outcome_unknown sig=%s error=%s", signature, exc)
            self.wait_for_confirmation(signature)
            return signature
        signature = resp.value
        self.wait_for_confirmation(signature)
        return signature

    def wait_for_confirmation(self, signature: Signature) -> None:
        start = self._clock()
        while self._clock() - start < self.confirmation_timeout:
            try:
                resp = self.client.get_signature_statuses([signature])
            except Exception as exc:  # noqa: BLE001
                # The transaction is already in flight; keep polling.
                logger.warning("ledger_status_poll_failed sig=%s error=%s", signature, exc)
                resp = None
            if resp is not None and resp.value and resp.value[0]:
                status = resp.value[0]
                if status.err is not None:
                    raise LedgerSubmissionFailure(f"Transaction {signature} failed: {status.err}", reason="failed")
                if status.confirmation_status:
                    return
            self._sleep(self.poll_interval)
        logger.warning("ledger_confirmation_timeout sig=%s timeout=%s", signature, self.confirmation_timeout)
        raise ConfirmationTimeout(
            f"Transaction {signature} not confirmed within {self.confirmation_timeout}s; it may still land",
            signature=str(signature),
        )
