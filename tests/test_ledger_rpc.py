from types import SimpleNamespace

import httpx
import pytest
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature

from errors import ConfirmationTimeout, LedgerQueryFailure, LedgerSubmissionFailure
from ledger import RpcLedger


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


class FakeClient:
    def __init__(self, statuses=None, fail=None, send_error=None):
        self.send_error = send_error
        self.statuses = list(statuses or [])
        self.fail = fail or set()
        self.sent = []

    def _check(self, name):
        if name in self.fail:
            raise RuntimeError(f"{name} unavailable")

    def get_latest_blockhash(self, commitment=None):
        self._check("blockhash")
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default()))

    def get_minimum_balance_for_rent_exemption(self, size):
        self._check("rent")
        return SimpleNamespace(value=(128 + size) * 6960)

    def get_account_info(self, address, commitment=None):
        self._check("account")
        return SimpleNamespace(value=None)

    def get_balance(self, address, commitment=None):
        return SimpleNamespace(value=42)

    def send_raw_transaction(self, raw, opts=None):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw)
        return SimpleNamespace(value=Signature.default())

    def get_signature_statuses(self, signatures):
        status = self.statuses.pop(0) if self.statuses else None
        return SimpleNamespace(value=[status])


class FakeTx:
    signatures = [Signature.default()]

    def __bytes__(self):
        return b"tx"


def make_ledger(client, timeout=5):
    clock = FakeClock()
    return RpcLedger(client, confirmation_timeout=timeout, poll_interval=1.0, sleep=clock.sleep, clock=clock.time)


def test_queries():
    ledger = make_ledger(FakeClient())
    assert ledger.get_latest_blockhash() == Hash.default()
    assert ledger.get_minimum_balance_for_rent_exemption(82) == 1461600
    assert ledger.get_account(Pubkey.new_unique()) is None
    assert ledger.get_balance(Pubkey.new_unique()) == 42


@pytest.mark.parametrize(
    "name,call",
    [
        ("blockhash", lambda ledger: ledger.get_latest_blockhash()),
        ("rent", lambda ledger: ledger.get_minimum_balance_for_rent_exemption(82)),
        ("account", lambda ledger: ledger.get_account(Pubkey.new_unique())),
    ],
)
def test_query_failures_are_retryable(name, call):
    ledger = make_ledger(FakeClient(fail={name}))
    with pytest.raises(LedgerQueryFailure) as exc_info:
        call(ledger)
    assert exc_info.value.retryable


def test_confirmed():
    client = FakeClient(statuses=[None, SimpleNamespace(err=None, confirmation_status="confirmed")])
    assert make_ledger(client).send_and_confirm_transaction(FakeTx()) == Signature.default()
    assert client.sent == [b"tx"]


def test_rejected_on_send():
    with pytest.raises(LedgerSubmissionFailure) as exc_info:
        make_ledger(FakeClient(send_error=RPCException("preflight failed"))).send_and_confirm_transaction(FakeTx())
    assert not exc_info.value.retryable
    assert not exc_info.value.outcome_unknown
    assert exc_info.value.reason == "rejected"


def test_failed_status():
    client = FakeClient(statuses=[SimpleNamespace(err="InstructionError", confirmation_status="confirmed")])
    with pytest.raises(LedgerSubmissionFailure) as exc_info:
        make_ledger(client).send_and_confirm_transaction(FakeTx())
    assert exc_info.value.reason == "failed"


def test_timeout_is_unknown_outcome():
    with pytest.raises(ConfirmationTimeout) as exc_info:
        make_ledger(FakeClient(), timeout=3).send_and_confirm_transaction(FakeTx())
    assert exc_info.value.outcome_unknown
    assert exc_info.value.signature == str(Signature.default())
    assert exc_info.value.to_dict()["outcome_unknown"] is True


def wrapped(cause):
    try:
        raise SolanaRpcException("request failed") from cause
    except SolanaRpcException as exc:
        return exc


@pytest.mark.parametrize("error", [httpx.ReadTimeout("timed out"), wrapped(httpx.ReadTimeout("timed out"))])
def test_send_timeout_is_unknown_outcome(error):
    client = FakeClient(send_error=error)
    with pytest.raises(ConfirmationTimeout) as exc_info:
        make_ledger(client, timeout=3).send_and_confirm_transaction(FakeTx())
    assert exc_info.value.outcome_unknown
    assert exc_info.value.signature == str(Signature.default())


def test_send_timeout_then_landed():
    client = FakeClient(
        statuses=[SimpleNamespace(err=None, confirmation_status="confirmed")],
        send_error=httpx.ReadTimeout("timed out"),
    )
    assert make_ledger(client).send_and_confirm_transaction(FakeTx()) == Signature.default()


@pytest.mark.parametrize("error", [httpx.ConnectError("refused"), wrapped(httpx.ConnectError("refused"))])
def test_unreachable_node_is_not_sent(error):
    with pytest.raises(LedgerSubmissionFailure) as exc_info:
        make_ledger(FakeClient(send_error=error)).send_and_confirm_transaction(FakeTx())
    assert exc_info.value.reason == "unreachable"
    assert not exc_info.value.outcome_unknown
