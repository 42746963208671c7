import base64
import logging
from dataclasses import dataclass
from typing import List, Sequence

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from errors import InstructionBuildFailure, InvalidInput
from ledger import Ledger
from tx_builder import instruction_to_dict

logger = logging.getLogger("artmint")


@dataclass
class PreparedTransaction:
    """Unsigned v0 message for a wallet to sign and hand back to /tx/submit."""

    message_b64: str
    recent_blockhash: str
    fee_payer: str
    instructions: List[dict]

    def to_dict(self) -> dict:
        return {
            "message_b64": self.message_b64,
            "recent_blockhash": self.recent_blockhash,
            "fee_payer": self.fee_payer,
            "instructions": self.instructions,
        }


def submit_transaction(
    ledger: Ledger,
    instructions: Sequence[Instruction],
    payer: Keypair,
    signers: Sequence[Keypair] = (),
) -> Signature:
    """
    Sign with a blockhash fetched right now, submit, block until confirmed.

    No retry happens here. A stale blockhash comes back as a submission failure;
    the caller rebuilds from scratch rather than resending the same bytes.
    """
    blockhash = ledger.get_latest_blockhash()
    keypairs = [payer] + [kp for kp in signers if kp.pubkey() != payer.pubkey()]
    try:
        message = MessageV0.try_compile(payer.pubkey(), list(instructions), [], blockhash)
        tx = VersionedTransaction(message, keypairs)
    except Exception as exc:  # noqa: BLE001
        raise InstructionBuildFailure(f"Failed to compile or sign transaction: {exc}") from exc
    signature = ledger.send_and_confirm_transaction(tx)
    logger.info("tx_confirmed sig=%s payer=%s instructions=%s", signature, payer.pubkey(), len(instructions))
    return signature


def prepare_transaction(ledger: Ledger, instructions: Sequence[Instruction], payer: Pubkey) -> PreparedTransaction:
    blockhash = ledger.get_latest_blockhash()
    try:
        message = MessageV0.try_compile(payer, list(instructions), [], blockhash)
    except Exception as exc:  # noqa: BLE001
        raise InstructionBuildFailure(f"Failed to compile transaction: {exc}") from exc
    return PreparedTransaction(
        message_b64=base64.b64encode(bytes(message)).decode(),
        recent_blockhash=str(blockhash),
        fee_payer=str(payer),
        instructions=[instruction_to_dict(ix) for ix in instructions],
    )


def submit_signed_transaction(ledger: Ledger, signed_tx_b64: str) -> Signature:
    try:
        raw = base64.b64decode(signed_tx_b64, validate=True)
        tx = VersionedTransaction.from_bytes(raw)
    except Exception as exc:  # noqa: BLE001
        raise InvalidInput(f"signed transaction is not a base64 v0 transaction: {exc}") from exc
    signature = ledger.send_and_confirm_transaction(tx)
    logger.info("wallet_tx_confirmed sig=%s", signature)
    return signature
