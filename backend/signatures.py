import logging
from typing import Union

from solders.pubkey import Pubkey
from solders.signature import Signature

from errors import ConfigurationError, SignatureInvalid

SIGNATURE_LEN = 64
TEST_ENVIRONMENTS = {"development", "test", "local"}

logger = logging.getLogger("artmint")


def _parse_signature(signature: Union[bytes, str]):
    if isinstance(signature, (bytes, bytearray)):
        if len(signature) != SIGNATURE_LEN:
            logger.info("signature_rejected reason=length len=%s", len(signature))
            return None
        return Signature.from_bytes(bytes(signature))
    try:
        return Signature.from_string(signature)
    except Exception:  # noqa: BLE001
        logger.info("signature_rejected reason=unparsable")
        return None


def _parse_pubkey(public_key: Union[Pubkey, str, bytes]):
    if isinstance(public_key, Pubkey):
        return public_key
    try:
        if isinstance(public_key, (bytes, bytearray)):
            return Pubkey.from_bytes(bytes(public_key))
        return Pubkey.from_string(public_key)
    except Exception:  # noqa: BLE001
        logger.info("signature_rejected reason=bad_pubkey")
        return None


def verify(message: bytes, signature: Union[bytes, str], claimed_public_key: Union[Pubkey, str, bytes]) -> bool:
    """Ed25519 check of `signature` over the raw message bytes."""
    sig = _parse_signature(signature)
    if sig is None:
        return False
    pubkey = _parse_pubkey(claimed_public_key)
    if pubkey is None:
        return False
    ok = sig.verify(pubkey, bytes(message))
    if not ok:
        logger.info("signature_rejected reason=mismatch pubkey=%s", pubkey)
    return ok


class SignatureVerifier:
    def __init__(self, verification_disabled: bool = False):
        self.verification_disabled = verification_disabled

    @classmethod
    def from_settings(cls, settings) -> "SignatureVerifier":
        if not settings.signature_verification_disabled:
            return cls()
        if settings.app_env.lower() not in TEST_ENVIRONMENTS:
            raise ConfigurationError(
                f"Signature verification cannot be disabled when APP_ENV={settings.app_env}"
            )
        logger.warning("Signature verification DISABLED (APP_ENV=%s)", settings.app_env)
        return cls(verification_disabled=True)

    def verify(self, message: bytes, signature: Union[bytes, str], public_key) -> bool:
        if self.verification_disabled:
            return True
        return verify(message, signature, public_key)

    def require(self, message: bytes, signature: Union[bytes, str], public_key) -> None:
        if not self.verify(message, signature, public_key):
            raise SignatureInvalid("Invalid signature")
