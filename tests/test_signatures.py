import pytest
from solders.keypair import Keypair

from errors import ConfigurationError, SignatureInvalid
from settings import Settings
from signatures import SignatureVerifier, verify

MESSAGE = b"mint Art#1"


@pytest.fixture
def creator():
    return Keypair()


def test_valid_signature(creator):
    sig = creator.sign_message(MESSAGE)
    assert verify(MESSAGE, bytes(sig), creator.pubkey())


def test_base58_signature_and_pubkey(creator):
    sig = creator.sign_message(MESSAGE)
    assert verify(MESSAGE, str(sig), str(creator.pubkey()))


def test_tampered_message(creator):
    sig = creator.sign_message(MESSAGE)
    assert not verify(b"mint Art#2", bytes(sig), creator.pubkey())


def test_wrong_key(creator):
    sig = creator.sign_message(MESSAGE)
    assert not verify(MESSAGE, bytes(sig), Keypair().pubkey())


@pytest.mark.parametrize("length", [0, 63, 65])
def test_wrong_length_rejected(creator, length):
    assert not verify(MESSAGE, bytes(length), creator.pubkey())


def test_unparsable_signature_string(creator):
    assert not verify(MESSAGE, "not-a-signature", creator.pubkey())


def test_unparsable_pubkey(creator):
    sig = creator.sign_message(MESSAGE)
    assert not verify(MESSAGE, bytes(sig), "not-a-pubkey")


class TestSignatureVerifier:

    def test_require_passes(self, creator):
        sig = creator.sign_message(MESSAGE)
        SignatureVerifier().require(MESSAGE, str(sig), creator.pubkey())

    def test_require_raises(self, creator):
        with pytest.raises(SignatureInvalid):
            SignatureVerifier().require(MESSAGE, bytes(64), creator.pubkey())

    def test_disabled_accepts_anything(self, creator):
        verifier = SignatureVerifier(verification_disabled=True)
        assert verifier.verify(MESSAGE, bytes(64), creator.pubkey())

    def test_from_settings_enabled_by_default(self):
        verifier = SignatureVerifier.from_settings(Settings(app_env="production"))
        assert not verifier.verification_disabled

    def test_from_settings_disabled_in_test_env(self):
        verifier = SignatureVerifier.from_settings(Settings(app_env="test", signature_verification_disabled=True))
        assert verifier.verification_disabled

    def test_from_settings_refuses_bypass_in_production(self):
        with pytest.raises(ConfigurationError):
            SignatureVerifier.from_settings(Settings(app_env="production", signature_verification_disabled=True))
