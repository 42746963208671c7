from typing import Optional


class MarketplaceError(Exception):
    code = "MARKETPLACE_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class InvalidInput(MarketplaceError):
    code = "INVALID_INPUT"
    status_code = 400


class SignatureInvalid(MarketplaceError):
    code = "SIGNATURE_INVALID"
    status_code = 401


class DerivationFailure(MarketplaceError):
    """No off-curve address exists for the seeds. Treated as fatal."""

    code = "DERIVATION_FAILURE"
    status_code = 500


class InstructionBuildFailure(MarketplaceError):
    code = "INSTRUCTION_BUILD_FAILURE"
    status_code = 500


class LedgerQueryFailure(MarketplaceError):
    code = "LEDGER_QUERY_FAILURE"
    status_code = 503
    retryable = True


class LedgerSubmissionFailure(MarketplaceError):
    """
    The ledger rejected the transaction, or we could not tell whether it landed.
    Never blindly resubmit: re-read on-ledger state first.
    """

    code = "LEDGER_SUBMISSION_FAILURE"
    status_code = 502
    outcome_unknown = False

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reason"] = self.reason
        data["outcome_unknown"] = self.outcome_unknown
        return data


class ConfirmationTimeout(LedgerSubmissionFailure):
    code = "CONFIRMATION_TIMEOUT"
    status_code = 504
    outcome_unknown = True

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message, reason="timeout")
        self.signature = signature


class StateViolation(MarketplaceError):
    code = "STATE_VIOLATION"
    status_code = 409


class ProviderError(MarketplaceError):
    code = "PROVIDER_ERROR"
    status_code = 502


class ProviderTimedOut(ProviderError):
    code = "PROVIDER_TIMED_OUT"
    status_code = 504


class ConfigurationError(MarketplaceError):
    code = "CONFIGURATION_ERROR"
    status_code = 500
