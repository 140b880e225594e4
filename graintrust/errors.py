# graintrust/errors.py
"""
Error taxonomy for the ledger automation.

ConfigurationError   fatal, needs operator action
ValidationError      caused by the caller, retrying will not help
TransientInfrastructureError
                     ledger / credential authority unreachable or timed out,
                     safe to retry (resume logic picks up where it stopped)
ConflictError        resolved internally by re-reading authoritative state
ConsistencyError     reported next to an otherwise successful result
"""
from typing import Any


class GrainTrustError(Exception):
    kind = "error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict:
        payload = {
            "success": False,
            "error": self.message,
            "kind": self.kind,
            "retryable": self.retryable,
        }
        payload.update(self.details)
        return payload


# ================= CONFIGURATION =================

class ConfigurationError(GrainTrustError):
    kind = "configuration"


class AdminIdentityMissingError(ConfigurationError):
    def __init__(self, label: str):
        super().__init__(
            f"Admin identity '{label}' not found in wallet. Run admin enrollment first.",
            identity=label,
        )


# ================= VALIDATION =================

class ValidationError(GrainTrustError):
    kind = "validation"


class BatchNotFoundError(ValidationError):
    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} not found", batchId=batch_id)


class CertificateNotFoundError(ValidationError):
    def __init__(self, certificate_id: str):
        super().__init__("Certificate not found", certificateId=certificate_id)


class IncompleteBatchError(ValidationError):
    """Raised when a batch (or its ledger record) does not meet the completion policy."""

    def __init__(self, message: str, missing: list | None = None, **details: Any):
        self.missing = list(missing or [])
        super().__init__(
            message,
            insufficientStages=[m.model_dump() for m in self.missing],
            **details,
        )


# ================= TRANSIENT =================

class TransientInfrastructureError(GrainTrustError):
    kind = "transient"
    retryable = True


class LedgerUnavailableError(TransientInfrastructureError):
    pass


class LedgerTimeoutError(TransientInfrastructureError):
    """The ledger did not answer in time; a submitted transaction may or may not have committed."""

    def __init__(self, fn: str, timeout: float):
        super().__init__(
            f"Ledger call {fn} timed out after {timeout}s; commit state unknown",
            fn=fn,
        )
        self.fn = fn


class CredentialAuthorityUnavailableError(TransientInfrastructureError):
    pass


# ================= CONFLICT =================

class ConflictError(GrainTrustError):
    kind = "conflict"


class LedgerConflictError(ConflictError):
    pass


class RegistrationConflictError(ConflictError):
    pass


class SubmissionLeaseLostError(ConflictError):
    """Another worker took over the SUBMITTING lease while this run still held the batch."""

    def __init__(self, batch_id: str):
        super().__init__(f"Submission lease for {batch_id} was taken over", batchId=batch_id)


# ================= CONSISTENCY =================

class ConsistencyError(GrainTrustError):
    kind = "consistency"
