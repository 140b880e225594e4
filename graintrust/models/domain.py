# graintrust/models/domain.py

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BatchStatus(str, Enum):
    UNVERIFIED = "UNVERIFIED"
    SUBMITTING = "SUBMITTING"
    LEDGER_VERIFIED = "LEDGER_VERIFIED"
    ERROR = "ERROR"


class StageStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"


class SubmissionState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    BATCH_CREATING = "BATCH_CREATING"
    BATCH_CREATED = "BATCH_CREATED"
    STAGE_SUBMITTING = "STAGE_SUBMITTING"
    ALL_STAGES_SUBMITTED = "ALL_STAGES_SUBMITTED"
    DONE = "DONE"
    ERROR = "ERROR"


class StagePolicy(BaseModel):
    """Fixed ordered stages and the evidence each one needs."""

    model_config = ConfigDict(frozen=True)

    stage_names: tuple[str, ...]
    min_evidence_per_stage: int = 2

    @property
    def required_stages(self) -> int:
        return len(self.stage_names)


# ================= SYSTEM OF RECORD =================

class Evidence(BaseModel):
    locator: str
    fingerprint: str
    captured_at: Optional[datetime] = None


class Stage(BaseModel):
    stage_id: str
    batch_id: str
    ordinal: int
    name: str
    evidence: List[Evidence] = []
    status: StageStatus = StageStatus.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None

    @property
    def evidence_count(self) -> int:
        return len(self.evidence)

    @property
    def first_evidence(self) -> Optional[Evidence]:
        return self.evidence[0] if self.evidence else None


class Batch(BaseModel):
    batch_id: str
    batch_code: str
    owner_id: str
    farmer_name: Optional[str] = None
    crop_type: str
    variety: Optional[str] = None
    quantity: str
    location: Optional[str] = None
    verification_status: BatchStatus = BatchStatus.UNVERIFIED
    verified: bool = False
    last_committed_index: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None

    @property
    def location_descriptor(self) -> str:
        return self.location or "Unknown"


class Principal(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    role: str = "Farmer"


class IdentityHandle(BaseModel):
    label: str
    principal_id: str
    msp_id: str
    type: str = "X.509"


# ================= LEDGER =================

class LedgerStageEntry(BaseModel):
    stage: str
    image_hash: Optional[str] = None
    location: Optional[str] = None
    timestamp: Optional[str] = None
    verified_by: Optional[str] = None

    def canonical(self) -> dict:
        return {
            "stage": self.stage,
            "imageHash": self.image_hash,
            "location": self.location,
            "timestamp": self.timestamp,
            "verifiedBy": self.verified_by,
        }


class LedgerBatchRecord(BaseModel):
    """The ledger's own (authoritative) view of a batch."""

    batch_code: str
    farmer_name: Optional[str] = None
    grain_type: Optional[str] = None
    quantity: Optional[str] = None
    current_stage: Optional[str] = None
    stages: List[LedgerStageEntry] = []

    @property
    def stage_count(self) -> int:
        return len(self.stages)

    @classmethod
    def from_ledger(cls, data: dict) -> "LedgerBatchRecord":
        return cls(
            batch_code=data.get("batchId"),
            farmer_name=data.get("farmerName"),
            grain_type=data.get("grainType"),
            quantity=data.get("quantity"),
            current_stage=data.get("currentStage"),
            stages=[
                LedgerStageEntry(
                    stage=s.get("stage"),
                    image_hash=s.get("imageHash"),
                    location=s.get("location"),
                    timestamp=s.get("timestamp"),
                    verified_by=s.get("verifiedBy"),
                )
                for s in data.get("stages") or []
            ],
        )


class LedgerRef(BaseModel):
    """Reference to a committed ledger transaction."""

    fn: str
    tx_id: Optional[str] = None
    stage_index: int
    fingerprint: str
    committed_at: datetime


# ================= COMPLETION =================

class StageDeficiency(BaseModel):
    stage: str
    ordinal: int
    present: bool
    count: int
    deficit: int


class CompletionReport(BaseModel):
    complete: bool
    missing: List[StageDeficiency] = []
    stage_counts: dict[str, int] = {}


# ================= SUBMISSION =================

class SubmissionResult(BaseModel):
    batch_id: str
    batch_code: str
    state: SubmissionState
    created: bool = False
    submitted_stages: List[str] = []
    ledger_stage_count: int = 0
    last_committed_index: Optional[int] = None
    warnings: List[str] = []
    skipped: bool = False
    error: Optional[str] = None


# ================= CERTIFICATES =================

class Certificate(BaseModel):
    certificate_id: str
    batch_id: str
    batch_code: str
    content_hash: str
    issued_at: datetime
    expires_at: Optional[datetime] = None
    verification_url: str
    snapshot: dict = Field(default_factory=dict)
