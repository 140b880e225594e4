# graintrust/models/api.py

from typing import List, Optional, Union

from pydantic import BaseModel, Field


# ================= TRIGGERS =================

class TriggerRequest(BaseModel):
    batchId: str = Field(..., min_length=1)


class WebhookRecord(BaseModel):
    id: str = Field(..., min_length=1)
    batchCode: Optional[str] = None
    verificationStatus: Optional[str] = None
    verified: Optional[bool] = None


class WebhookPayload(BaseModel):
    type: str
    record: WebhookRecord


class CertificateRequest(BaseModel):
    batchId: str = Field(..., min_length=1)


class VerifyImageRequest(BaseModel):
    batchCode: str = Field(..., min_length=1)
    stageIndex: int = Field(..., ge=0)
    imageUrl: str = Field(..., min_length=1)


# ================= EVIDENCE =================

class FarmerDetails(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    email: Optional[str] = None
    location: Optional[str] = None


class BatchDetails(BaseModel):
    batchCode: str = Field(..., min_length=1)
    cropType: str = Field(..., min_length=1)
    variety: Optional[str] = None
    quantity: Union[float, str] = 0
    unit: str = "kg"


class EvidenceRequest(BaseModel):
    """Raw body of an evidence upload; narrowed to a FirstEvidence / SubsequentEvidence once."""

    isFirstImage: bool = False
    batchId: Optional[str] = None
    batchCode: Optional[str] = None
    stageName: str = Field(..., min_length=1)
    imageUrl: str = Field(..., min_length=1)
    farmerDetails: Optional[FarmerDetails] = None
    batchDetails: Optional[BatchDetails] = None


# ================= LEDGER VIEWS =================

class LedgerStageView(BaseModel):
    stage: str
    imageHash: Optional[str] = None
    location: Optional[str] = None
    timestamp: Optional[str] = None
    verifiedBy: Optional[str] = None


class LedgerBatchView(BaseModel):
    batchId: str
    farmerName: Optional[str] = None
    cropType: str = "Unknown"
    quantity: Optional[str] = None
    currentStage: Optional[str] = None
    stages: List[LedgerStageView] = []
    uniqueStages: int = 0
    totalImages: int = 0
    stageNames: List[str] = []
    isComplete: bool = False
