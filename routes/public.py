# routes/public.py
"""Public verification: certificates and the ledger's own view of a batch."""

from fastapi import APIRouter, Depends, HTTPException

from graintrust.database import certificate_helper, utcnow
from graintrust.fingerprint import fingerprint
from graintrust.models.api import (
    CertificateRequest,
    LedgerBatchView,
    LedgerStageView,
    VerifyImageRequest,
)
from graintrust.models.domain import LedgerBatchRecord
from graintrust.services import Services, get_services

router = APIRouter(tags=["public"])


def _ledger_view(record: LedgerBatchRecord, services: Services) -> LedgerBatchView:
    policy = services.settings.stage_policy
    stage_names = list(dict.fromkeys(s.stage for s in record.stages))
    return LedgerBatchView(
        batchId=record.batch_code,
        farmerName=record.farmer_name,
        cropType=record.grain_type or "Unknown",
        quantity=record.quantity,
        currentStage=record.current_stage,
        stages=[LedgerStageView(**entry.canonical()) for entry in record.stages],
        uniqueStages=len(stage_names),
        totalImages=record.stage_count,
        stageNames=stage_names,
        isComplete=len(stage_names) >= policy.required_stages,
    )


# =====================================================
# CERTIFICATES
# =====================================================

@router.post("/generate-certificate")
async def generate_certificate(body: CertificateRequest, services: Services = Depends(get_services)):
    certificate = await services.issuer.issue(body.batchId)
    return {"success": True, **certificate_helper(certificate)}


@router.get("/verify/{certificate_id}")
async def verify_certificate(certificate_id: str, services: Services = Depends(get_services)):
    certificate = await services.issuer.lookup(certificate_id)
    return {
        "success": True,
        "certificate": certificate_helper(certificate),
        "verified": True,
        "retrievedAt": utcnow().isoformat(),
    }


# =====================================================
# LEDGER QUERIES
# =====================================================

@router.get("/api/ledger/batches/{batch_code}", response_model=LedgerBatchView)
async def ledger_batch(batch_code: str, services: Services = Depends(get_services)):
    identity = await services.provisioner.service_identity()
    async with services.gateway.session(identity) as ledger:
        record = await ledger.query_batch(batch_code)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Batch {batch_code} not found on ledger")
    return _ledger_view(record, services)


@router.get("/api/ledger/batches/{batch_code}/history")
async def ledger_history(batch_code: str, services: Services = Depends(get_services)):
    identity = await services.provisioner.service_identity()
    async with services.gateway.session(identity) as ledger:
        history = await ledger.history(batch_code)
    return {"success": True, "batchCode": batch_code, "data": history}


@router.post("/api/ledger/verify-image")
async def verify_image(body: VerifyImageRequest, services: Services = Depends(get_services)):
    expected = fingerprint(body.imageUrl)
    identity = await services.provisioner.service_identity()
    async with services.gateway.session(identity) as ledger:
        verified = await ledger.verify_image_hash(body.batchCode, body.stageIndex, expected)
    return {"success": True, "verified": verified, "expectedHash": expected}
