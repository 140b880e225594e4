# routes/batches.py
from fastapi import APIRouter, Depends

from graintrust.completion import stage_counts_of
from graintrust.database import batch_helper, stage_helper
from graintrust.errors import BatchNotFoundError
from graintrust.intake import parse_evidence_submission
from graintrust.models.api import EvidenceRequest, TriggerRequest, WebhookPayload
from graintrust.services import Services, get_services

router = APIRouter(tags=["batches"])


# =====================================================
# TRIGGERS
# =====================================================

@router.post("/api/automation/trigger")
async def trigger_batch(body: TriggerRequest, services: Services = Depends(get_services)):
    """Starts ledger submission for a complete batch; answers before the work is done."""
    return await services.dispatcher.trigger(body.batchId)


@router.post("/webhook/batch-updated")
async def batch_updated_webhook(payload: WebhookPayload, services: Services = Depends(get_services)):
    record = payload.record
    if record.verificationStatus == "LEDGER_VERIFIED" or record.verified is True:
        return {"accepted": False, "batchId": record.id, "reason": "already_verified"}
    return await services.dispatcher.trigger(record.id)


@router.post("/api/process-batch/{batch_id}")
async def process_batch(batch_id: str, services: Services = Depends(get_services)):
    """Manual, synchronous run: submission followed by certificate issuance."""
    outcome = await services.dispatcher.process(batch_id)
    return {"success": True, **outcome}


@router.post("/api/process-all-pending")
async def process_all_pending(services: Services = Depends(get_services)):
    return await services.dispatcher.sweep()


# =====================================================
# STATUS
# =====================================================

@router.get("/api/batch-status/{batch_id}")
async def batch_status(batch_id: str, services: Services = Depends(get_services)):
    batch = await services.batches.get_batch_doc(batch_id)
    if not batch:
        raise BatchNotFoundError(batch_id)

    stage_docs = await services.batches.list_stage_docs(batch_id)
    stages = await services.batches.list_stages(batch_id)
    report = services.evaluator.evaluate_stages(stages)

    return {
        "batch": batch_helper(batch),
        "complete": report.complete,
        "inFlight": services.dispatcher.in_flight(batch_id),
        "stageCounts": stage_counts_of(stages),
        "missing": [m.model_dump() for m in report.missing],
        "stages": [stage_helper(s) for s in stage_docs],
    }


# =====================================================
# EVIDENCE
# =====================================================

@router.post("/api/evidence")
async def record_evidence(body: EvidenceRequest, services: Services = Depends(get_services)):
    submission = parse_evidence_submission(body)
    batch, added, report = await services.intake.record(submission)

    response = {
        "success": True,
        "batchId": batch.batch_id,
        "batchCode": batch.batch_code,
        "stage": submission.stage,
        "added": added,
        "complete": report.complete,
        "missing": [m.model_dump() for m in report.missing],
    }
    if report.complete and services.settings.auto_submit:
        response["submission"] = await services.dispatcher.trigger(batch.batch_id)
    return response
