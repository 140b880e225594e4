import asyncio
import json

import httpx
import pytest

from graintrust.config import FARMING_STAGES
from graintrust.errors import (
    IncompleteBatchError,
    LedgerTimeoutError,
    LedgerUnavailableError,
)
from graintrust.fingerprint import fingerprint
from graintrust.models.domain import BatchStatus, StageStatus, SubmissionState
from graintrust.services import Services

from conftest import BATCH_CODE, FakeLedger, seed_batch


async def test_full_submission_creates_then_adds_in_order(services, ledger, complete_batch):
    result = await services.orchestrator.run(complete_batch.batch_id)

    assert result.state == SubmissionState.DONE
    assert result.created
    assert result.ledger_stage_count == 7
    assert result.last_committed_index == 6
    assert result.warnings == []

    creates = ledger.submitted("createGrainBatch")
    adds = ledger.submitted("addStage")
    assert len(creates) == 1
    assert creates[0] == [BATCH_CODE, "Ravi Kumar", "Wheat", "500 kg", fingerprint("u1"), "Sehore"]
    assert [a[1] for a in adds] == FARMING_STAGES[1:]
    # one fingerprint per stage, taken from the stage's first evidence item
    assert [a[2] for a in adds] == [fingerprint(f"u{2 * i + 1}") for i in range(1, 7)]
    assert ledger.stage_names() == FARMING_STAGES


async def test_transactions_are_signed_by_the_owner_identity(services, ledger, complete_batch):
    await services.orchestrator.run(complete_batch.batch_id)

    submits = [c for c in ledger.calls if c["mode"] == "submit"]
    assert {c["identity"] for c in submits} == {"farmer_FARMER-001"}
    assert {c["msp"] for c in submits} == {"FarmerOrgMSP"}


async def test_projection_reconciled_after_success(services, complete_batch):
    await services.orchestrator.run(complete_batch.batch_id)

    batch = await services.batches.get_batch_doc(complete_batch.batch_id)
    assert batch["verification_status"] == BatchStatus.LEDGER_VERIFIED.value
    assert batch["verified"] is True
    assert batch["verified_at"] is not None
    assert batch["submission_lease_expires_at"] is None
    assert batch["ledger"]["stage_count"] == 7
    assert batch["ledger"]["create_tx"] is not None

    stages = await services.batches.list_stages(complete_batch.batch_id)
    assert all(s.status == StageStatus.VERIFIED for s in stages)
    assert all(s.verified_at is not None for s in stages)

    note = await services.database.notifications.find_one({"event": "ledger_verified"})
    assert note["user_id"] == "FARMER-001"


async def test_incomplete_batch_is_rejected_before_any_ledger_call(services, ledger, seed):
    batch = await seed(skip={"Harvesting": 1})

    with pytest.raises(IncompleteBatchError) as exc:
        await services.orchestrator.run(batch.batch_id)

    assert [m.stage for m in exc.value.missing] == ["Harvesting"]
    assert ledger.calls == []


async def test_resume_after_failure_at_stage_three(services, ledger, complete_batch):
    ledger.fail_add_at = 3

    with pytest.raises(LedgerUnavailableError) as exc:
        await services.orchestrator.run(complete_batch.batch_id)
    assert exc.value.details["lastCommittedIndex"] == 2
    assert len(ledger.records[BATCH_CODE]["stages"]) == 3

    batch = await services.batches.get_batch_doc(complete_batch.batch_id)
    assert batch["verification_status"] == BatchStatus.ERROR.value
    assert batch["last_error"]["last_committed_index"] == 2
    assert batch["last_error"]["retryable"] is True
    assert batch["submission_lease_expires_at"] is None

    ledger.fail_add_at = None
    result = await services.orchestrator.run(complete_batch.batch_id)

    assert result.state == SubmissionState.DONE
    assert not result.created
    assert result.submitted_stages == FARMING_STAGES[3:]
    assert len(ledger.submitted("createGrainBatch")) == 1
    # the failed attempt at stage 4 never committed, so every stage lands exactly once
    committed = ledger.stage_names()
    assert committed == FARMING_STAGES
    assert len(committed) == 7


async def test_resume_submits_nothing_when_ledger_is_already_complete(services, ledger, complete_batch):
    await services.orchestrator.run(complete_batch.batch_id)
    calls_before = len(ledger.submitted("addStage"))

    result = await services.orchestrator.run(complete_batch.batch_id)

    assert result.state == SubmissionState.DONE
    assert result.submitted_stages == []
    assert len(ledger.submitted("addStage")) == calls_before
    assert len(ledger.submitted("createGrainBatch")) == 1


async def test_timeout_after_commit_is_resolved_by_requery(services, ledger, complete_batch):
    ledger.timeout_after_commit = 4

    result = await services.orchestrator.run(complete_batch.batch_id)

    assert result.state == SubmissionState.DONE
    assert ledger.stage_names() == FARMING_STAGES
    assert len(ledger.submitted("addStage")) == 6


async def test_timeout_without_commit_fails_and_resumes(services, ledger, complete_batch):
    ledger.timeout_before_commit = 5

    with pytest.raises(LedgerTimeoutError):
        await services.orchestrator.run(complete_batch.batch_id)
    assert len(ledger.records[BATCH_CODE]["stages"]) == 5

    ledger.timeout_before_commit = None
    result = await services.orchestrator.run(complete_batch.batch_id)

    assert result.submitted_stages == FARMING_STAGES[5:]
    assert ledger.stage_names() == FARMING_STAGES


async def test_existing_ledger_record_resumes(services, ledger, complete_batch):
    # a previous process created the batch but died before recording it
    ledger.records[BATCH_CODE] = {
        "batchId": BATCH_CODE,
        "farmerName": "Ravi Kumar",
        "grainType": "Wheat",
        "quantity": "500 kg",
        "currentStage": FARMING_STAGES[1],
        "stages": [FakeLedger._entry(name, fingerprint(name), "Sehore", i) for i, name in enumerate(FARMING_STAGES[:2])],
    }

    result = await services.orchestrator.run(complete_batch.batch_id)

    assert not result.created
    assert result.submitted_stages == FARMING_STAGES[2:]
    assert ledger.submitted("createGrainBatch") == []
    assert ledger.stage_names() == FARMING_STAGES


async def test_concurrent_runs_produce_one_sequence(services, ledger, complete_batch):
    results = await asyncio.gather(
        services.orchestrator.run(complete_batch.batch_id),
        services.orchestrator.run(complete_batch.batch_id),
    )

    assert all(r.state == SubmissionState.DONE for r in results)
    assert sum(r.created for r in results) == 1
    assert len(ledger.submitted("createGrainBatch")) == 1
    assert len(ledger.submitted("addStage")) == 6
    assert ledger.stage_names() == FARMING_STAGES


async def test_live_lease_held_elsewhere_skips_the_run(services, ledger, complete_batch, settings):
    assert await services.batches.claim_submission(complete_batch.batch_id, settings.submission_lease_seconds)

    result = await services.orchestrator.run(complete_batch.batch_id)

    assert result.skipped
    assert ledger.calls == []


async def test_ledger_stage_name_mismatch_is_a_warning(settings, database, ca, admin):
    ledger = FakeLedger(first_stage="Farming")
    services = Services(settings, database, ledger_transport=ledger.transport, ca_transport=ca.transport)
    batch = await seed_batch(services)

    result = await services.orchestrator.run(batch.batch_id)

    assert result.state == SubmissionState.DONE
    assert len(result.warnings) == 1
    assert "Land Preparation" in result.warnings[0]
    doc = await services.batches.get_batch_doc(batch.batch_id)
    assert doc["verification_status"] == BatchStatus.LEDGER_VERIFIED.value
    assert doc["ledger"]["consistency_warnings"] == result.warnings


async def test_unavailable_ledger_marks_batch_error(services, ledger, complete_batch):
    ledger.unavailable = True

    with pytest.raises(LedgerUnavailableError):
        await services.orchestrator.run(complete_batch.batch_id)

    doc = await services.batches.get_batch_doc(complete_batch.batch_id)
    assert doc["verification_status"] == BatchStatus.ERROR.value
    assert doc["last_error"]["kind"] == "transient"


async def test_create_conflict_resumes_from_ledger(settings, database, ca, admin):
    ledger = FakeLedger()

    def racing_handler(request):
        body = json.loads(request.content)
        if body["fn"] == "createGrainBatch" and body["args"][0] not in ledger.records:
            # a competing writer commits the same batch first
            ledger.handler(request)
        return ledger.handler(request)

    services = Services(
        settings, database, ledger_transport=httpx.MockTransport(racing_handler), ca_transport=ca.transport
    )
    batch = await seed_batch(services)

    result = await services.orchestrator.run(batch.batch_id)

    assert result.state == SubmissionState.DONE
    assert not result.created
    assert result.submitted_stages == FARMING_STAGES[1:]
    assert ledger.stage_names() == FARMING_STAGES


async def test_lease_taken_over_mid_run_stops_submitting(services, ledger, complete_batch, monkeypatch):
    committed = services.reconciler.on_stage_committed

    async def commit_then_lose_lease(batch, stage, ref):
        await committed(batch, stage, ref)
        if ref.stage_index == 2:
            # the lease expired and another worker claimed the batch
            await services.database.batches.update_one(
                {"batch_id": batch.batch_id},
                {"$set": {"submission_lease_token": "other-worker"}},
            )

    monkeypatch.setattr(services.reconciler, "on_stage_committed", commit_then_lose_lease)

    result = await services.orchestrator.run(complete_batch.batch_id)

    assert result.skipped
    assert result.submitted_stages == FARMING_STAGES[:3]
    assert [a[1] for a in ledger.submitted("addStage")] == FARMING_STAGES[1:3]
    doc = await services.batches.get_batch_doc(complete_batch.batch_id)
    assert doc["verification_status"] == BatchStatus.SUBMITTING.value
    assert doc["submission_lease_token"] == "other-worker"
    assert doc["last_error"] is None


async def test_lease_is_extended_before_each_stage(services, ledger, complete_batch, settings, monkeypatch):
    renewals = []
    renew = services.batches.renew_submission

    async def counting_renew(batch_id, token, lease_seconds):
        renewals.append(token)
        return await renew(batch_id, token, lease_seconds)

    monkeypatch.setattr(services.batches, "renew_submission", counting_renew)

    result = await services.orchestrator.run(complete_batch.batch_id)

    assert result.state == SubmissionState.DONE
    assert len(renewals) == 7
    assert len(set(renewals)) == 1
    doc = await services.batches.get_batch_doc(complete_batch.batch_id)
    assert doc["submission_lease_token"] is None
    assert doc["submission_lease_expires_at"] is None


async def test_uncommitted_stage_conflict_is_retryable(settings, database, ca, admin):
    ledger = FakeLedger()

    def rejecting_handler(request):
        body = json.loads(request.content)
        if body["fn"] == "addStage" and body["args"][1] == FARMING_STAGES[2]:
            ledger.calls.append({"mode": "submit", "fn": "addStage", "args": body["args"]})
            return httpx.Response(409, json={"error": f"Stage {body['args'][1]} already exists"})
        return ledger.handler(request)

    services = Services(
        settings, database, ledger_transport=httpx.MockTransport(rejecting_handler), ca_transport=ca.transport
    )
    batch = await seed_batch(services)

    with pytest.raises(LedgerUnavailableError) as exc:
        await services.orchestrator.run(batch.batch_id)

    assert exc.value.retryable
    assert exc.value.details["lastCommittedIndex"] == 1
    assert ledger.stage_names() == FARMING_STAGES[:2]
    doc = await services.batches.get_batch_doc(batch.batch_id)
    assert doc["verification_status"] == BatchStatus.ERROR.value
    assert doc["last_error"]["kind"] == "transient"
