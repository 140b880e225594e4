# graintrust/orchestrator.py
"""
Ledger submission state machine for one batch.

    NOT_STARTED -> BATCH_CREATING -> BATCH_CREATED -> STAGE_SUBMITTING(i) ...
        -> ALL_STAGES_SUBMITTED -> DONE          (ERROR from any of them)

Progress is always derived from the ledger, never from local memory: the
batch record is re-read before every stage transaction and only stages past
the ledger's current count are submitted. Re-running after a partial
failure therefore resumes where the ledger stopped without duplicating
entries. A failed transaction ends the run; the caller re-invokes.
"""
from typing import List, Optional

import structlog

from graintrust.blockchain_client import ADD_STAGE, CREATE_BATCH, LedgerGateway, LedgerSession
from graintrust.completion import CompletionEvaluator
from graintrust.config import Settings
from graintrust.database import utcnow
from graintrust.errors import (
    ConsistencyError,
    GrainTrustError,
    IncompleteBatchError,
    LedgerConflictError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    SubmissionLeaseLostError,
)
from graintrust.fingerprint import fingerprint
from graintrust.identity import IdentityProvisioner
from graintrust.locks import KeyedLocks
from graintrust.models.domain import (
    Batch,
    LedgerBatchRecord,
    LedgerRef,
    Principal,
    Stage,
    SubmissionResult,
    SubmissionState,
)
from graintrust.reconciler import StateReconciler
from graintrust.stores import BatchStore, PrincipalDirectory

logger = structlog.get_logger(__name__)


class _Run:
    """Mutable bookkeeping for a single invocation."""

    def __init__(self, batch: Batch, stages: List[Stage]):
        self.batch = batch
        self.stages = stages
        self.state = SubmissionState.NOT_STARTED
        self.created = False
        self.submitted: List[str] = []
        self.last_committed_index: Optional[int] = None
        self.ledger_stage_count = 0
        self.warnings: List[str] = []
        self.lease_token: Optional[str] = None

    def observe(self, record: LedgerBatchRecord) -> None:
        self.ledger_stage_count = record.stage_count
        self.last_committed_index = record.stage_count - 1 if record.stage_count else None

    def result(self, error: Optional[str] = None) -> SubmissionResult:
        return SubmissionResult(
            batch_id=self.batch.batch_id,
            batch_code=self.batch.batch_code,
            state=self.state,
            created=self.created,
            submitted_stages=list(self.submitted),
            ledger_stage_count=self.ledger_stage_count,
            last_committed_index=self.last_committed_index,
            warnings=list(self.warnings),
            error=error,
        )


class LedgerSubmissionOrchestrator:
    def __init__(
        self,
        store: BatchStore,
        evaluator: CompletionEvaluator,
        directory: PrincipalDirectory,
        provisioner: IdentityProvisioner,
        gateway: LedgerGateway,
        reconciler: StateReconciler,
        settings: Settings,
    ):
        self.store = store
        self.evaluator = evaluator
        self.directory = directory
        self.provisioner = provisioner
        self.gateway = gateway
        self.reconciler = reconciler
        self.settings = settings
        self._locks = KeyedLocks()

    async def run(self, batch_id: str) -> SubmissionResult:
        # at most one run per batch in this process; the SUBMITTING lease covers other processes
        async with self._locks.hold(batch_id):
            return await self._run_exclusive(batch_id)

    async def _run_exclusive(self, batch_id: str) -> SubmissionResult:
        batch = await self.store.get_batch(batch_id)
        stages = await self.store.list_stages(batch_id)

        report = self.evaluator.evaluate_stages(stages)
        if not report.complete:
            raise IncompleteBatchError(
                f"Batch {batch.batch_code} is not complete",
                missing=report.missing,
                batchId=batch_id,
            )

        run = _Run(batch, stages)
        run.lease_token = await self.store.claim_submission(batch_id, self.settings.submission_lease_seconds)
        if run.lease_token is None:
            logger.info("submission_in_progress_elsewhere", batch_code=batch.batch_code)
            result = run.result()
            result.skipped = True
            return result

        logger.info("submission_started", batch_code=batch.batch_code, stages=len(stages))
        try:
            principal = await self.directory.get_principal(batch.owner_id)
            identity = await self.provisioner.ensure_identity(principal.id, principal.name)
            async with self.gateway.session(identity) as ledger:
                await self._drive(ledger, run, principal)
        except SubmissionLeaseLostError:
            # the new lease holder owns the batch status from here on
            logger.warning(
                "submission_lease_lost",
                batch_code=batch.batch_code,
                last_committed_index=run.last_committed_index,
            )
            result = run.result()
            result.skipped = True
            return result
        except Exception as e:
            run.state = SubmissionState.ERROR
            if isinstance(e, GrainTrustError):
                e.details["lastCommittedIndex"] = run.last_committed_index
                e.details["batchId"] = batch_id
            logger.error(
                "submission_failed",
                batch_code=batch.batch_code,
                error=str(e),
                last_committed_index=run.last_committed_index,
            )
            await self.reconciler.on_error(batch, e, run.last_committed_index)
            raise

        logger.info(
            "submission_done",
            batch_code=batch.batch_code,
            created=run.created,
            submitted=len(run.submitted),
            ledger_stages=run.ledger_stage_count,
        )
        return run.result()

    # ================= STATE MACHINE =================

    async def _drive(self, ledger: LedgerSession, run: _Run, principal: Principal) -> None:
        batch, stages = run.batch, run.stages

        record = await ledger.query_batch(batch.batch_code)
        if record is None:
            run.state = SubmissionState.BATCH_CREATING
            await self._hold_lease(run)
            record = await self._create_batch(ledger, run, principal)
        else:
            logger.info("submission_resuming", batch_code=batch.batch_code, committed=record.stage_count)
            await self.reconciler.reconcile_prefix(batch, stages, record)
        run.observe(record)
        run.state = SubmissionState.BATCH_CREATED

        expected_minimum = record.stage_count
        while True:
            record = await self._require_record(ledger, batch.batch_code)
            if record.stage_count < expected_minimum:
                raise LedgerUnavailableError(
                    f"Ledger reports {record.stage_count} stages for {batch.batch_code} "
                    f"after {expected_minimum} were committed",
                )
            run.observe(record)

            index = record.stage_count
            if index >= len(stages):
                break

            run.state = SubmissionState.STAGE_SUBMITTING
            stage = stages[index]
            await self._hold_lease(run)
            ref = await self._add_stage(ledger, run, stage, index)
            await self.reconciler.on_stage_committed(batch, stage, ref)
            run.submitted.append(stage.name)
            run.last_committed_index = index
            expected_minimum = index + 1

        run.state = SubmissionState.ALL_STAGES_SUBMITTED
        final = await self._require_record(ledger, batch.batch_code)
        run.observe(final)
        run.warnings = self._consistency_warnings(final, stages)
        for warning in run.warnings:
            logger.warning("ledger_consistency_warning", batch_code=batch.batch_code, warning=warning)

        await self.reconciler.on_sequence_complete(batch, final, run.warnings)
        run.state = SubmissionState.DONE

    async def _create_batch(self, ledger: LedgerSession, run: _Run, principal: Principal) -> LedgerBatchRecord:
        batch, first = run.batch, run.stages[0]
        image_hash = fingerprint(first.first_evidence.locator)

        try:
            result = await ledger.create_batch(
                batch.batch_code,
                principal.name,
                batch.crop_type,
                batch.quantity,
                image_hash,
                batch.location_descriptor,
            )
        except LedgerConflictError:
            # someone else created it; carry on from whatever the ledger holds
            logger.warning("create_conflict_resuming", batch_code=batch.batch_code)
            record = await self._require_record(ledger, batch.batch_code)
            await self.reconciler.reconcile_prefix(batch, run.stages, record)
            return record
        except LedgerTimeoutError:
            record = await ledger.query_batch(batch.batch_code)
            if record is None:
                raise
            logger.warning("create_committed_despite_timeout", batch_code=batch.batch_code)
            result = {}

        ref = LedgerRef(
            fn=CREATE_BATCH,
            tx_id=result.get("txId"),
            stage_index=0,
            fingerprint=image_hash,
            committed_at=utcnow(),
        )
        await self.reconciler.on_batch_created(batch, first, ref)
        run.created = True
        run.submitted.append(first.name)
        run.last_committed_index = 0
        logger.info("batch_created_on_ledger", batch_code=batch.batch_code, tx_id=ref.tx_id)
        return await self._require_record(ledger, batch.batch_code)

    async def _add_stage(self, ledger: LedgerSession, run: _Run, stage: Stage, index: int) -> LedgerRef:
        batch = run.batch
        image_hash = fingerprint(stage.first_evidence.locator)

        try:
            result = await ledger.add_stage(batch.batch_code, stage.name, image_hash, batch.location_descriptor)
        except (LedgerTimeoutError, LedgerConflictError) as e:
            # unknown commit state: the ledger decides, never resubmit blindly
            record = await ledger.query_batch(batch.batch_code)
            if record is None or record.stage_count <= index:
                if isinstance(e, LedgerConflictError):
                    raise LedgerUnavailableError(
                        f"Ledger rejected stage {stage.name} for {batch.batch_code} without committing it: {e.message}",
                        stage=stage.name,
                    ) from e
                raise
            logger.warning("stage_committed_despite_error", batch_code=batch.batch_code, stage=stage.name)
            result = {}

        logger.info("stage_committed", batch_code=batch.batch_code, stage=stage.name, index=index)
        return LedgerRef(
            fn=ADD_STAGE,
            tx_id=result.get("txId"),
            stage_index=index,
            fingerprint=image_hash,
            committed_at=utcnow(),
        )

    async def _hold_lease(self, run: _Run) -> None:
        # every ledger write happens under a freshly extended lease
        renewed = await self.store.renew_submission(
            run.batch.batch_id, run.lease_token, self.settings.submission_lease_seconds
        )
        if not renewed:
            raise SubmissionLeaseLostError(run.batch.batch_id)

    async def _require_record(self, ledger: LedgerSession, batch_code: str) -> LedgerBatchRecord:
        record = await ledger.query_batch(batch_code)
        if record is None:
            raise LedgerUnavailableError(f"Ledger has no record for {batch_code} after it was written")
        return record

    def _consistency_warnings(self, record: LedgerBatchRecord, stages: List[Stage]) -> List[str]:
        warnings = []
        required = self.settings.stage_policy.required_stages
        if record.stage_count != required:
            warnings.append(
                str(ConsistencyError(f"Ledger reports {record.stage_count} stages, expected {required}"))
            )
        for index, (entry, stage) in enumerate(zip(record.stages, stages)):
            if entry.stage != stage.name:
                warnings.append(
                    str(ConsistencyError(f"Ledger stage {index + 1} is '{entry.stage}', expected '{stage.name}'"))
                )
        return warnings
