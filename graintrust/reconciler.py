# graintrust/reconciler.py
"""
Keeps the relational projection in line with the ledger.

Every handler is a plain "set to value" update so it can be replayed for
the same event without drifting (at-least-once delivery).
"""
from typing import List, Optional

import structlog

from graintrust.database import Database
from graintrust.errors import GrainTrustError
from graintrust.models.domain import (
    Batch,
    BatchStatus,
    LedgerBatchRecord,
    LedgerRef,
    Stage,
    StageStatus,
)
from graintrust.stores import BatchStore
from utils.notify import notify

logger = structlog.get_logger(__name__)


class StateReconciler:
    def __init__(self, store: BatchStore, database: Database):
        self.store = store
        self.notifications = database.notifications

    async def on_batch_created(self, batch: Batch, stage: Stage, ledger_ref: LedgerRef) -> None:
        await self.store.update_batch(
            batch.batch_id,
            {
                "ledger.create_tx": ledger_ref.tx_id,
                "ledger.stage_count": 1,
                "last_committed_index": 0,
            },
        )
        await self._mark_stage(stage, ledger_ref)
        logger.info("batch_created_reconciled", batch_code=batch.batch_code, tx_id=ledger_ref.tx_id)

    async def on_stage_committed(self, batch: Batch, stage: Stage, ledger_ref: LedgerRef) -> None:
        await self.store.update_batch(
            batch.batch_id,
            {
                "ledger.stage_count": ledger_ref.stage_index + 1,
                "last_committed_index": ledger_ref.stage_index,
            },
        )
        await self._mark_stage(stage, ledger_ref)
        logger.info(
            "stage_committed_reconciled",
            batch_code=batch.batch_code,
            stage=stage.name,
            index=ledger_ref.stage_index,
        )

    async def reconcile_prefix(self, batch: Batch, stages: List[Stage], record: LedgerBatchRecord) -> None:
        """Mirrors stages already on the ledger (found while resuming) into the projection."""
        for index, entry in enumerate(record.stages[: len(stages)]):
            stage = stages[index]
            if stage.status == StageStatus.VERIFIED:
                continue
            await self.store.update_stage(
                stage.stage_id,
                {
                    "status": StageStatus.VERIFIED.value,
                    "ledger": {
                        "tx_id": None,
                        "fingerprint": entry.image_hash,
                        "committed_at": entry.timestamp,
                    },
                },
            )
            await self.store.stamp_stage_verified(stage.stage_id)
        if record.stage_count:
            await self.store.update_batch(
                batch.batch_id,
                {
                    "ledger.stage_count": record.stage_count,
                    "last_committed_index": record.stage_count - 1,
                },
            )

    async def on_sequence_complete(
        self, batch: Batch, final_record: LedgerBatchRecord, warnings: Optional[List[str]] = None
    ) -> None:
        await self.store.update_batch(
            batch.batch_id,
            {
                "verification_status": BatchStatus.LEDGER_VERIFIED.value,
                "verified": True,
                "submission_lease_expires_at": None,
                "submission_lease_token": None,
                "last_error": None,
                "last_committed_index": final_record.stage_count - 1,
                "ledger.stage_count": final_record.stage_count,
                "ledger.consistency_warnings": list(warnings or []),
            },
        )
        await self.store.stamp_batch_verified(batch.batch_id)
        await notify(
            self.notifications,
            user_id=batch.owner_id,
            role="Farmer",
            title="Batch Verified On Ledger",
            message=f"Batch {batch.batch_code} is recorded on the ledger with {final_record.stage_count} stages",
            batch_id=batch.batch_id,
            category="ledger",
            event="ledger_verified",
        )
        logger.info(
            "sequence_complete_reconciled",
            batch_code=batch.batch_code,
            stages=final_record.stage_count,
            warnings=len(warnings or []),
        )

    async def on_error(self, batch: Batch, error: Exception, last_committed_index: Optional[int]) -> None:
        kind = error.kind if isinstance(error, GrainTrustError) else "unexpected"
        retryable = error.retryable if isinstance(error, GrainTrustError) else False
        await self.store.update_batch(
            batch.batch_id,
            {
                "verification_status": BatchStatus.ERROR.value,
                "submission_lease_expires_at": None,
                "submission_lease_token": None,
                "last_committed_index": last_committed_index,
                "last_error": {
                    "message": str(error),
                    "kind": kind,
                    "retryable": retryable,
                    "last_committed_index": last_committed_index,
                },
            },
        )
        await notify(
            self.notifications,
            user_id=batch.owner_id,
            role="Farmer",
            title="Ledger Submission Failed",
            message=f"Batch {batch.batch_code} could not be recorded: {error}",
            batch_id=batch.batch_id,
            category="ledger",
            event=f"error_after_{last_committed_index}",
        )
        logger.warning(
            "submission_error_reconciled",
            batch_code=batch.batch_code,
            error=str(error),
            last_committed_index=last_committed_index,
        )

    async def _mark_stage(self, stage: Stage, ledger_ref: LedgerRef) -> None:
        await self.store.update_stage(
            stage.stage_id,
            {
                "status": StageStatus.VERIFIED.value,
                "ledger": {
                    "tx_id": ledger_ref.tx_id,
                    "fingerprint": ledger_ref.fingerprint,
                    "committed_at": ledger_ref.committed_at,
                },
            },
        )
        await self.store.stamp_stage_verified(stage.stage_id)
