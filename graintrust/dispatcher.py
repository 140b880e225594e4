# graintrust/dispatcher.py
"""
Runs submissions on a bounded asyncio worker pool.

Triggers (webhook, manual call, sweep) all go through here: a batch with a
task already queued or running is coalesced into that task instead of
starting a second one.
"""
import asyncio
from typing import Any, Dict, Optional

import structlog

from graintrust.certificates import CertificateIssuer
from graintrust.completion import CompletionEvaluator
from graintrust.errors import GrainTrustError
from graintrust.models.domain import SubmissionState
from graintrust.orchestrator import LedgerSubmissionOrchestrator
from graintrust.stores import BatchStore

logger = structlog.get_logger(__name__)


class SubmissionDispatcher:
    def __init__(
        self,
        store: BatchStore,
        evaluator: CompletionEvaluator,
        orchestrator: LedgerSubmissionOrchestrator,
        issuer: CertificateIssuer,
        max_concurrency: int = 4,
    ):
        self.store = store
        self.evaluator = evaluator
        self.orchestrator = orchestrator
        self.issuer = issuer
        self.max_concurrency = max_concurrency
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def semaphore(self) -> asyncio.Semaphore:
        # created lazily so it binds to the serving event loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
        return self._semaphore

    def in_flight(self, batch_id: str) -> bool:
        task = self._tasks.get(batch_id)
        return task is not None and not task.done()

    async def trigger(self, batch_id: str) -> dict:
        """Checks completion and, if satisfied, queues the submission in the background."""
        if self.in_flight(batch_id):
            logger.info("trigger_coalesced", batch_id=batch_id)
            return {"accepted": True, "batchId": batch_id, "coalesced": True}

        report = await self.evaluator.evaluate(batch_id)
        if not report.complete:
            return {
                "accepted": False,
                "batchId": batch_id,
                "reason": "incomplete",
                "missing": [m.model_dump() for m in report.missing],
            }

        # re-check: evaluate awaited, another trigger may have queued meanwhile
        if self.in_flight(batch_id):
            return {"accepted": True, "batchId": batch_id, "coalesced": True}

        task = asyncio.create_task(self._run_in_background(batch_id))
        self._tasks[batch_id] = task
        task.add_done_callback(lambda t, key=batch_id: self._forget(key, t))
        logger.info("submission_queued", batch_id=batch_id)
        return {"accepted": True, "batchId": batch_id, "coalesced": False}

    async def process(self, batch_id: str) -> dict:
        """Runs the submission and certificate issuance for a batch and returns both."""
        async with self.semaphore:
            result = await self.orchestrator.run(batch_id)
            outcome: Dict[str, Any] = {"submission": result.model_dump(mode="json")}
            if result.state == SubmissionState.DONE and not result.warnings:
                certificate = await self.issuer.issue(batch_id)
                outcome["certificate"] = certificate.model_dump(mode="json")
            return outcome

    async def sweep(self) -> dict:
        """Evaluates every batch not yet LEDGER_VERIFIED and submits the complete ones."""
        batches = await self.store.list_unverified()
        results = await asyncio.gather(*(self._sweep_one(doc) for doc in batches))
        summary = {
            "success": True,
            "scanned": len(batches),
            "processed": sum(1 for r in results if r["outcome"] in ("submitted", "error", "in_progress")),
            "results": results,
        }
        logger.info("sweep_finished", scanned=summary["scanned"], processed=summary["processed"])
        return summary

    async def _sweep_one(self, doc: dict) -> dict:
        batch_id = doc["batch_id"]
        entry = {"batchId": batch_id, "batchCode": doc.get("batch_code")}

        if self.in_flight(batch_id):
            return {**entry, "outcome": "in_progress"}

        try:
            report = await self.evaluator.evaluate(batch_id)
            if not report.complete:
                return {**entry, "outcome": "incomplete", "missing": [m.model_dump() for m in report.missing]}
            outcome = await self.process(batch_id)
        except GrainTrustError as e:
            return {**entry, "outcome": "error", "error": e.message, "kind": e.kind}
        except Exception as e:
            logger.exception("sweep_batch_crashed", batch_id=batch_id)
            return {**entry, "outcome": "error", "error": str(e), "kind": "unexpected"}
        if outcome["submission"]["skipped"]:
            return {**entry, "outcome": "in_progress"}
        return {**entry, "outcome": "submitted", **outcome}

    async def drain(self) -> None:
        """Waits for all queued submissions to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
            for key, task in list(self._tasks.items()):
                if task.done():
                    del self._tasks[key]

    async def _run_in_background(self, batch_id: str) -> None:
        try:
            outcome = await self.process(batch_id)
            logger.info("background_submission_finished", batch_id=batch_id, state=outcome["submission"]["state"])
        except GrainTrustError as e:
            # the reconciler already recorded the failure on the batch
            logger.error("background_submission_failed", batch_id=batch_id, error=e.message, kind=e.kind)
        except Exception:
            logger.exception("background_submission_crashed", batch_id=batch_id)

    def _forget(self, batch_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(batch_id) is task:
            del self._tasks[batch_id]
