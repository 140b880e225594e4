# graintrust/certificates.py

from datetime import timedelta, timezone
import hashlib
import json

import structlog

from graintrust.blockchain_client import LedgerGateway
from graintrust.completion import assess
from graintrust.config import Settings
from graintrust.database import Database, utcnow
from graintrust.errors import CertificateNotFoundError, IncompleteBatchError
from graintrust.fingerprint import get_public_url
from graintrust.identity import IdentityProvisioner
from graintrust.locks import KeyedLocks
from graintrust.models.domain import Batch, Certificate, LedgerBatchRecord, Stage
from graintrust.stores import BatchStore, CertificateStore
from utils.notify import notify

logger = structlog.get_logger(__name__)


def canonical_json(obj: dict) -> str:
    """Deterministic JSON serialisation (sort_keys, no whitespace)."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def content_hash(snapshot: dict) -> str:
    return hashlib.sha256(canonical_json(snapshot).encode("utf-8")).hexdigest()


class CertificateIssuer:
    """
    Mints the completion certificate from ledger state.

    The ledger decides whether the batch is complete; the relational stage
    rows only contribute the per-stage evidence counts, since the ledger
    holds a single fingerprint per stage event.
    """

    def __init__(
        self,
        store: BatchStore,
        certificates: CertificateStore,
        provisioner: IdentityProvisioner,
        gateway: LedgerGateway,
        database: Database,
        settings: Settings,
    ):
        self.store = store
        self.certificates = certificates
        self.provisioner = provisioner
        self.gateway = gateway
        self.notifications = database.notifications
        self.settings = settings
        self._locks = KeyedLocks()

    async def issue(self, batch_id: str) -> Certificate:
        async with self._locks.hold(batch_id):
            existing = await self.certificates.find_active(batch_id)
            if existing:
                logger.info("certificate_reused", batch_id=batch_id, certificate_id=existing.certificate_id)
                return existing

            batch = await self.store.get_batch(batch_id)
            stages = await self.store.list_stages(batch_id)

            identity = await self.provisioner.service_identity()
            async with self.gateway.session(identity) as ledger:
                record = await ledger.query_batch(batch.batch_code)

            self._require_complete(batch, record, stages)
            certificate = self._build(batch, record, stages)
            await self.certificates.insert(certificate)

        await notify(
            self.notifications,
            user_id=batch.owner_id,
            role="Farmer",
            title="Certificate Issued",
            message=f"Certificate {certificate.certificate_id} issued for batch {batch.batch_code}",
            batch_id=batch.batch_id,
            category="certificate",
            event=certificate.certificate_id,
        )
        logger.info(
            "certificate_issued",
            batch_code=batch.batch_code,
            certificate_id=certificate.certificate_id,
            content_hash=certificate.content_hash[:20],
        )
        return certificate

    async def lookup(self, certificate_id: str) -> Certificate:
        certificate = await self.certificates.get(certificate_id)
        if certificate is None:
            raise CertificateNotFoundError(certificate_id)
        return certificate

    def _require_complete(self, batch: Batch, record: LedgerBatchRecord | None, stages: list[Stage]) -> None:
        policy = self.settings.stage_policy
        on_chain = record.stage_count if record else 0
        if on_chain < policy.required_stages:
            raise IncompleteBatchError(
                f"Only {on_chain} stages found on ledger, need {policy.required_stages} stages to generate certificate",
                batchId=batch.batch_id,
                stagesOnLedger=on_chain,
            )

        # evidence counts only for the stages the ledger confirmed
        by_name = {stage.name: stage for stage in stages}
        confirmed = {
            entry.stage: by_name[entry.stage].evidence_count
            for entry in record.stages
            if entry.stage in by_name
        }
        report = assess(confirmed, policy)
        if not report.complete:
            raise IncompleteBatchError(
                f"Each stage must have at least {policy.min_evidence_per_stage} images",
                missing=report.missing,
                batchId=batch.batch_id,
            )

    def _build(self, batch: Batch, record: LedgerBatchRecord, stages: list[Stage]) -> Certificate:
        issued_at = utcnow()
        total_images = sum(stage.evidence_count for stage in stages)

        facts = {
            "batchId": record.batch_code,
            "farmerName": record.farmer_name,
            "grainType": record.grain_type,
            "quantity": record.quantity,
            "stages": [entry.canonical() for entry in record.stages],
            "totalImages": total_images,
            "timestamp": issued_at.isoformat(),
        }
        issued_ms = int(issued_at.replace(tzinfo=timezone.utc).timestamp() * 1000)
        certificate_id = f"CERT-{batch.batch_code}-{issued_ms}"

        by_name = {stage.name: stage for stage in stages}
        details = []
        for index, entry in enumerate(record.stages):
            evidence = by_name[entry.stage].evidence if entry.stage in by_name else []
            details.append({
                "stageNumber": index + 1,
                "stageName": entry.stage,
                "timestamp": entry.timestamp,
                "imageHash": entry.image_hash,
                "verifiedBy": entry.verified_by,
                "location": entry.location,
                "imageUrls": [get_public_url(e.locator, self.settings.ipfs_gateway_url) for e in evidence],
                "imageCount": len(evidence),
            })
        snapshot = {
            **facts,
            "currentStage": record.current_stage,
            "totalStages": record.stage_count,
            "stageDetails": details,
        }

        validity = self.settings.certificate_validity_days
        return Certificate(
            certificate_id=certificate_id,
            batch_id=batch.batch_id,
            batch_code=batch.batch_code,
            content_hash=content_hash(facts),
            issued_at=issued_at,
            expires_at=issued_at + timedelta(days=validity) if validity else None,
            verification_url=f"{self.settings.verification_base_url.rstrip('/')}/{certificate_id}",
            snapshot=snapshot,
        )
