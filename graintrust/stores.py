# graintrust/stores.py
"""Read model and persistence operations over the Mongo collections."""

from datetime import timedelta
import uuid
from typing import List, Optional

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
import structlog

from graintrust.database import (
    Database,
    batch_from_doc,
    certificate_from_doc,
    new_batch_document,
    new_stage_document,
    stage_from_doc,
    utcnow,
)
from graintrust.errors import BatchNotFoundError, ValidationError
from graintrust.fingerprint import fingerprint
from graintrust.models.domain import (
    Batch,
    BatchStatus,
    Certificate,
    IdentityHandle,
    Principal,
    Stage,
)

logger = structlog.get_logger(__name__)


class BatchStore:
    def __init__(self, database: Database):
        self.batches = database.batches
        self.stages = database.stages

    # ================= READS =================

    async def get_batch(self, batch_id: str) -> Batch:
        doc = await self.batches.find_one({"batch_id": batch_id})
        if not doc:
            raise BatchNotFoundError(batch_id)
        return batch_from_doc(doc)

    async def get_batch_doc(self, batch_id: str) -> Optional[dict]:
        return await self.batches.find_one({"batch_id": batch_id})

    async def find_by_code(self, batch_code: str) -> Optional[Batch]:
        doc = await self.batches.find_one({"batch_code": batch_code})
        return batch_from_doc(doc) if doc else None

    async def list_stages(self, batch_id: str) -> List[Stage]:
        return [stage_from_doc(doc) for doc in await self.list_stage_docs(batch_id)]

    async def list_stage_docs(self, batch_id: str) -> List[dict]:
        cursor = self.stages.find({"batch_id": batch_id}).sort("ordinal", ASCENDING)
        return [doc async for doc in cursor]

    async def list_unverified(self) -> List[dict]:
        cursor = self.batches.find(
            {"verification_status": {"$ne": BatchStatus.LEDGER_VERIFIED.value}}
        ).sort("created_at", ASCENDING)
        return [doc async for doc in cursor]

    # ================= WRITES =================

    async def create_batch(self, batch_doc: dict, stage_names: List[str]) -> Batch:
        """Inserts a batch and its fixed stage rows; an existing batch code wins."""
        try:
            await self.batches.insert_one(batch_doc)
        except DuplicateKeyError:
            existing = await self.find_by_code(batch_doc["batch_code"])
            if existing is None:
                raise
            logger.info("batch_already_registered", batch_code=batch_doc["batch_code"])
            return existing

        for ordinal, name in enumerate(stage_names):
            try:
                await self.stages.insert_one(new_stage_document(batch_doc["batch_id"], ordinal, name))
            except DuplicateKeyError:
                pass
        return batch_from_doc(batch_doc)

    async def register_batch(self, **fields) -> Batch:
        stage_names = fields.pop("stage_names")
        return await self.create_batch(new_batch_document(**fields), stage_names)

    async def append_evidence(self, batch_id: str, stage_name: str, locator: str) -> bool:
        """Appends an evidence item to a stage; the same locator is never added twice."""
        stage = await self.stages.find_one({"batch_id": batch_id, "name": stage_name})
        if not stage:
            raise ValidationError(
                f"Unknown stage '{stage_name}' for batch {batch_id}",
                batchId=batch_id,
                stage=stage_name,
            )

        now = utcnow()
        result = await self.stages.update_one(
            {"stage_id": stage["stage_id"], "evidence.locator": {"$ne": locator}},
            {
                "$push": {
                    "evidence": {
                        "locator": locator,
                        "fingerprint": fingerprint(locator),
                        "captured_at": now,
                    }
                },
                "$set": {"updated_at": now},
            },
        )
        return result.modified_count == 1

    async def claim_submission(self, batch_id: str, lease_seconds: int) -> Optional[str]:
        """
        Atomically moves a batch into SUBMITTING and returns the lease token.

        Returns None while another worker holds an unexpired lease; an expired
        lease is taken over so a crashed worker never pins the batch.
        """
        now = utcnow()
        token = uuid.uuid4().hex
        doc = await self.batches.find_one_and_update(
            {
                "batch_id": batch_id,
                "$or": [
                    {"verification_status": {"$ne": BatchStatus.SUBMITTING.value}},
                    {"submission_lease_expires_at": None},
                    {"submission_lease_expires_at": {"$lt": now}},
                ],
            },
            {
                "$set": {
                    "verification_status": BatchStatus.SUBMITTING.value,
                    "submission_lease_expires_at": now + timedelta(seconds=lease_seconds),
                    "submission_lease_token": token,
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        return token if doc is not None else None

    async def renew_submission(self, batch_id: str, token: str, lease_seconds: int) -> bool:
        """Extends a lease this worker still owns; False once it has been taken over."""
        now = utcnow()
        result = await self.batches.update_one(
            {
                "batch_id": batch_id,
                "verification_status": BatchStatus.SUBMITTING.value,
                "submission_lease_token": token,
            },
            {
                "$set": {
                    "submission_lease_expires_at": now + timedelta(seconds=lease_seconds),
                    "updated_at": now,
                }
            },
        )
        return result.modified_count == 1

    async def update_batch(self, batch_id: str, fields: dict) -> None:
        fields = {**fields, "updated_at": utcnow()}
        await self.batches.update_one({"batch_id": batch_id}, {"$set": fields})

    async def update_stage(self, stage_id: str, fields: dict) -> None:
        fields = {**fields, "updated_at": utcnow()}
        await self.stages.update_one({"stage_id": stage_id}, {"$set": fields})

    # verified_at is only set the first time, replays keep the original timestamp

    async def stamp_batch_verified(self, batch_id: str) -> None:
        await self.batches.update_one(
            {"batch_id": batch_id, "verified_at": None}, {"$set": {"verified_at": utcnow()}}
        )

    async def stamp_stage_verified(self, stage_id: str) -> None:
        await self.stages.update_one(
            {"stage_id": stage_id, "verified_at": None}, {"$set": {"verified_at": utcnow()}}
        )


class PrincipalDirectory:
    def __init__(self, database: Database):
        self.users = database.users

    async def get_principal(self, principal_id: str) -> Principal:
        user = await self.users.find_one({"user_id": principal_id})
        if not user:
            raise ValidationError(f"Principal {principal_id} not found", principalId=principal_id)
        return Principal(
            id=user["user_id"],
            name=user.get("fullName") or "Unknown Farmer",
            email=user.get("email"),
            role=user.get("role", "Farmer"),
        )

    async def upsert_principal(self, principal: Principal) -> None:
        await self.users.update_one(
            {"user_id": principal.id},
            {
                "$set": {"fullName": principal.name, "email": principal.email, "role": principal.role},
                "$setOnInsert": {"user_id": principal.id, "createdAt": utcnow()},
            },
            upsert=True,
        )


class CredentialStore:
    """Wallet of signing identities, one per label per MSP."""

    def __init__(self, database: Database, msp_id: str):
        self.wallet = database.wallet
        self.enrollments = database.enrollments
        self.msp_id = msp_id

    async def get(self, label: str) -> Optional[dict]:
        return await self.wallet.find_one({"label": label, "msp_id": self.msp_id})

    async def save_enrollment_secret(self, label: str, principal_id: str, secret: str) -> None:
        """Keeps the registration secret until enrollment lands in the wallet."""
        await self.enrollments.update_one(
            {"label": label, "msp_id": self.msp_id},
            {
                "$set": {"secret": secret, "updated_at": utcnow()},
                "$setOnInsert": {"principal_id": principal_id, "created_at": utcnow()},
            },
            upsert=True,
        )

    async def enrollment_secret(self, label: str) -> Optional[str]:
        doc = await self.enrollments.find_one({"label": label, "msp_id": self.msp_id})
        return doc["secret"] if doc else None

    async def put(self, label: str, principal_id: str, credentials: dict) -> dict:
        doc = {
            "label": label,
            "principal_id": principal_id,
            "msp_id": self.msp_id,
            "type": "X.509",
            "credentials": credentials,
            "created_at": utcnow(),
        }
        try:
            await self.wallet.insert_one(doc)
        except DuplicateKeyError:
            existing = await self.get(label)
            if existing is None:
                raise
            doc = existing
        await self.enrollments.delete_one({"label": label, "msp_id": self.msp_id})
        return doc

    @staticmethod
    def to_handle(doc: dict) -> IdentityHandle:
        return IdentityHandle(
            label=doc["label"],
            principal_id=doc.get("principal_id") or doc["label"],
            msp_id=doc["msp_id"],
            type=doc.get("type", "X.509"),
        )


class CertificateStore:
    def __init__(self, database: Database):
        self.certificates = database.certificates

    async def find_active(self, batch_id: str) -> Optional[Certificate]:
        now = utcnow()
        doc = await self.certificates.find_one(
            {
                "batch_id": batch_id,
                "$or": [{"expires_at": None}, {"expires_at": {"$gt": now}}],
            },
            sort=[("issued_at", -1)],
        )
        return certificate_from_doc(doc) if doc else None

    async def insert(self, certificate: Certificate) -> None:
        await self.certificates.insert_one(certificate.model_dump())

    async def get(self, certificate_id: str) -> Optional[Certificate]:
        doc = await self.certificates.find_one({"certificate_id": certificate_id})
        return certificate_from_doc(doc) if doc else None

    async def count_for_batch(self, batch_id: str) -> int:
        return await self.certificates.count_documents({"batch_id": batch_id})
