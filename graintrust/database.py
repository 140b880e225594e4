from datetime import datetime, timezone
import uuid

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING

from graintrust.models.domain import (
    Batch,
    BatchStatus,
    Certificate,
    Evidence,
    Stage,
    StageStatus,
)


def utcnow() -> datetime:
    # Mongo stores naive UTC datetimes; keep everything naive so comparisons line up
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ==============================
# MongoDB Connection
# ==============================

class Database:
    """Collections of the system of record (a projection of ledger state)."""

    def __init__(self, db: AsyncIOMotorDatabase, client: AsyncIOMotorClient | None = None):
        self.db = db
        self.client = client

        self.users = db["users"]
        self.batches = db["batches"]
        self.stages = db["stages"]
        self.wallet = db["wallet"]
        self.enrollments = db["enrollments"]
        self.certificates = db["certificates"]
        self.notifications = db["notifications"]

    @classmethod
    def connect(cls, mongo_uri: str, db_name: str) -> "Database":
        client = AsyncIOMotorClient(mongo_uri, tz_aware=False)
        return cls(client[db_name], client)

    async def ensure_indexes(self) -> None:
        await self.users.create_index("user_id", unique=True)
        await self.batches.create_index("batch_id", unique=True)
        await self.batches.create_index("batch_code", unique=True)
        await self.batches.create_index("verification_status")
        await self.stages.create_index(
            [("batch_id", ASCENDING), ("ordinal", ASCENDING)], unique=True
        )
        await self.wallet.create_index(
            [("label", ASCENDING), ("msp_id", ASCENDING)], unique=True
        )
        await self.enrollments.create_index(
            [("label", ASCENDING), ("msp_id", ASCENDING)], unique=True
        )
        await self.certificates.create_index("certificate_id", unique=True)
        await self.certificates.create_index("batch_id")
        await self.notifications.create_index(
            [("user_id", ASCENDING), ("batch_id", ASCENDING), ("category", ASCENDING), ("event", ASCENDING)],
            unique=True,
        )

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


# ==============================
# BATCH SCHEMA (CORE DOCUMENT)
# ==============================

def new_batch_document(
    batch_code: str,
    owner_id: str,
    farmer_name: str | None,
    crop_type: str,
    quantity: str,
    location: str | None = None,
    variety: str | None = None,
    batch_id: str | None = None,
) -> dict:
    now = utcnow()
    return {
        "batch_id": batch_id or f"BATCH-{uuid.uuid4().hex[:10].upper()}",
        "batch_code": batch_code,
        "owner_id": owner_id,
        "farmer_name": farmer_name,
        "crop_type": crop_type,
        "variety": variety,
        "quantity": quantity,
        "location": location,
        "verification_status": BatchStatus.UNVERIFIED.value,
        "verified": False,
        "submission_lease_expires_at": None,
        "submission_lease_token": None,
        "last_error": None,
        "last_committed_index": None,

        # =========================
        # LEDGER PROJECTION
        # =========================
        "ledger": {
            "create_tx": None,
            "stage_count": 0,
            "consistency_warnings": [],
        },

        "created_at": now,
        "updated_at": now,
        "verified_at": None,
    }


def new_stage_document(batch_id: str, ordinal: int, name: str) -> dict:
    now = utcnow()
    return {
        "stage_id": f"{batch_id}-S{ordinal + 1}",
        "batch_id": batch_id,
        "ordinal": ordinal,
        "name": name,
        "evidence": [],
        "status": StageStatus.PENDING.value,
        "ledger": None,
        "created_at": now,
        "updated_at": now,
        "verified_at": None,
    }


def batch_from_doc(doc: dict) -> Batch:
    return Batch(
        batch_id=doc["batch_id"],
        batch_code=doc["batch_code"],
        owner_id=doc["owner_id"],
        farmer_name=doc.get("farmer_name"),
        crop_type=doc.get("crop_type") or "Unknown Crop",
        variety=doc.get("variety"),
        quantity=doc.get("quantity") or "0 kg",
        location=doc.get("location"),
        verification_status=doc.get("verification_status", BatchStatus.UNVERIFIED.value),
        verified=doc.get("verified", False),
        last_committed_index=doc.get("last_committed_index"),
        created_at=doc.get("created_at"),
        updated_at=doc.get("updated_at"),
        verified_at=doc.get("verified_at"),
    )


def stage_from_doc(doc: dict) -> Stage:
    return Stage(
        stage_id=doc["stage_id"],
        batch_id=doc["batch_id"],
        ordinal=doc["ordinal"],
        name=doc["name"],
        evidence=[Evidence(**e) for e in doc.get("evidence", [])],
        status=doc.get("status", StageStatus.PENDING.value),
        created_at=doc.get("created_at"),
        updated_at=doc.get("updated_at"),
        verified_at=doc.get("verified_at"),
    )


def certificate_from_doc(doc: dict) -> Certificate:
    return Certificate(
        certificate_id=doc["certificate_id"],
        batch_id=doc["batch_id"],
        batch_code=doc["batch_code"],
        content_hash=doc["content_hash"],
        issued_at=doc["issued_at"],
        expires_at=doc.get("expires_at"),
        verification_url=doc["verification_url"],
        snapshot=doc.get("snapshot", {}),
    )


# ==============================
# Helpers (API shapes)
# ==============================

def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def batch_helper(batch: dict) -> dict:
    return {
        "id": batch.get("batch_id"),
        "batchCode": batch.get("batch_code"),
        "ownerId": batch.get("owner_id"),
        "farmerName": batch.get("farmer_name"),
        "cropType": batch.get("crop_type"),
        "quantity": batch.get("quantity"),
        "location": batch.get("location"),
        "status": batch.get("verification_status"),
        "verified": batch.get("verified", False),
        "lastError": batch.get("last_error"),
        "lastCommittedIndex": batch.get("last_committed_index"),
        "ledgerStageCount": (batch.get("ledger") or {}).get("stage_count", 0),
        "consistencyWarnings": (batch.get("ledger") or {}).get("consistency_warnings", []),
        "createdAt": _iso(batch.get("created_at")),
        "verifiedAt": _iso(batch.get("verified_at")),
    }


def stage_helper(stage: dict) -> dict:
    evidence = stage.get("evidence", [])
    return {
        "id": stage.get("stage_id"),
        "stageNumber": stage.get("ordinal", 0) + 1,
        "stageName": stage.get("name"),
        "status": stage.get("status"),
        "imageCount": len(evidence),
        "imageUrls": [e["locator"] for e in evidence],
        "ledger": stage.get("ledger"),
        "verifiedAt": _iso(stage.get("verified_at")),
    }


def certificate_helper(certificate: Certificate) -> dict:
    return {
        "certificateId": certificate.certificate_id,
        "batchId": certificate.batch_id,
        "batchCode": certificate.batch_code,
        "contentHash": certificate.content_hash,
        "issuedAt": certificate.issued_at.isoformat(),
        "expiresAt": _iso(certificate.expires_at),
        "qrCodeUrl": certificate.verification_url,
        "batch": certificate.snapshot,
    }


# ==============================
# NOTIFICATIONS
# ==============================

def notification_helper(notification: dict) -> dict:
    created_at = notification.get("createdAt")
    return {
        "id": str(notification["_id"]),
        "user_id": notification.get("user_id"),
        "role": notification.get("role"),
        "category": notification.get("category"),
        "title": notification.get("title"),
        "message": notification.get("message"),
        "batch_id": notification.get("batch_id"),
        "read": notification.get("read", False),
        "createdAt": created_at.isoformat() if created_at else None,
    }
