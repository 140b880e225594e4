# db_seeding.py
import asyncio

from graintrust.config import get_settings
from graintrust.database import Database
from graintrust.models.domain import Principal
from graintrust.stores import BatchStore, CredentialStore, PrincipalDirectory

DEMO_FARMER = Principal(id="FARMER-001", name="Ravi Kumar", email="ravi.kumar@graintrust.in")
DEMO_BATCH_CODE = "B1"


async def seed_database(database: Database, admin_credentials: dict | None = None) -> str:
    """Seed a demo farmer with one fully evidenced batch (two images per stage)."""
    settings = get_settings()
    print("🚀 Seeding GrainTrust demo data...")

    await database.ensure_indexes()

    # ================= FARMER =================
    directory = PrincipalDirectory(database)
    await directory.upsert_principal(DEMO_FARMER)
    print(f"✅ Farmer ready: {DEMO_FARMER.name}")

    # ================= ADMIN WALLET =================
    if admin_credentials:
        wallet = CredentialStore(database, settings.msp_id)
        await wallet.put(settings.admin_identity_label, settings.admin_identity_label, admin_credentials)
        print(f"✅ Admin identity '{settings.admin_identity_label}' stored for {settings.msp_id}")

    # ================= BATCH =================
    store = BatchStore(database)
    batch = await store.register_batch(
        batch_code=DEMO_BATCH_CODE,
        owner_id=DEMO_FARMER.id,
        farmer_name=DEMO_FARMER.name,
        crop_type="Wheat",
        variety="Sharbati",
        quantity="500 kg",
        location="Sehore, Madhya Pradesh",
        stage_names=settings.stage_names,
    )

    locator = 1
    for stage_name in settings.stage_names:
        for _ in range(settings.min_evidence_per_stage):
            await store.append_evidence(batch.batch_id, stage_name, f"u{locator}")
            locator += 1

    print(f"📦 Batch {batch.batch_code} ({batch.batch_id}) seeded with {locator - 1} images")
    return batch.batch_id


async def main():
    settings = get_settings()
    database = Database.connect(settings.mongo_uri, settings.mongo_db_name)
    try:
        await database.client.admin.command("ping")
        print("✅ Successfully connected to MongoDB!")
        await seed_database(database)
    finally:
        database.close()


if __name__ == "__main__":
    asyncio.run(main())
