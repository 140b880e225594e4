from datetime import datetime, timezone

from motor.motor_asyncio import AsyncIOMotorCollection


async def notify(
    notifications: AsyncIOMotorCollection,
    user_id: str,
    role: str,
    title: str,
    message: str,
    batch_id: str | None = None,
    category: str = "system",
    event: str | None = None,
):
    """
    Records a notification for a user.

    Keyed on (user_id, batch_id, category, event): delivering the same
    status event twice leaves a single notification.
    """
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    key = {
        "user_id": user_id,
        "batch_id": batch_id,
        "category": category,
        "event": event or title,
    }

    await notifications.update_one(
        key,
        {
            # the filter fields are copied into the inserted document
            "$setOnInsert": {
                "role": role,
                "title": title,
                "message": message,
                "read": False,
                "createdAt": now,
            }
        },
        upsert=True,
    )
