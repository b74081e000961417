from datetime import datetime
from typing import Optional

from shared.models import Address, UserProfileDB

PROFILE_FIELDS = ("full_name", "phone", "address")


class ProfileStore:
    """One contact/address record per user, keyed by user id.

    ``upsert_profile`` replaces every profile field. Callers merge partial
    edits with the stored profile first.
    """

    def __init__(self, db):
        self.db = db

    async def get_profile(self, user_id: str) -> Optional[dict]:
        return await self.db.user_profiles.find_one({"_id": user_id})

    async def upsert_profile(self, user_id: str, fields: dict) -> dict:
        address = fields.get("address") or Address()
        if isinstance(address, dict):
            address = Address(**address)

        profile = UserProfileDB(
            _id=user_id,
            full_name=fields.get("full_name"),
            phone=fields.get("phone"),
            address=address,
        )
        now = datetime.utcnow()
        values = profile.dict(include=set(PROFILE_FIELDS))
        values["updated_at"] = now

        await self.db.user_profiles.update_one(
            {"_id": user_id},
            {"$set": values, "$setOnInsert": {"created_at": now}},
            upsert=True
        )
        return await self.get_profile(user_id)
