from shared.models import Address


async def test_get_profile_missing(profiles):
    assert await profiles.get_profile("nobody") is None


async def test_upsert_creates_then_replaces(profiles):
    created = await profiles.upsert_profile("user-1", {
        "full_name": "Ada Buyer",
        "phone": "+15550100",
        "address": Address(street="1 Main St", city="Springfield"),
    })
    assert created["_id"] == "user-1"
    assert created["address"]["city"] == "Springfield"
    first_created_at = created["created_at"]

    replaced = await profiles.upsert_profile("user-1", {
        "full_name": "Ada B.",
        "address": {"city": "Shelbyville"},
    })

    # Whole record replaced, fields left out are cleared
    assert replaced["full_name"] == "Ada B."
    assert replaced["phone"] is None
    assert replaced["address"]["street"] is None
    assert replaced["address"]["city"] == "Shelbyville"
    assert replaced["created_at"] == first_created_at
    assert replaced["updated_at"] >= first_created_at


async def test_upsert_without_address(profiles):
    profile = await profiles.upsert_profile("user-2", {"full_name": "No Address"})
    assert profile["address"] == Address().dict()
