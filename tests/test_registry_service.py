import pytest

from citybrief.services.registry_service import SubscriptionError, slugify


def test_slugify():
    assert slugify("New York") == "new-york"
    assert slugify("  St. Louis ") == "st-louis"


@pytest.mark.asyncio
async def test_upsert_city_updates_existing_row(registry):
    await registry.upsert_city("san antonio", publication_id="seg_1")
    await registry.upsert_city("San Antonio", is_active=False)

    city = await registry.get_city("san-antonio")

    assert city.display_name == "San Antonio"
    assert city.is_active is False
    assert city.publication_id is None
    assert await registry.list_active_cities() == []


@pytest.mark.asyncio
async def test_add_subscriber_normalises_and_is_idempotent(registry):
    first = await registry.add_subscriber("  Reader@Example.COM ", "austin")
    again = await registry.add_subscriber("reader@example.com", "Austin")

    assert first.email == "reader@example.com"
    assert first.city == "Austin"
    assert again.id == first.id
    assert len(await registry.list_subscribers()) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("email, city", [("", "Austin"), ("reader@example.com", ""), ("not-an-email", "Austin")])
async def test_add_subscriber_validates_input(registry, email, city):
    with pytest.raises(SubscriptionError):
        await registry.add_subscriber(email, city)


@pytest.mark.asyncio
async def test_subscriber_listing_and_deletion(registry):
    a = await registry.add_subscriber("a@example.com", "Austin")
    await registry.add_subscriber("b@example.com", "Austin")
    await registry.add_subscriber("c@example.com", "Dallas")

    assert [s.email for s in await registry.list_subscribers("austin")] == ["a@example.com", "b@example.com"]
    assert await registry.list_subscriber_cities() == ["Austin", "Dallas"]

    assert await registry.delete_subscriber(a.id) is True
    assert await registry.delete_subscriber(a.id) is False
    assert await registry.delete_subscribers_for_city("Dallas") == 1
    assert await registry.delete_all_subscribers() == 1
    assert await registry.list_subscribers() == []
