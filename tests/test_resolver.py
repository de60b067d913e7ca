from sqlalchemy import func, select

from orderdesk.models import Club, Customer, PartnerStore
from orderdesk.resolver import AssignmentSource, LegacyClubHintSource, metafield_value, store_email_for


async def _count(session, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


async def test_cache_hit_skips_shopify(store, resolver, shopify):
    async with store.transaction():
        partner, _ = await store.upsert_store("Sydney Store", "sydney@yourstore.com")
        club, _ = await store.upsert_club("Bondi Rugby", partner_store_id=partner.id)
        await store.upsert_customer("jane@example.com", shopify_id="c-1", club_id=club.id)

    shopify.set_assignment("c-1", "Other Club", "Other Store")
    assignment = await resolver.resolve("jane@example.com", "c-1")

    assert assignment.source == AssignmentSource.CACHE
    assert assignment.club_name == "Bondi Rugby"
    assert assignment.store_name == "Sydney Store"
    assert assignment.store_email == "sydney@yourstore.com"
    assert shopify.metafield_calls == []


async def test_cache_lookup_ignores_email_case(store, resolver, shopify):
    async with store.transaction():
        partner, _ = await store.upsert_store("Sydney Store", "sydney@yourstore.com")
        club, _ = await store.upsert_club("Bondi Rugby", partner_store_id=partner.id)
        await store.upsert_customer("jane@example.com", shopify_id="c-1", club_id=club.id)
    shopify.set_assignment("c-1", "Other Club", "Other Store")

    assignment = await resolver.resolve("  Jane@Example.COM ", "c-1")

    assert assignment.source == AssignmentSource.CACHE
    assert assignment.club_name == "Bondi Rugby"
    assert shopify.metafield_calls == []
    assert (await resolver.from_cache("JANE@example.com")).store_name == "Sydney Store"


async def test_external_lookup_writes_back_once(store, session, resolver, shopify):
    shopify.set_assignment("c-1", "Manly Swim", "Gold Coast Store")
    shopify.set_assignment("c-2", "Manly Swim", "Gold Coast Store")

    async with store.transaction():
        first = await resolver.resolve("a@example.com", "c-1")
    async with store.transaction():
        second = await resolver.resolve("b@example.com", "c-2")

    assert first.source == AssignmentSource.EXTERNAL
    assert second.source == AssignmentSource.EXTERNAL
    assert first.store_id == second.store_id
    assert first.club_id == second.club_id
    assert first.store_email == "goldcoaststore@yourstore.com"
    assert await _count(session, PartnerStore) == 1
    assert await _count(session, Club) == 1

    # Third time round the customer is cached
    async with store.transaction():
        again = await resolver.resolve("a@example.com", "c-1")
    assert again.source == AssignmentSource.CACHE
    assert shopify.metafield_calls == ["c-1", "c-2"]


async def test_missing_metafields_writes_nothing(store, session, resolver, shopify):
    shopify.metafields["c-1"] = [{"namespace": "club", "key": "brand", "value": "Solo Club"}]

    async with store.transaction():
        assignment = await resolver.resolve("jane@example.com", "c-1")

    assert assignment.source == AssignmentSource.NONE
    assert not assignment.has_store
    assert await _count(session, PartnerStore) == 0
    assert await _count(session, Club) == 0
    assert await _count(session, Customer) == 0


async def test_shopify_failure_degrades_to_unassigned(store, resolver, shopify):
    shopify.fail_metafields = True

    async with store.transaction():
        assignment = await resolver.resolve("jane@example.com", "c-1")

    assert assignment.source == AssignmentSource.NONE
    assert shopify.metafield_calls == ["c-1"]


async def test_no_customer_id_skips_lookup(store, resolver, shopify):
    async with store.transaction():
        assignment = await resolver.resolve("jane@example.com", None)
    assert assignment.source == AssignmentSource.NONE
    assert shopify.metafield_calls == []


async def test_legacy_hint_maps_to_known_club(store, resolver):
    async with store.transaction():
        partner, _ = await store.upsert_store("Test Store", "test@yourstore.com")
        await store.upsert_club("Harbour Rowing", partner_store_id=partner.id)

    order = {"tags": "vip, Club: harbour rowing"}
    async with store.transaction():
        assignment = await resolver.resolve("jane@example.com", None, order=order)

    assert assignment.source == AssignmentSource.LEGACY
    assert assignment.club_name == "Harbour Rowing"
    assert assignment.store_name == "Test Store"


async def test_unknown_legacy_hint_is_kept_as_club_name(store, resolver):
    order = {"note_attributes": [{"name": "Club", "value": "Unknown FC"}]}
    async with store.transaction():
        assignment = await resolver.resolve("jane@example.com", None, order=order)
    assert assignment.source == AssignmentSource.NONE
    assert assignment.club_name == "Unknown FC"


async def test_refresh_stale_customers_counts(store, resolver, shopify):
    async with store.transaction():
        await store.upsert_customer("a@example.com", shopify_id="c-1")
        await store.upsert_customer("b@example.com", shopify_id="c-2")
        await store.upsert_customer("c@example.com")
    shopify.set_assignment("c-1", "Bondi Rugby", "Sydney Store")

    stats = await resolver.refresh_stale_customers(limit=10)

    assert stats.processed == 2
    assert stats.updated == 1
    assert stats.errors == []
    cached = await resolver.from_cache("a@example.com")
    assert cached is not None and cached.club_name == "Bondi Rugby"


async def test_refresh_records_errors(store, resolver, shopify):
    async with store.transaction():
        await store.upsert_customer("a@example.com", shopify_id="c-1")
    shopify.fail_metafields = True

    stats = await resolver.refresh_stale_customers(limit=10)

    assert stats.processed == 0
    assert len(stats.errors) == 1
    assert stats.errors[0].startswith("Customer a@example.com")


def test_legacy_hint_order():
    source = LegacyClubHintSource()
    order = {
        "discount_codes": [{"code": "CLUB_BONDI"}],
        "tags": "Club: Manly",
        "note_attributes": [{"name": "club", "value": "Coogee"}],
    }
    assert source.club_hint(order) == "CLUB_BONDI"
    assert source.club_hint({"tags": ["Club: Manly"]}) == "Manly"
    assert source.club_hint({"note_attributes": [{"name": "club", "value": "Coogee"}]}) == "Coogee"
    assert source.club_hint({}) is None


def test_helpers():
    assert store_email_for("Gold Coast Store") == "goldcoaststore@yourstore.com"
    assert store_email_for("Brisbane CBD", "clubs.example") == "brisbanecbd@clubs.example"
    metafields = [{"namespace": "club", "key": "brand", "value": "  "}]
    assert metafield_value(metafields, "club", "brand") is None
    assert metafield_value(metafields, "custom", "partner_store") is None
