import asyncio
from typing import List

from .config import load_settings
from .db import Database
from .models import PartnerStore
from .store import OrderStore

DEFAULT_STORES = [
    {"name": "Brisbane CBD Store", "email": "brisbane@yourstore.com"},
    {"name": "Gold Coast Store", "email": "goldcoast@yourstore.com"},
    {"name": "Sydney Store", "email": "sydney@yourstore.com"},
    {"name": "Test Store", "email": "test@yourstore.com"},
]


async def seed_default_stores(store: OrderStore) -> List[PartnerStore]:
    """Ensure the default partner stores exist; existing rows are left as they are."""
    out = []
    async with store.transaction():
        for row in DEFAULT_STORES:
            partner, created = await store.upsert_store(row["name"], row["email"])
            if created:
                print(f"[SEED] Store created: {partner.name}")
            out.append(partner)
    return out


async def _main() -> None:
    database = Database(load_settings().database_url)
    try:
        await database.init()
        async with database.sessionmaker() as session:
            await seed_default_stores(OrderStore(session))
    finally:
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(_main())
