import asyncio
import os
import sys

from ferrow.auth import create_admin
from ferrow.errors import ConflictError
from ferrow.infra.sql import make_async_engine, GatedAsyncSession
from ferrow.model.catalog import create_product
from ferrow.model.orm import Base

# Config
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
SAMPLE_STOCK = int(os.environ.get("SEED_STOCK", "500"))

PRODUCTS = [
    {
        "name": "Ferrow Kitten Dry Food 1kg",
        "code": "FRW-DC-001",
        "price": 85000,
        "category": "Dry Cat Food",
        "description": "Complete dry food for kittens up to 12 months.",
        "ingredients": "Chicken meal, rice, fish oil, taurine",
        "protein": "34%",
        "fat": "16%",
        "fiber": "3%",
        "moisture": "10%",
    },
    {
        "name": "Ferrow Adult Dog Lamb & Rice 3kg",
        "code": "FRW-DD-001",
        "price": 210000,
        "category": "Dry Dog Food",
        "description": "Lamb and rice formula for adult dogs.",
        "protein": "24%",
        "fat": "14%",
    },
    {
        "name": "Ferrow Tuna Pouch 85g",
        "code": "FRW-WF-001",
        "price": 12000,
        "category": "Wet Food",
        "moisture": "82%",
    },
    {
        "name": "Ferrow Dental Sticks",
        "code": "FRW-ST-001",
        "price": 35000,
        "category": "Healthy Snack Treat",
        "health_benefits": "Helps reduce tartar build-up.",
    },
    {
        "name": "Ferrow Clumping Litter 10L",
        "code": "FRW-CL-001",
        "price": 65000,
        "category": "Cat Litter",
    },
]


async def seed(database_url: str) -> None:
    engine, SessionAsync, _, gated = make_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print('✅ schema created')

    async with SessionAsync() as session:
        db = GatedAsyncSession(session=session, gated=gated)
        try:
            await create_admin(db, ADMIN_USERNAME, ADMIN_PASSWORD)
            print(f'✅ admin {ADMIN_USERNAME!r} created')
        except ConflictError:
            print(f'admin {ADMIN_USERNAME!r} exists, left alone')

        created = 0
        for p in PRODUCTS:
            try:
                await create_product(db, {**p, "stock": SAMPLE_STOCK})
                created += 1
            except ConflictError:
                print(f"product {p['code']} exists, skipped")
        print(f'✅ {created} products created')
    await engine.dispose()


if __name__ == '__main__':
    url = os.environ.get("DATABASE_URL")
    if not url:
        print("NEED DATABASE_URL!")
        sys.exit(1)
    asyncio.run(seed(url))
