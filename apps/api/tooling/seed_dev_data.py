"""Seed a development business, program and accounts into the API database."""

from __future__ import annotations

import asyncio
import os
from typing import TypedDict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from vcarda_api.core.settings import settings
from vcarda_api.db.base import Base
from vcarda_api.models.business import Business, BusinessStaffMember, LoyaltyProgram
from vcarda_api.models.user import User


class SeedUser(TypedDict):
    email: str
    display_name: str
    role: str


DEV_USERS: list[SeedUser] = [
    {
        "email": os.getenv("DEV_OWNER_EMAIL", "owner@vcarda.dev").lower(),
        "display_name": "Owner QA",
        "role": "staff",
    },
    {
        "email": os.getenv("DEV_CASHIER_EMAIL", "cashier@vcarda.dev").lower(),
        "display_name": "Cashier QA",
        "role": "staff",
    },
    {
        "email": os.getenv("DEV_CUSTOMER_EMAIL", "customer@vcarda.dev").lower(),
        "display_name": "Customer QA",
        "role": "customer",
    },
    {
        "email": os.getenv("DEV_ADMIN_EMAIL", "admin@vcarda.dev").lower(),
        "display_name": "Admin QA",
        "role": "admin",
    },
]

DEV_BUSINESS_NAME = "Corner Coffee"
DEV_PROGRAM_NAME = "Coffee Stamps"


async def seed_users(session: AsyncSession) -> dict[str, User]:
    users: dict[str, User] = {}
    for user in DEV_USERS:
        with session.no_autoflush:
            existing = await session.execute(select(User).where(User.email == user["email"]))
        record = existing.scalar_one_or_none()

        if record:
            record.display_name = user["display_name"]
            record.role = user["role"]
        else:
            record = User(email=user["email"], display_name=user["display_name"], role=user["role"])
            session.add(record)
        users[user["email"]] = record
    await session.flush()
    return users


async def seed_business(session: AsyncSession, users: dict[str, User]) -> LoyaltyProgram:
    owner, cashier = users[DEV_USERS[0]["email"]], users[DEV_USERS[1]["email"]]
    business = await session.scalar(select(Business).where(Business.name == DEV_BUSINESS_NAME))
    if business is None:
        business = Business(name=DEV_BUSINESS_NAME, owner_id=owner.id)
        session.add(business)
        await session.flush()

    staff = await session.scalar(
        select(BusinessStaffMember).where(
            BusinessStaffMember.business_id == business.id,
            BusinessStaffMember.user_id == cashier.id,
        )
    )
    if staff is None:
        session.add(BusinessStaffMember(business_id=business.id, user_id=cashier.id))

    program = await session.scalar(
        select(LoyaltyProgram).where(
            LoyaltyProgram.business_id == business.id,
            LoyaltyProgram.name == DEV_PROGRAM_NAME,
        )
    )
    if program is None:
        program = LoyaltyProgram(business_id=business.id, name=DEV_PROGRAM_NAME, points_per_scan=10)
        session.add(program)
    await session.commit()
    return program


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        if settings.database_url.startswith("sqlite"):
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as session:
            users = await seed_users(session)
            program = await seed_business(session, users)
        print(f"Development loyalty data ready (program {program.id})")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
