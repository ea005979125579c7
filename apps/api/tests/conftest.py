import sys
from dataclasses import dataclass
from pathlib import Path
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from vcarda_api.app import create_app
from vcarda_api.db.base import Base
from vcarda_api.db.session import get_session
from vcarda_api.models.business import Business, BusinessStaffMember, LoyaltyProgram
from vcarda_api.models.user import User, UserRoleEnum
from vcarda_api.observability.loyalty import get_loyalty_store
from vcarda_api.services.access import Principal
from vcarda_api.services.secrets.signing_keys import SigningKeyResolver, SigningKeyRing, build_key_ring


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()


@dataclass
class LoyaltyWorld:
    owner_id: UUID
    cashier_id: UUID
    outsider_id: UUID
    customer_id: UUID
    admin_id: UUID
    business_id: UUID
    program_id: UUID
    other_business_id: UUID
    other_program_id: UUID

    @property
    def owner(self) -> Principal:
        return Principal(user_id=self.owner_id, role=UserRoleEnum.STAFF.value)

    @property
    def cashier(self) -> Principal:
        return Principal(user_id=self.cashier_id, role=UserRoleEnum.STAFF.value)

    @property
    def outsider(self) -> Principal:
        return Principal(user_id=self.outsider_id, role=UserRoleEnum.STAFF.value)

    @property
    def customer(self) -> Principal:
        return Principal(user_id=self.customer_id, role=UserRoleEnum.CUSTOMER.value)

    @property
    def admin(self) -> Principal:
        return Principal(user_id=self.admin_id, role=UserRoleEnum.ADMIN.value)


async def seed_world(factory) -> LoyaltyWorld:
    async with factory() as session:
        owner = User(email="owner@example.com", display_name="Owner", role=UserRoleEnum.STAFF.value)
        cashier = User(email="cashier@example.com", display_name="Cashier", role=UserRoleEnum.STAFF.value)
        outsider = User(email="outsider@example.com", display_name="Outsider", role=UserRoleEnum.STAFF.value)
        customer = User(email="customer@example.com", display_name="Casey", role=UserRoleEnum.CUSTOMER.value)
        admin = User(email="admin@example.com", display_name="Admin", role=UserRoleEnum.ADMIN.value)
        session.add_all([owner, cashier, outsider, customer, admin])
        await session.flush()

        business = Business(name="Corner Coffee", owner_id=owner.id)
        other_business = Business(name="Book Nook", owner_id=outsider.id)
        session.add_all([business, other_business])
        await session.flush()

        session.add(BusinessStaffMember(business_id=business.id, user_id=cashier.id))
        program = LoyaltyProgram(
            business_id=business.id,
            name="Coffee Stamps",
            points_per_scan=10,
            max_points_per_award=500,
        )
        other_program = LoyaltyProgram(business_id=other_business.id, name="Reading Rewards")
        session.add_all([program, other_program])
        await session.commit()

        return LoyaltyWorld(
            owner_id=owner.id,
            cashier_id=cashier.id,
            outsider_id=outsider.id,
            customer_id=customer.id,
            admin_id=admin.id,
            business_id=business.id,
            program_id=program.id,
            other_business_id=other_business.id,
            other_program_id=other_program.id,
        )


class StaticKeySource:
    def __init__(self, ring: SigningKeyRing | None) -> None:
        self.ring = ring
        self.fetches = 0

    async def fetch(self) -> SigningKeyRing | None:
        self.fetches += 1
        return self.ring


@pytest.fixture(autouse=True)
def reset_loyalty_store():
    store = get_loyalty_store()
    store.reset()
    yield store
    store.reset()


@pytest.fixture
def key_ring() -> SigningKeyRing:
    ring = build_key_ring({"k1": "test-secret-one", "k2": "test-secret-two"}, "k1")
    assert ring is not None
    return ring


@pytest.fixture
def key_resolver(key_ring) -> SigningKeyResolver:
    return SigningKeyResolver(StaticKeySource(key_ring))


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database so concurrent sessions get their own connections."""

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'loyalty.db'}",
        future=True,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def world(session_factory) -> LoyaltyWorld:
    return await seed_world(session_factory)


@pytest_asyncio.fixture
async def file_world(file_session_factory) -> LoyaltyWorld:
    return await seed_world(file_session_factory)


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
