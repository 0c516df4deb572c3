"""
Shared fixtures: a throwaway SQLite database per test, seeded with two
branches, staff for every role, customers, vehicles, catalog items and
pricing rules. The API client runs the real app against that database.
"""
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from audit_service import AuditTrail, get_audit_trail
from auth import create_access_token
from database import Base, get_db
from main import app
from models import (
    Branch,
    CatalogItem,
    CatalogItemType,
    Customer,
    PricingMatrix,
    PricingType,
    RecordStatus,
    User,
    UserBranchAssignment,
    UserRole,
    UserRoleAssignment,
    Vehicle,
)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def seed(db):
    """Two branches (MNL, CEB) with staff, customers, vehicles and catalog"""
    mnl = Branch(name="Manila", code="MNL")
    ceb = Branch(name="Cebu", code="CEB")
    db.add_all([mnl, ceb])
    await db.flush()

    def staff(email, roles, branches):
        user = User(
            email=email,
            full_name=email.split("@")[0].replace(".", " ").title(),
            roles=[UserRoleAssignment(role=role) for role in roles],
            branch_assignments=[
                UserBranchAssignment(branch_id=branch.id, is_primary=index == 0)
                for index, branch in enumerate(branches)
            ],
        )
        db.add(user)
        return user

    hm = staff("head.manager@example.com", [UserRole.HM], [])
    poc = staff("poc.manila@example.com", [UserRole.POC], [mnl])
    js = staff("js.manila@example.com", [UserRole.JS], [mnl])
    receptionist = staff("reception.manila@example.com", [UserRole.R], [mnl])
    technician = staff("tech.manila@example.com", [UserRole.T], [mnl])
    poc_cebu = staff("poc.cebu@example.com", [UserRole.POC], [ceb])
    receptionist_cebu = staff("reception.cebu@example.com", [UserRole.R], [ceb])
    await db.flush()

    customer = Customer(branch_id=mnl.id, full_name="Juan Dela Cruz", contact_number="09171234567")
    other_customer = Customer(branch_id=mnl.id, full_name="Maria Santos")
    cebu_customer = Customer(branch_id=ceb.id, full_name="Pedro Reyes")
    db.add_all([customer, other_customer, cebu_customer])
    await db.flush()

    vehicle = Vehicle(customer_id=customer.id, branch_id=mnl.id, plate_number="ABC 1234", model="Vios", vehicle_type="sedan")
    other_vehicle = Vehicle(customer_id=other_customer.id, branch_id=mnl.id, plate_number="XYZ 9876", model="Hilux")
    cebu_vehicle = Vehicle(customer_id=cebu_customer.id, branch_id=ceb.id, plate_number="CEB 5555", model="Innova")
    db.add_all([vehicle, other_vehicle, cebu_vehicle])

    oil_change = CatalogItem(name="Oil Change", type=CatalogItemType.SERVICE, base_price=500.0, is_global=True)
    car_wash = CatalogItem(name="Car Wash", type=CatalogItemType.SERVICE, base_price=100.0, branch_id=mnl.id)
    retired = CatalogItem(name="Retired Package", type=CatalogItemType.PACKAGE, base_price=900.0,
                          is_global=True, status=RecordStatus.INACTIVE)
    cebu_only = CatalogItem(name="Cebu Detailing", type=CatalogItemType.SERVICE, base_price=800.0, branch_id=ceb.id)
    db.add_all([oil_change, car_wash, retired, cebu_only])
    await db.flush()

    labor = PricingMatrix(catalog_item_id=oil_change.id, branch_id=mnl.id,
                          pricing_type=PricingType.LABOR, price=150.0)
    packaging = PricingMatrix(catalog_item_id=oil_change.id, branch_id=mnl.id,
                              pricing_type=PricingType.PACKAGING, price=50.0)
    db.add_all([labor, packaging])
    await db.commit()

    return SimpleNamespace(
        mnl=mnl,
        ceb=ceb,
        hm=hm,
        poc=poc,
        js=js,
        receptionist=receptionist,
        technician=technician,
        poc_cebu=poc_cebu,
        receptionist_cebu=receptionist_cebu,
        customer=customer,
        other_customer=other_customer,
        cebu_customer=cebu_customer,
        vehicle=vehicle,
        other_vehicle=other_vehicle,
        cebu_vehicle=cebu_vehicle,
        oil_change=oil_change,
        car_wash=car_wash,
        retired=retired,
        cebu_only=cebu_only,
        labor=labor,
        packaging=packaging,
    )


@pytest.fixture
def auth_headers():
    def _headers(user):
        token = create_access_token({"sub": str(user.id)})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_audit_trail] = lambda: AuditTrail(session_maker)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def order_payload(seed):
    """Oil change (labor + packaging at MNL) and two car washes (base price only)"""
    return {
        "branch_id": seed.mnl.id,
        "customer_id": seed.customer.id,
        "vehicle_id": seed.vehicle.id,
        "notes": "Customer waiting in lounge",
        "items": [
            {"catalog_item_id": seed.oil_change.id, "quantity": 1},
            {"catalog_item_id": seed.car_wash.id, "quantity": 2},
        ],
    }


@pytest.fixture
def create_order(client, seed, auth_headers, order_payload):
    async def _create(payload=None, user=None):
        response = await client.post(
            "/api/job-orders",
            json=payload or order_payload,
            headers=auth_headers(user or seed.receptionist),
        )
        assert response.status_code == 201, response.text
        return response.json()
    return _create
