"""
Shared fixtures: an engine over an in-memory database, the three actor
roles and a seeded RS Number / plot / client / sale.
"""

import pytest
import pytest_asyncio

from audit_service import AuditService
from engine.config import EngineConfig
from engine.sales_engine import SalesEngine
from tests.inmemory_db import InMemoryDatabase

ADMIN = {"user_id": "user-admin", "email": "admin@example.com", "role": "Admin"}
ACCOUNTS = {"user_id": "user-accounts", "email": "accounts@example.com", "role": "AccountManager"}
HOF = {"user_id": "user-hof", "email": "hof@example.com", "role": "HOF"}


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def audit_service(db):
    return AuditService(db)


@pytest.fixture
def engine(db, audit_service):
    return SalesEngine(None, db, config=EngineConfig(), audit_service=audit_service)


@pytest_asyncio.fixture
async def rs_number(engine):
    return await engine.land.create_rs_number(
        {"rs_number": "rs-101", "project_name": "Green Valley", "total_area": 100, "unit_type": "Katha"},
        ADMIN["user_id"]
    )


@pytest_asyncio.fixture
async def client_doc(engine):
    return await engine.clients.create_client(
        {"name": "Rahim Uddin", "phone": "+8801711000000", "email": "rahim@example.com"},
        ADMIN["user_id"]
    )


@pytest_asyncio.fixture
async def plot(engine, rs_number):
    return await engine.land.create_plot(rs_number["_id"], "P-1", 30, ADMIN["user_id"])


@pytest_asyncio.fixture
async def sale(engine, plot, client_doc):
    return await engine.sales.create_sale(client_doc["_id"], plot["_id"], 1_000_000, ADMIN["user_id"])


@pytest_asyncio.fixture
async def bank_account(engine):
    return await engine.accounts.create_bank_account(
        {
            "bank_name": "City Bank",
            "account_number": "100200300",
            "account_name": "Green Valley Collections",
            "opening_balance": 50000,
        },
        ADMIN["user_id"]
    )


async def approve_through_both_gates(service, doc_id):
    """Draft -> Pending Accounts -> Pending HOF -> Approved."""
    await service.submit(doc_id, ADMIN)
    await service.approve(doc_id, ACCOUNTS, "Checked against bank statement")
    return await service.approve(doc_id, HOF, "Approved")


async def approved_receipt(engine, sale, amount, **extra):
    receipt = await engine.receipts.create_receipt(
        {"sale_id": sale["_id"], "amount": amount, **extra}, ADMIN
    )
    return await approve_through_both_gates(engine.receipts, receipt["_id"])
