"""
SALES ENGINE

Wires the land, sale, approval, cancellation, refund, instalment and cheque
services around one shared unit of work so that every service sees the same
locks, event dispatcher and audit sink.

Usage:
    engine = SalesEngine(client, db, config=load_engine_config(), audit_service=AuditService(db))
    await engine.create_indexes()
    sale = await engine.sales.create_sale(client_id, plot_id, 1_000_000, user_id)
"""

from typing import Any, Dict, Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
import logging

from engine.accounts import AccountBook
from engine.atomic_numbering import AtomicDocumentNumbering
from engine.cancellation import CancellationService
from engine.cheques import ChequeRegister
from engine.clients import ClientRegistry
from engine.config import EngineConfig
from engine.events import EventDispatcher
from engine.expenses import ExpenseService
from engine.financial_integrity_job import FinancialIntegrityJob
from engine.installments import InstallmentScheduleService
from engine.invariant_validator import FinancialInvariantValidator
from engine.land_allocator import LandAllocator
from engine.receipts import ReceiptService
from engine.refunds import RefundService
from engine.sale_ledger import SaleLedger
from engine.settings_service import SettingsService
from engine.unit_of_work import UnitOfWork
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)

# collection -> [(keys, options)]
INDEXES = {
    "rs_numbers": [([("rs_number", ASCENDING)], {"unique": True, "name": "unique_rs_number"})],
    "plots": [
        ([("rs_number_id", ASCENDING), ("plot_number", ASCENDING)], {"name": "rs_plot_number"}),
        ([("status", ASCENDING)], {"name": "plot_status"}),
    ],
    "clients": [([("phone", ASCENDING)], {"name": "client_phone"})],
    "sales": [
        ([("client_id", ASCENDING)], {"name": "sale_client"}),
        ([("status", ASCENDING), ("created_at", DESCENDING)], {"name": "sale_status_created"}),
    ],
    "receipts": [
        ([("sale_id", ASCENDING), ("approval_status", ASCENDING)], {"name": "receipt_sale_status"}),
    ],
    "expenses": [([("status", ASCENDING), ("expense_date", DESCENDING)], {"name": "expense_status_date"})],
    "cancellations": [([("sale_id", ASCENDING), ("status", ASCENDING)], {"name": "cancellation_sale_status"})],
    "refunds": [
        ([("cancellation_id", ASCENDING), ("installment_number", ASCENDING)], {"name": "refund_cancellation"}),
        ([("status", ASCENDING), ("approval_status", ASCENDING)], {"name": "refund_status"}),
    ],
    "installment_schedules": [
        ([("sale_id", ASCENDING), ("installment_number", ASCENDING)], {"name": "installment_sale"}),
        ([("client_id", ASCENDING), ("due_date", ASCENDING)], {"name": "installment_client_due"}),
    ],
    "cheques": [
        ([("status", ASCENDING), ("due_date", ASCENDING)], {"name": "cheque_status_due"}),
        ([("client_id", ASCENDING), ("status", ASCENDING)], {"name": "cheque_client_status"}),
    ],
    "account_movements": [
        ([("account_type", ASCENDING), ("account_id", ASCENDING), ("created_at", DESCENDING)],
         {"name": "movement_account"}),
    ],
    "system_settings": [([("key", ASCENDING)], {"unique": True, "name": "unique_setting_key"})],
    "audit_logs": [([("entity_type", ASCENDING), ("entity_id", ASCENDING)], {"name": "audit_entity"})],
}


class SalesEngine:

    def __init__(
        self,
        client: Optional[AsyncIOMotorClient],
        db: AsyncIOMotorDatabase,
        config: Optional[EngineConfig] = None,
        audit_service=None,
        events: Optional[EventDispatcher] = None
    ):
        self.config = config or EngineConfig()
        self.db = db
        self.events = events or EventDispatcher()
        self.uow = UnitOfWork(
            client, db,
            events=self.events,
            audit_service=audit_service,
            use_transactions=self.config.use_transactions,
        )

        self.version_lock = VersionLockEngine(db)
        self.validator = FinancialInvariantValidator(db)
        self.numbering = AtomicDocumentNumbering(db)
        self.settings = SettingsService(db, self.config.setting_overrides)

        self.clients = ClientRegistry(self.uow, self.version_lock)
        self.accounts = AccountBook(self.uow, self.version_lock)
        self.land = LandAllocator(self.uow, self.version_lock, self.validator)
        self.sales = SaleLedger(
            self.uow, self.version_lock, self.validator, self.land, self.numbering, self.settings
        )
        self.installments = InstallmentScheduleService(self.uow, self.version_lock, self.sales)
        self.receipts = ReceiptService(
            self.uow, self.version_lock, self.sales, self.accounts, self.numbering, self.installments
        )
        self.expenses = ExpenseService(self.uow, self.version_lock, self.accounts, self.numbering)
        self.cancellations = CancellationService(
            self.uow, self.version_lock, self.sales, self.land, self.settings, self.accounts,
            self.installments
        )
        self.refunds = RefundService(self.uow, self.version_lock, self.cancellations, self.numbering)
        self.cheques = ChequeRegister(self.uow, self.version_lock)

        logger.info(
            f"[ENGINE] Initialised on database '{db.name}' "
            f"(transactions {'on' if self.config.use_transactions else 'off'})"
        )
        if not self.config.use_transactions:
            logger.warning(
                "[ENGINE] MongoDB transactions are off; a failed operation is undone from its write "
                "journal and locks are per process. Set MONGO_TRANSACTIONS=true before running several workers."
            )

    async def create_indexes(self) -> None:
        await self.numbering.create_unique_constraints()
        for collection_name, indexes in INDEXES.items():
            for keys, options in indexes:
                await self.db[collection_name].create_index(keys, **options)
        logger.info("[ENGINE] Indexes ensured")

    async def run_integrity_check(self) -> Dict[str, Any]:
        return await FinancialIntegrityJob(self.db).run()
