"""
UNIT OF WORK

Every externally triggered engine operation runs inside one unit of work:

1. In-process per-key asyncio locks, always acquired in sorted key order
2. A Motor client session + multi-document transaction (replica set only,
   enabled with MONGO_TRANSACTIONS=true); without one, a write journal that
   undoes the body's writes if it raises
3. Post-commit audit entries and events, flushed only after a clean exit

Usage:
    async with uow.begin(f"sale:{sale_id}", f"plot:{plot_id}") as ctx:
        sale = await ctx.db.sales.find_one({"_id": oid}, session=ctx.session)
        ...
        ctx.emit(RECEIPT_APPROVED, {...})
        ctx.audit("SALE", sale_id, "UPDATE", user_id, old_value, new_value)
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
import asyncio
import logging

from engine.errors import ConcurrencyConflictError
from engine.events import EventDispatcher
from engine.version_lock_engine import WriteJournal, active_journal

logger = logging.getLogger(__name__)


class KeyedLock:
    """
    Named asyncio locks created on demand and dropped once nobody holds or
    waits for them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    def _retain(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._refs[key] = self._refs.get(key, 0) + 1
        return lock

    def _drop(self, key: str) -> None:
        self._refs[key] -= 1
        if self._refs[key] == 0:
            del self._refs[key]
            del self._locks[key]

    def held_keys(self) -> List[str]:
        return sorted(self._locks.keys())

    @asynccontextmanager
    async def acquire(self, *keys: str) -> AsyncIterator[None]:
        ordered = sorted(set(k for k in keys if k))
        acquired: List[str] = []
        try:
            for key in ordered:
                lock = self._retain(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._drop(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._drop(key)


class UnitOfWorkContext:
    """Handle passed to engine code running inside a unit of work."""

    def __init__(self, db: AsyncIOMotorDatabase, session=None):
        self.db = db
        self.session = session
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.audit_entries: List[Dict[str, Any]] = []

    async def insert(self, collection_name: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        """insert_one in this unit of work; sets doc["_id"]"""
        result = await self.db[collection_name].insert_one(doc, session=self.session)
        doc["_id"] = result.inserted_id
        journal = active_journal.get()
        if journal is not None:
            journal.record_insert(collection_name, doc["_id"])
        return doc

    def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        self.events.append((event_name, payload))

    def audit(
        self,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: Optional[str],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        module_name: Optional[str] = None
    ) -> None:
        self.audit_entries.append({
            "module_name": module_name or entity_type,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "action_type": action_type,
            "user_id": user_id,
            "old_value": old_value,
            "new_value": new_value
        })


class UnitOfWork:

    def __init__(
        self,
        client: Optional[AsyncIOMotorClient],
        db: AsyncIOMotorDatabase,
        events: Optional[EventDispatcher] = None,
        audit_service=None,
        use_transactions: bool = False,
        locks: Optional[KeyedLock] = None
    ):
        self.client = client
        self.db = db
        self.events = events or EventDispatcher()
        self.audit_service = audit_service
        self.use_transactions = use_transactions
        self.locks = locks or KeyedLock()

    @asynccontextmanager
    async def begin(self, *lock_keys: str) -> AsyncIterator[UnitOfWorkContext]:
        """
        Open a unit of work holding `lock_keys`.

        If the body raises, the transaction aborts (or, without transactions,
        the write journal undoes what the body already wrote) and no audit
        entry or event is flushed.
        """
        async with self.locks.acquire(*lock_keys):
            if self.use_transactions:
                try:
                    async with await self.client.start_session() as session:
                        async with session.start_transaction():
                            ctx = UnitOfWorkContext(self.db, session)
                            yield ctx
                except PyMongoError as e:
                    if e.has_error_label("TransientTransactionError"):
                        logger.warning(f"[UOW] Transient transaction error on {lock_keys}: {e}")
                        raise ConcurrencyConflictError(
                            "TRANSACTION", ",".join(lock_keys),
                            "Transaction aborted by a concurrent write. Retry the operation."
                        )
                    raise
            else:
                ctx = UnitOfWorkContext(self.db)
                # a nested unit of work writes into the outer journal
                journal = active_journal.get()
                token = None
                if journal is None:
                    journal = WriteJournal()
                    token = active_journal.set(journal)
                try:
                    yield ctx
                except BaseException:
                    if token is not None and len(journal):
                        logger.warning(f"[UOW] Undoing {len(journal)} write(s) on {lock_keys}")
                        await journal.rollback(self.db)
                    raise
                finally:
                    if token is not None:
                        active_journal.reset(token)

        await self._flush(ctx)

    async def _flush(self, ctx: UnitOfWorkContext) -> None:
        if self.audit_service is not None and ctx.audit_entries:
            await self.audit_service.record(
                self.audit_service.build_entry(**entry) for entry in ctx.audit_entries
            )
        if ctx.events:
            await self.events.publish_all(ctx.events)
