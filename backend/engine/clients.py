"""
CLIENT REGISTRY

Buyers referenced by Plots, Sales and Receipts. Clients are never removed;
deactivation is refused while the client still has an open sale.
"""

from typing import Any, Dict, List, Optional, Tuple
import logging
import re

from engine.documents import new_document, to_object_id
from engine.errors import InvalidStateError, NotFoundError, ValidationError
from engine.unit_of_work import UnitOfWork
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)

CLIENT_FIELDS = ("name", "phone", "email", "address", "national_id", "notes")

PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9\- ]{5,19}$")


def client_lock_key(client_id) -> str:
    return f"client:{client_id}"


def normalize_client(data: Dict[str, Any]) -> Dict[str, Any]:
    fields = {k: data.get(k) for k in CLIENT_FIELDS}
    fields["name"] = (fields["name"] or "").strip()
    if not fields["name"]:
        raise ValidationError("Client name is required")
    phone = (fields["phone"] or "").strip()
    if not phone:
        raise ValidationError("Client phone is required")
    if not PHONE_PATTERN.match(phone):
        raise ValidationError(f"Invalid phone number: {phone}", {"phone": phone})
    fields["phone"] = phone
    if fields["email"]:
        fields["email"] = fields["email"].strip().lower()
        if "@" not in fields["email"]:
            raise ValidationError(f"Invalid email: {fields['email']}")
    return fields


class ClientRegistry:

    def __init__(self, uow: UnitOfWork, version_lock: VersionLockEngine):
        self.uow = uow
        self.db = uow.db
        self.version_lock = version_lock

    async def get_client(self, client_id, session=None) -> Dict[str, Any]:
        oid = to_object_id(client_id, "CLIENT")
        client = await self.db.clients.find_one({"_id": oid}, session=session)
        if not client:
            raise NotFoundError("CLIENT", client_id)
        return client

    async def list_clients(
        self,
        search: Optional[str] = None,
        active_only: bool = True,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"is_active": True} if active_only else {}
        if search:
            pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
            query["$or"] = [{"name": pattern}, {"phone": pattern}, {"national_id": pattern}]
        total = await self.db.clients.count_documents(query)
        cursor = self.db.clients.find(query).sort("name", 1).skip((page - 1) * limit).limit(limit)
        return await cursor.to_list(length=limit), total

    async def create_client(self, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        fields = normalize_client(data)
        existing = await self.db.clients.find_one({"phone": fields["phone"], "is_active": True})
        if existing:
            raise ValidationError(
                f"A client with phone {fields['phone']} already exists",
                {"client_id": str(existing["_id"])}
            )

        async with self.uow.begin() as ctx:
            client = new_document(fields, user_id)
            await ctx.insert("clients", client)
            ctx.audit("CLIENT", client["_id"], "CREATE", user_id,
                      new_value={"name": client["name"], "phone": client["phone"]},
                      module_name="CLIENTS")

        logger.info(f"[CLIENT] Created {client['name']}")
        return client

    async def update_client(self, client_id, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        client = await self.get_client(client_id)
        async with self.uow.begin(client_lock_key(client["_id"])) as ctx:
            client = await self.get_client(client_id, session=ctx.session)
            merged = {k: client.get(k) for k in CLIENT_FIELDS}
            merged.update({k: v for k, v in data.items() if k in CLIENT_FIELDS})
            fields = normalize_client(merged)
            if fields["phone"] != client["phone"]:
                clash = await ctx.db.clients.find_one(
                    {"phone": fields["phone"], "is_active": True, "_id": {"$ne": client["_id"]}},
                    session=ctx.session
                )
                if clash:
                    raise ValidationError(f"A client with phone {fields['phone']} already exists")

            old_value = {k: client.get(k) for k in CLIENT_FIELDS}
            await self.version_lock.apply("CLIENT", client, fields, session=ctx.session)
            ctx.audit("CLIENT", client["_id"], "UPDATE", user_id, old_value, fields, module_name="CLIENTS")
        return client

    async def deactivate_client(self, client_id, user_id: str) -> Dict[str, Any]:
        client = await self.get_client(client_id)
        async with self.uow.begin(client_lock_key(client["_id"])) as ctx:
            client = await self.get_client(client_id, session=ctx.session)
            open_sales = await ctx.db.sales.count_documents(
                {"client_id": client["_id"], "is_active": True, "status": {"$in": ["Active", "On Hold"]}},
                session=ctx.session
            )
            if open_sales:
                raise InvalidStateError(
                    f"Client {client['name']} has {open_sales} open sale(s)",
                    {"open_sales": open_sales}
                )
            await self.version_lock.apply("CLIENT", client, {"is_active": False}, session=ctx.session)
            ctx.audit("CLIENT", client["_id"], "DEACTIVATE", user_id,
                      {"is_active": True}, {"is_active": False}, module_name="CLIENTS")

        logger.info(f"[CLIENT] Deactivated {client['name']}")
        return client
