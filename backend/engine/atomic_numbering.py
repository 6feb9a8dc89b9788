"""
ATOMIC DOCUMENT NUMBERING

Provides:
1. Monthly sequences per prefix: SAL-2025-01-00001, RCP-2025-01-00002, ...
2. findOneAndUpdate + $inc for atomic increments
3. Unique document number constraint
4. Collision retry mechanism
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from datetime import datetime
from typing import Optional
import logging
import asyncio

from engine.errors import EngineError

logger = logging.getLogger(__name__)

SALE_PREFIX = "SAL"
RECEIPT_PREFIX = "RCP"
EXPENSE_PREFIX = "EXP"
REFUND_PREFIX = "RFD"

# prefix -> (collection, number field)
NUMBERED_COLLECTIONS = {
    SALE_PREFIX: ("sales", "sale_number"),
    RECEIPT_PREFIX: ("receipts", "receipt_number"),
    EXPENSE_PREFIX: ("expenses", "expense_number"),
    REFUND_PREFIX: ("refunds", "refund_number"),
}


class SequenceCollisionError(EngineError):
    """Raised when sequence collision occurs after max retries"""
    code = "SEQUENCE_COLLISION"
    status_code = 409


def format_document_number(prefix: str, period: str, sequence: int) -> str:
    return f"{prefix}-{period}-{sequence:05d}"


class AtomicDocumentNumbering:
    """
    Atomic document number generator with collision protection.

    Uses findOneAndUpdate with $inc for atomic sequence generation.
    Implements retry mechanism for collision handling.
    """

    MAX_RETRIES = 5
    RETRY_DELAY_MS = 100  # Base delay in milliseconds

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_next_sequence(self, prefix: str, period: str, session=None) -> int:
        """
        Get next atomic sequence number for (prefix, period).
        Returns the NEW sequence number after increment.
        """
        result = await self.db.document_sequences.find_one_and_update(
            {"prefix": prefix, "period": period},
            {
                "$inc": {"current_sequence": 1},
                "$set": {"updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow()}
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session
        )
        return result["current_sequence"]

    async def generate_document_number(
        self,
        prefix: str,
        session=None,
        now: Optional[datetime] = None
    ) -> str:
        """
        Generate a unique document number with retry on collision.

        Raises:
            SequenceCollisionError: If max retries exceeded
        """
        if prefix not in NUMBERED_COLLECTIONS:
            raise KeyError(f"Unknown document prefix: {prefix}")

        collection_name, number_field = NUMBERED_COLLECTIONS[prefix]
        period = (now or datetime.utcnow()).strftime("%Y-%m")

        for attempt in range(self.MAX_RETRIES):
            sequence = await self.get_next_sequence(prefix, period, session)
            document_number = format_document_number(prefix, period, sequence)

            # Only triggers if numbers were inserted outside this generator
            existing = await self.db[collection_name].find_one(
                {number_field: document_number},
                session=session
            )
            if existing:
                logger.warning(
                    f"[NUMBERING] Document number collision: {document_number}, retry {attempt + 1}"
                )
                await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)
                continue

            logger.info(f"[NUMBERING] Generated document number: {document_number}")
            return document_number

        raise SequenceCollisionError(
            f"Failed to generate unique {prefix} number after {self.MAX_RETRIES} attempts",
            {"prefix": prefix, "period": period}
        )

    async def create_unique_constraints(self):
        """
        Create unique indexes on document numbers and sequence keys.
        """
        try:
            for prefix, (collection_name, number_field) in NUMBERED_COLLECTIONS.items():
                await self.db[collection_name].create_index(
                    [(number_field, 1)],
                    unique=True,
                    name=f"unique_{number_field}"
                )

            await self.db.document_sequences.create_index(
                [("prefix", 1), ("period", 1)],
                unique=True,
                name="unique_sequence_key"
            )

            logger.info("[NUMBERING] Created unique document number constraints")
        except Exception as e:
            logger.warning(f"[NUMBERING] Index creation result: {str(e)}")
