"""
BookingRepository - booking documents and their embedded payment ledger.

Ledger writes go through compare_and_set / update_entry_fields, which only
apply when ledger_version still matches the version the caller read. A
concurrent writer bumps the version, so the loser gets None back and must
re-read. That makes "append if reference absent" atomic on one document.
"""

from typing import Any, Dict, Optional
from datetime import datetime, timezone

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.models.base import coerce_object_id
from app.models.booking import Booking
from app.models.ledger import LedgerEntry


def _version_filter(version: int) -> Any:
    # Bookings created outside this service may not carry a version yet
    if version == 0:
        return {"$in": [0, None]}
    return version


class BookingRepository:
    """Booking database operations used by the payment core."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["bookings"]

    async def create_booking(self, booking: Booking) -> Booking:
        doc = booking.model_dump(by_alias=True)
        doc["payment_status"] = booking.payment_status.value
        doc["payment_history"] = [e.to_document() for e in booking.payment_history]
        await self.collection.insert_one(doc)
        return booking

    async def get_booking(self, booking_id: Any) -> Optional[Booking]:
        """findById. Malformed ids behave like missing bookings."""
        oid = coerce_object_id(booking_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        return Booking(**doc) if doc else None

    async def find_by_reference(self, reference_id: str) -> Optional[Booking]:
        doc = await self.collection.find_one({"payment_history.reference_id": reference_id})
        return Booking(**doc) if doc else None

    async def find_by_session(self, session_id: str) -> Optional[Booking]:
        doc = await self.collection.find_one({
            "$or": [
                {"stripe_checkout_session_id": session_id},
                {"payment_history.session_id": session_id},
            ]
        })
        return Booking(**doc) if doc else None

    async def find_by_payment_intent(self, intent_id: str) -> Optional[Booking]:
        doc = await self.collection.find_one({"stripe_payment_intent_id": intent_id})
        return Booking(**doc) if doc else None

    async def update_fields(self, booking_id: Any, fields: Dict[str, Any]) -> Optional[Booking]:
        """findByIdAndUpdate for non-ledger fields (intent ids, intended amount)."""
        oid = coerce_object_id(booking_id)
        if oid is None:
            return None
        doc = await self.collection.find_one_and_update(
            {"_id": oid},
            {"$set": {**fields, "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        return Booking(**doc) if doc else None

    async def compare_and_set(
        self,
        booking: Booking,
        fields: Optional[Dict[str, Any]] = None,
        push_entry: Optional[LedgerEntry] = None,
    ) -> Optional[Booking]:
        """
        Append an entry and/or set scalar fields in one write, only if the
        booking's ledger_version is unchanged since it was read.

        Returns the updated booking, or None when another writer got there first.
        """
        update: Dict[str, Any] = {
            "$set": {**(fields or {}), "updated_at": datetime.now(timezone.utc)},
            "$inc": {"ledger_version": 1},
        }
        if push_entry is not None:
            update["$push"] = {"payment_history": push_entry.to_document()}

        doc = await self.collection.find_one_and_update(
            {"_id": booking.id, "ledger_version": _version_filter(booking.ledger_version)},
            update,
            return_document=ReturnDocument.AFTER,
        )
        return Booking(**doc) if doc else None

    async def update_entry_fields(
        self,
        booking: Booking,
        entry_id: str,
        fields: Dict[str, Any],
    ) -> Optional[Booking]:
        """Targeted update of one embedded entry by its local id, version checked."""
        update_set = {f"payment_history.$.{key}": value for key, value in fields.items()}
        update_set["updated_at"] = datetime.now(timezone.utc)

        doc = await self.collection.find_one_and_update(
            {
                "_id": booking.id,
                "ledger_version": _version_filter(booking.ledger_version),
                "payment_history.id": entry_id,
            },
            {"$set": update_set, "$inc": {"ledger_version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return Booking(**doc) if doc else None
