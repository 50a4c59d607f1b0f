from fastapi import Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.db.mongo import get_db
from app.repositories.booking_repo import BookingRepository
from app.services.gateway import StripeGateway
from app.services.notification_service import LoggingNotifier, PaymentNotifier
from app.services.payment_service import PaymentService

_notifier = LoggingNotifier()


def get_gateway() -> StripeGateway:
    return StripeGateway()


def get_notifier() -> PaymentNotifier:
    return _notifier


def get_payment_service(
    db: AsyncIOMotorDatabase = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
) -> PaymentService:
    """Per-request payment service over the active database connection."""
    return PaymentService(BookingRepository(db), gateway)
