"""
Kivvy Repository

The persistence capability the processors need from the marketplace data
model: bookings, payments, sessions, activities, users, reviews, auth
sessions and reports.

``Repository`` is the interface; ``InMemoryRepository`` is the in-process
implementation used by tests and by the CLI when no database adapter is
wired in. Capacity changes go exclusively through ``adjust_available_spots``
and ``reserve_spots``, which are atomic.
"""

from __future__ import annotations

import asyncio
import dataclasses
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from kivvy.jobs.envelope import utcnow
from kivvy.jobs.errors import RecordNotFound

logger = structlog.get_logger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


@dataclass
class User:
    email: str
    name: str
    id: str = field(default_factory=_new_id)
    phone: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Activity:
    title: str
    provider_id: str
    id: str = field(default_factory=_new_id)
    location: str = ""
    image_url: Optional[str] = None
    total_bookings: int = 0
    total_reviews: int = 0
    average_rating: float = 0.0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ActivitySession:
    activity_id: str
    start_time: datetime
    capacity: int
    id: str = field(default_factory=_new_id)
    available_spots: int = -1

    def __post_init__(self):
        if self.available_spots < 0:
            self.available_spots = self.capacity


@dataclass
class Booking:
    user_id: str
    session_id: str
    id: str = field(default_factory=_new_id)
    quantity: int = 1
    total_amount: float = 0.0
    status: BookingStatus = BookingStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Payment:
    booking_id: str
    amount: float
    id: str = field(default_factory=_new_id)
    status: PaymentStatus = PaymentStatus.PENDING
    stripe_payment_intent_id: Optional[str] = None
    captured_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_amount: float = 0.0
    # idempotency keys of the refunds already counted in refund_amount
    refund_keys: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Review:
    activity_id: str
    user_id: str
    rating: int
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthSession:
    user_id: str
    expires: datetime
    id: str = field(default_factory=_new_id)


@dataclass
class Report:
    id: str
    type: str
    period: str
    data: Dict[str, Any]
    provider_id: Optional[str] = None
    generated_at: datetime = field(default_factory=utcnow)


class Repository(ABC):
    """Persistence operations used by the processors."""

    @abstractmethod
    async def get_booking(self, booking_id: str) -> Optional[Booking]: ...

    @abstractmethod
    async def get_payment_for_booking(self, booking_id: str) -> Optional[Payment]: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[ActivitySession]: ...

    @abstractmethod
    async def get_activity(self, activity_id: str) -> Optional[Activity]: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def update_booking(self, booking_id: str, **changes: Any) -> Booking: ...

    @abstractmethod
    async def update_payment(self, payment_id: str, **changes: Any) -> Payment: ...

    @abstractmethod
    async def update_activity(self, activity_id: str, **changes: Any) -> Activity: ...

    @abstractmethod
    async def adjust_available_spots(self, session_id: str, delta: int) -> int:
        """Atomically add ``delta`` spots (clamped to 0..capacity). Returns the new count."""

    @abstractmethod
    async def reserve_spots(self, session_id: str, quantity: int) -> bool:
        """Atomically take ``quantity`` spots if that many are free."""

    @abstractmethod
    async def list_activities(self, provider_id: Optional[str] = None) -> List[Activity]: ...

    @abstractmethod
    async def list_sessions(self, activity_id: Optional[str] = None) -> List[ActivitySession]: ...

    @abstractmethod
    async def list_bookings(
        self,
        status: Optional[BookingStatus] = None,
        provider_id: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        session_start_from: Optional[datetime] = None,
        session_start_to: Optional[datetime] = None,
    ) -> List[Booking]: ...

    @abstractmethod
    async def list_payments(
        self,
        status: Optional[PaymentStatus] = None,
        provider_id: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> List[Payment]: ...

    @abstractmethod
    async def list_users(self, created_from: Optional[datetime] = None) -> List[User]: ...

    @abstractmethod
    async def list_reviews(self, activity_id: Optional[str] = None) -> List[Review]: ...

    @abstractmethod
    async def delete_auth_sessions_expired_before(self, cutoff: datetime) -> int: ...

    @abstractmethod
    async def save_report(self, report: Report) -> Report:
        """Insert or overwrite by report id."""

    @abstractmethod
    async def get_report(self, report_id: str) -> Optional[Report]: ...


class InMemoryRepository(Repository):
    """Dict-backed repository. Returned records are copies."""

    def __init__(self):
        self.users: Dict[str, User] = {}
        self.activities: Dict[str, Activity] = {}
        self.sessions: Dict[str, ActivitySession] = {}
        self.bookings: Dict[str, Booking] = {}
        self.payments: Dict[str, Payment] = {}
        self.reviews: Dict[str, Review] = {}
        self.auth_sessions: Dict[str, AuthSession] = {}
        self.reports: Dict[str, Report] = {}
        self._lock = asyncio.Lock()

    # Seeding helpers

    def add(self, *records: Any) -> None:
        tables = {
            User: self.users,
            Activity: self.activities,
            ActivitySession: self.sessions,
            Booking: self.bookings,
            Payment: self.payments,
            Review: self.reviews,
            AuthSession: self.auth_sessions,
            Report: self.reports,
        }
        for record in records:
            tables[type(record)][record.id] = record

    @staticmethod
    def _copy(record: Any) -> Any:
        return dataclasses.replace(record) if record is not None else None

    def _update(self, table: Dict[str, Any], name: str, record_id: str, changes: Dict[str, Any]) -> Any:
        record = table.get(record_id)
        if record is None:
            raise RecordNotFound(name, record_id)
        updated = dataclasses.replace(record, **changes)
        table[record_id] = updated
        return dataclasses.replace(updated)

    def _provider_of_session(self, session_id: str) -> Optional[str]:
        session = self.sessions.get(session_id)
        activity = self.activities.get(session.activity_id) if session else None
        return activity.provider_id if activity else None

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        return self._copy(self.bookings.get(booking_id))

    async def get_payment_for_booking(self, booking_id: str) -> Optional[Payment]:
        for payment in self.payments.values():
            if payment.booking_id == booking_id:
                return self._copy(payment)
        return None

    async def get_session(self, session_id: str) -> Optional[ActivitySession]:
        return self._copy(self.sessions.get(session_id))

    async def get_activity(self, activity_id: str) -> Optional[Activity]:
        return self._copy(self.activities.get(activity_id))

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._copy(self.users.get(user_id))

    async def update_booking(self, booking_id: str, **changes: Any) -> Booking:
        async with self._lock:
            return self._update(self.bookings, "Booking", booking_id, changes)

    async def update_payment(self, payment_id: str, **changes: Any) -> Payment:
        async with self._lock:
            return self._update(self.payments, "Payment", payment_id, changes)

    async def update_activity(self, activity_id: str, **changes: Any) -> Activity:
        async with self._lock:
            return self._update(self.activities, "Activity", activity_id, changes)

    async def adjust_available_spots(self, session_id: str, delta: int) -> int:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                raise RecordNotFound("ActivitySession", session_id)
            spots = min(max(session.available_spots + delta, 0), session.capacity)
            self.sessions[session_id] = dataclasses.replace(session, available_spots=spots)
            return spots

    async def reserve_spots(self, session_id: str, quantity: int) -> bool:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                raise RecordNotFound("ActivitySession", session_id)
            if session.available_spots < quantity:
                return False
            self.sessions[session_id] = dataclasses.replace(
                session, available_spots=session.available_spots - quantity
            )
            return True

    async def list_activities(self, provider_id: Optional[str] = None) -> List[Activity]:
        return [
            self._copy(a) for a in self.activities.values()
            if provider_id is None or a.provider_id == provider_id
        ]

    async def list_sessions(self, activity_id: Optional[str] = None) -> List[ActivitySession]:
        return [
            self._copy(s) for s in self.sessions.values()
            if activity_id is None or s.activity_id == activity_id
        ]

    async def list_bookings(
        self,
        status: Optional[BookingStatus] = None,
        provider_id: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        session_start_from: Optional[datetime] = None,
        session_start_to: Optional[datetime] = None,
    ) -> List[Booking]:
        result = []
        for booking in self.bookings.values():
            if status is not None and booking.status != status:
                continue
            if provider_id is not None and self._provider_of_session(booking.session_id) != provider_id:
                continue
            if created_from is not None and booking.created_at < created_from:
                continue
            if created_to is not None and booking.created_at >= created_to:
                continue
            if session_start_from is not None or session_start_to is not None:
                session = self.sessions.get(booking.session_id)
                if session is None:
                    continue
                if session_start_from is not None and session.start_time < session_start_from:
                    continue
                if session_start_to is not None and session.start_time >= session_start_to:
                    continue
            result.append(self._copy(booking))
        return result

    async def list_payments(
        self,
        status: Optional[PaymentStatus] = None,
        provider_id: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> List[Payment]:
        result = []
        for payment in self.payments.values():
            if status is not None and payment.status != status:
                continue
            if provider_id is not None:
                booking = self.bookings.get(payment.booking_id)
                if booking is None or self._provider_of_session(booking.session_id) != provider_id:
                    continue
            if created_from is not None and payment.created_at < created_from:
                continue
            if created_to is not None and payment.created_at >= created_to:
                continue
            result.append(self._copy(payment))
        return result

    async def list_users(self, created_from: Optional[datetime] = None) -> List[User]:
        return [
            self._copy(u) for u in self.users.values()
            if created_from is None or u.created_at >= created_from
        ]

    async def list_reviews(self, activity_id: Optional[str] = None) -> List[Review]:
        return [
            self._copy(r) for r in self.reviews.values()
            if activity_id is None or r.activity_id == activity_id
        ]

    async def delete_auth_sessions_expired_before(self, cutoff: datetime) -> int:
        async with self._lock:
            expired = [sid for sid, s in self.auth_sessions.items() if s.expires < cutoff]
            for sid in expired:
                del self.auth_sessions[sid]
            return len(expired)

    async def save_report(self, report: Report) -> Report:
        async with self._lock:
            self.reports[report.id] = dataclasses.replace(report)
            return report

    async def get_report(self, report_id: str) -> Optional[Report]:
        return self._copy(self.reports.get(report_id))
