"""
Shared fixtures for the Kivvy job tests.

Every collaborator is faked: recording delivery transports, a scripted
payment gateway and image host and the in-memory repository. The ``store``
fixture runs every test that uses it twice: against the in-memory queue store
and against the Redis store on a fakeredis server.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import fakeredis
import pytest
import structlog

from kivvy.core.config import KivvyConfig, QueueConfig, RetryConfig, WorkerConfig
from kivvy.jobs.backends import InMemoryQueueStore, RedisQueueStore
from kivvy.jobs.dispatcher import Dispatcher
from kivvy.jobs.envelope import KIND_QUEUE, QueueName, Task, TaskKind, utcnow
from kivvy.jobs.events import TaskEvent, TaskEventBus
from kivvy.jobs.scheduler import RecurringScheduler
from kivvy.jobs.worker import TaskContext
from kivvy.services import Services
from kivvy.services.delivery import (
    EmailMessage,
    EmailSender,
    PushMessage,
    PushSender,
    SmsMessage,
    SmsSender,
)
from kivvy.services.media import ImageHost
from kivvy.services.payments import PaymentGateway, RefundRecord
from kivvy.services.repository import (
    Activity,
    ActivitySession,
    Booking,
    BookingStatus,
    InMemoryRepository,
    Payment,
    PaymentStatus,
    User,
)


# ==================== Fakes ====================

class RecordingEmailSender(EmailSender):
    def __init__(self):
        self.sent: List[EmailMessage] = []
        self.failures: List[Exception] = []

    async def send_email(self, message: EmailMessage) -> None:
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(message)


class RecordingSmsSender(SmsSender):
    def __init__(self):
        self.sent: List[SmsMessage] = []

    async def send_sms(self, message: SmsMessage) -> None:
        self.sent.append(message)


class RecordingPushSender(PushSender):
    def __init__(self):
        self.sent: List[PushMessage] = []

    async def send_push(self, message: PushMessage) -> None:
        self.sent.append(message)


class FakeGateway(PaymentGateway):
    """Records calls; ``failures`` are raised (in order) before any call succeeds."""

    def __init__(self):
        self.captures: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.statuses: Dict[str, str] = {}
        self.failures: List[Exception] = []

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    async def capture(self, intent_id: str, idempotency_key: str) -> str:
        self._maybe_fail()
        self.captures.append({"intent_id": intent_id, "idempotency_key": idempotency_key})
        return "succeeded"

    async def refund(self, intent_id, amount, reason, idempotency_key) -> RefundRecord:
        self._maybe_fail()
        self.refunds.append(
            {"intent_id": intent_id, "amount": amount, "reason": reason, "idempotency_key": idempotency_key}
        )
        return RefundRecord(id=f"re_{len(self.refunds)}", amount=amount, status="succeeded")

    async def retrieve_status(self, intent_id: str) -> str:
        self._maybe_fail()
        return self.statuses.get(intent_id, "requires_payment_method")


class FakeImageHost(ImageHost):
    def __init__(self):
        self.uploads: List[Dict[str, str]] = []

    async def upload(self, path: str, folder: str) -> str:
        self.uploads.append({"path": path, "folder": folder})
        return f"https://images.example/{folder}/{path.rsplit('/', 1)[-1]}"


class EventRecorder:
    def __init__(self):
        self.events: List[TaskEvent] = []

    def __call__(self, event: TaskEvent) -> None:
        self.events.append(event)

    def of(self, task_id: str) -> List[str]:
        return [e.event.value for e in self.events if e.task_id == task_id]


async def wait_for(predicate: Callable[[], Any], timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` (sync or async) until truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


# ==================== Fixtures ====================

@pytest.fixture
def fast_worker_config() -> WorkerConfig:
    return WorkerConfig(
        poll_interval=0.01,
        lease_seconds=5.0,
        lease_renew_interval=1.0,
        stall_check_interval=0.05,
        shutdown_timeout=2.0,
    )


@pytest.fixture
def config(fast_worker_config) -> KivvyConfig:
    quick = RetryConfig(max_attempts=3, backoff_type="exponential", backoff_ms=20)
    return KivvyConfig(
        queue_backend="memory",
        queues={name.value: QueueConfig(retry=quick) for name in QueueName},
        worker=fast_worker_config,
    )


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


def _redis_store(server: fakeredis.FakeServer, **kwargs: Any) -> RedisQueueStore:
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    return RedisQueueStore(client=client, **kwargs)


@pytest.fixture(params=["memory", "redis"])
async def store(request, redis_server):
    s = _redis_store(redis_server) if request.param == "redis" else InMemoryQueueStore()
    await s.initialize()
    yield s
    await s.shutdown()


@pytest.fixture
async def make_redis_store(redis_server):
    """Open Redis stores sharing one server, as separate worker processes would."""
    opened: List[RedisQueueStore] = []

    async def _make(**kwargs: Any) -> RedisQueueStore:
        s = _redis_store(redis_server, **kwargs)
        await s.initialize()
        opened.append(s)
        return s

    yield _make
    for s in opened:
        await s.shutdown()


@pytest.fixture
def events() -> TaskEventBus:
    return TaskEventBus()


@pytest.fixture
def recorder(events) -> EventRecorder:
    rec = EventRecorder()
    events.subscribe(rec)
    return rec


@pytest.fixture
def dispatcher(store, config, events) -> Dispatcher:
    d = Dispatcher(store, config, events=events)
    d.scheduler = RecurringScheduler(d, check_interval=0.01)
    return d


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def services(repository) -> Services:
    return Services(
        email=RecordingEmailSender(),
        sms=RecordingSmsSender(),
        push=RecordingPushSender(),
        payments=FakeGateway(),
        repository=repository,
        media=FakeImageHost(),
    )


@pytest.fixture
def marketplace(repository) -> Dict[str, Any]:
    """One provider activity with a session tomorrow and a paid booking on it."""
    user = User(email="ana@example.pt", name="Ana", phone="912345678")
    activity = Activity(title="Surf para miúdos", provider_id="prov-1", location="Ericeira")
    start = (utcnow() + timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)
    session = ActivitySession(activity_id=activity.id, start_time=start, capacity=10, available_spots=8)
    booking = Booking(
        user_id=user.id,
        session_id=session.id,
        quantity=2,
        total_amount=50.0,
        status=BookingStatus.PENDING,
    )
    payment = Payment(
        booking_id=booking.id,
        amount=50.0,
        status=PaymentStatus.PROCESSING,
        stripe_payment_intent_id="pi_123",
    )
    repository.add(user, activity, session, booking, payment)
    return {"user": user, "activity": activity, "session": session, "booking": booking, "payment": payment}


@pytest.fixture
def make_context(services, dispatcher, store) -> Callable[..., TaskContext]:
    """TaskContext for calling processors directly."""

    def _make(kind: TaskKind, payload: Optional[Dict[str, Any]] = None, task_id: Optional[str] = None) -> TaskContext:
        task = Task(queue=KIND_QUEUE[kind], kind=kind, payload=payload or {})
        if task_id:
            task.id = task_id
        task.attempts_made = 1
        return TaskContext(
            task=task,
            services=services,
            dispatcher=dispatcher,
            store=store,
            log=structlog.get_logger("tests").bind(task_id=task.id),
        )

    return _make


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    return wait_for
