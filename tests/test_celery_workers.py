"""
Tests for the Celery workers - app/workers/tasks.py

Covers:
- Beat schedule for the three periodic jobs
- Event loop handling inside a sync Celery task
- expire_pending_reservations / archive_sold_puppies end to end on a task session
- Stuck webhook event report
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from celery.schedules import crontab
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.db.database import Base, utcnow
from app.db.models.puppy import Puppy, PuppyStatus
from app.db.models.reservation import (
    PaymentProvider,
    Reservation,
    ReservationChannel,
    ReservationStatus,
)
from app.workers import tasks
from app.workers.celery_app import celery_app
from tests.conftest import TEST_DATABASE_URL


# ============================================================================
# Helpers
# ============================================================================


def _task_session_with(seed):
    """
    Replacement for get_task_session.

    The task runs on its own event loop, so the engine is created inside it
    and ``seed`` fills the fresh database before the task body runs.
    """

    @asynccontextmanager
    async def _session():
        engine = create_async_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            async with maker() as session:
                await seed(session)
                yield session
        finally:
            await engine.dispose()

    return _session


def _reservation(puppy_id: str, *, expires_at, payment_id: str) -> Reservation:
    return Reservation(
        puppy_id=puppy_id,
        customer_email="buyer@example.com",
        channel=ReservationChannel.SITE,
        payment_provider=PaymentProvider.STRIPE,
        external_payment_id=payment_id,
        amount=Decimal("300.00"),
        status=ReservationStatus.PENDING,
        expires_at=expires_at,
    )


# ============================================================================
# Beat schedule
# ============================================================================


class TestBeatSchedule:

    @pytest.mark.unit
    def test_periodic_jobs_registered(self):
        schedule = celery_app.conf.beat_schedule
        by_task = {entry["task"]: entry["schedule"] for entry in schedule.values()}

        assert by_task["app.workers.tasks.expire_pending_reservations"] == 300.0
        assert by_task["app.workers.tasks.report_stuck_webhook_events"] == 900.0
        archive = by_task["app.workers.tasks.archive_sold_puppies"]
        assert isinstance(archive, crontab)
        assert archive.hour == {3}
        assert archive.minute == {0}

    @pytest.mark.unit
    def test_scheduled_tasks_exist(self):
        for entry in celery_app.conf.beat_schedule.values():
            assert entry["task"] in celery_app.tasks

    @pytest.mark.unit
    def test_json_only(self):
        assert celery_app.conf.task_serializer == "json"
        assert celery_app.conf.accept_content == ["json"]
        assert celery_app.conf.task_acks_late is True


# ============================================================================
# Event loop handling
# ============================================================================


class TestRunAsync:

    @pytest.mark.unit
    def test_returns_coroutine_result(self):
        async def _value():
            return 42

        assert tasks.run_async(_value()) == 42

    @pytest.mark.unit
    def test_loop_closed_afterwards(self):
        seen = {}

        async def _grab_loop():
            seen["loop"] = asyncio.get_running_loop()

        tasks.run_async(_grab_loop())
        assert seen["loop"].is_closed()

    @pytest.mark.unit
    def test_exception_propagates(self):
        async def _fail():
            raise RuntimeError("sweep failed")

        with pytest.raises(RuntimeError, match="sweep failed"):
            tasks.run_async(_fail())

    @pytest.mark.unit
    def test_redis_closed_at_end_of_task(self):
        close = AsyncMock()

        async def _noop():
            return None

        with patch("app.core.redis_client.close_redis", close):
            tasks.run_async(_noop())

        close.assert_awaited_once()

    @pytest.mark.unit
    def test_redis_close_failure_does_not_fail_task(self):
        async def _noop():
            return "done"

        with patch("app.core.redis_client.close_redis", AsyncMock(side_effect=OSError("gone"))):
            assert tasks.run_async(_noop()) == "done"


# ============================================================================
# expire_pending_reservations
# ============================================================================


class TestExpirePendingReservationsTask:

    @pytest.mark.unit
    def test_expires_overdue_and_releases_puppy(self):
        async def _seed(session):
            now = utcnow()
            held = Puppy(name="Bella", price_usd=Decimal("4000.00"), status=PuppyStatus.RESERVED)
            fresh = Puppy(name="Max", price_usd=Decimal("4000.00"), status=PuppyStatus.RESERVED)
            session.add_all([held, fresh])
            await session.flush()
            session.add_all([
                _reservation(held.id, expires_at=now - timedelta(minutes=1), payment_id="pi_old"),
                _reservation(fresh.id, expires_at=now + timedelta(minutes=10), payment_id="pi_new"),
            ])
            await session.commit()

        with patch.object(tasks, "get_task_session", _task_session_with(_seed)):
            result = tasks.expire_pending_reservations()

        assert result == {"expired": 1}

    @pytest.mark.unit
    def test_nothing_to_expire(self):
        async def _seed(session):
            return None

        with patch.object(tasks, "get_task_session", _task_session_with(_seed)):
            assert tasks.expire_pending_reservations() == {"expired": 0}

    @pytest.mark.unit
    def test_service_failure_propagates(self):
        async def _seed(session):
            return None

        with patch.object(tasks, "get_task_session", _task_session_with(_seed)), \
             patch.object(
                 tasks.expiration_service,
                 "expire_pending_reservations",
                 AsyncMock(side_effect=RuntimeError("db down")),
             ):
            with pytest.raises(RuntimeError):
                tasks.expire_pending_reservations()


# ============================================================================
# archive_sold_puppies
# ============================================================================


class TestArchiveSoldPuppiesTask:

    @staticmethod
    async def _seed(session):
        now = utcnow()
        session.add_all([
            Puppy(
                name="Old sale",
                status=PuppyStatus.SOLD,
                sold_at=now - timedelta(days=settings.ARCHIVE_SOLD_AFTER_DAYS + 1),
            ),
            Puppy(name="Recent sale", status=PuppyStatus.SOLD, sold_at=now - timedelta(days=2)),
            Puppy(name="Still here", status=PuppyStatus.AVAILABLE),
        ])
        await session.commit()

    @pytest.mark.unit
    def test_default_age(self):
        with patch.object(tasks, "get_task_session", _task_session_with(self._seed)):
            assert tasks.archive_sold_puppies() == {"archived": 1}

    @pytest.mark.unit
    def test_custom_age(self):
        with patch.object(tasks, "get_task_session", _task_session_with(self._seed)):
            assert tasks.archive_sold_puppies(days=1) == {"archived": 2}


# ============================================================================
# Stuck webhook events
# ============================================================================


class TestReportStuckEvents:

    @pytest.mark.unit
    async def test_nothing_stuck(self, db_session, webhook_event_factory):
        await webhook_event_factory(event_id="evt_done", processed=True)

        with patch.object(tasks, "alert_on_failure", AsyncMock()) as alert:
            result = await tasks._report_stuck_events(db_session)

        assert result == {"stuck": 0, "alerted": False}
        alert.assert_not_called()

    @pytest.mark.unit
    async def test_alerts_on_oldest_stuck_event(self, db_session, webhook_event_factory):
        now = utcnow()
        await webhook_event_factory(
            provider="paypal",
            event_id="WH-OLD",
            event_type="PAYMENT.CAPTURE.COMPLETED",
            processing_error="Puppy not found",
            created_at=now - timedelta(hours=2),
        )
        await webhook_event_factory(event_id="evt_newer", created_at=now - timedelta(hours=1))

        with patch.object(tasks, "alert_on_failure", AsyncMock(return_value=True)) as alert:
            result = await tasks._report_stuck_events(db_session)

        assert result == {"stuck": 2, "alerted": True}
        provider, event_type, event_id, message = alert.await_args.args
        assert (provider, event_type, event_id) == ("paypal", "stuck_events", "WH-OLD")
        assert message.startswith("2 webhook event(s) unprocessed")
        assert message.endswith(": Puppy not found")

    @pytest.mark.unit
    async def test_in_flight_events_are_not_stuck(self, db_session, webhook_event_factory):
        await webhook_event_factory(event_id="evt_working", processing_started_at=utcnow())
        await webhook_event_factory(
            event_id="evt_abandoned",
            processing_started_at=utcnow() - timedelta(
                minutes=settings.WEBHOOK_PROCESSING_STALE_MINUTES + 1
            ),
        )

        with patch.object(tasks, "alert_on_failure", AsyncMock(return_value=False)) as alert:
            result = await tasks._report_stuck_events(db_session)

        assert result == {"stuck": 1, "alerted": False}
        assert alert.await_args.args[2] == "evt_abandoned"
