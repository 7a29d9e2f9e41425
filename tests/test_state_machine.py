"""
tests/test_state_machine.py
Booking lifecycle transitions, guarded writes, and the completion PIN.
"""

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking import state_machine
from services.booking.pin import derive_pin
from shared.exceptions import ConflictError, ValidationFailure
from shared.models.models import (
    AssignmentSource,
    Booking,
    BookingAuditLog,
    BookingStatus,
    Notification,
    Provider,
    Service,
    User,
)
from tasks import notification_tasks
from tests.conftest import make_booking


def _stale_copy(booking: Booking) -> Booking:
    """A detached snapshot, as a second writer would have read it earlier."""
    return Booking(**{col.name: getattr(booking, col.name) for col in Booking.__table__.columns})


# ── Transition Table ───────────────────────────────────────────────────────────

def test_terminal_states_have_no_exits():
    for terminal in state_machine.TERMINAL_STATUSES:
        for target in BookingStatus:
            assert not state_machine.can_transition(terminal, target)


def test_every_live_state_can_be_cancelled():
    for status in BookingStatus:
        if status not in state_machine.TERMINAL_STATUSES:
            assert state_machine.can_transition(status, BookingStatus.CANCELLED)


def test_assigned_reachable_from_pending_waiting_confirmed():
    assert set(state_machine.allowed_sources(BookingStatus.ASSIGNED)) == {
        BookingStatus.PENDING,
        BookingStatus.WAITING,
        BookingStatus.CONFIRMED,
    }


# ── Assignment ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_manual_assignment_sets_provider_and_logs(
    db: AsyncSession, customer: User, admin_user: User, provider: Provider, service: Service,
    sent_emails: list,
):
    booking = await make_booking(db, customer, service)

    await state_machine.assign_provider(db, booking, provider, AssignmentSource.MANUAL, actor=admin_user)

    assert booking.status == BookingStatus.ASSIGNED
    assert booking.provider_id == provider.id
    assert booking.assignment_source == AssignmentSource.MANUAL
    assert booking.assigned_at is not None

    log = await db.scalar(select(BookingAuditLog).where(BookingAuditLog.booking_id == booking.id))
    assert log.from_status == "PENDING"
    assert log.to_status == "ASSIGNED"
    assert log.changed_by_id == admin_user.id

    recipients = set(
        (await db.execute(select(Notification.user_id).where(Notification.booking_id == booking.id)))
        .scalars()
    )
    assert recipients == {customer.id, provider.user_id}
    assert len(sent_emails) == 1
    assert sent_emails[0].to_email == "provider@demo.com"
    assert sent_emails[0].booking_number == booking.booking_number


@pytest.mark.asyncio
async def test_manual_assignment_allowed_from_waiting_and_confirmed(
    db: AsyncSession, customer: User, admin_user: User, provider: Provider, service: Service
):
    for status in (BookingStatus.WAITING, BookingStatus.CONFIRMED):
        booking = await make_booking(db, customer, service, status=status)
        await state_machine.assign_provider(db, booking, provider, AssignmentSource.MANUAL, admin_user)
        assert booking.status == BookingStatus.ASSIGNED


@pytest.mark.asyncio
async def test_auto_assignment_claims_waiting_but_not_confirmed(
    db: AsyncSession, customer: User, provider: Provider, service: Service
):
    waiting = await make_booking(db, customer, service, status=BookingStatus.WAITING)
    await state_machine.assign_provider(db, waiting, provider, AssignmentSource.AUTO)
    assert waiting.status == BookingStatus.ASSIGNED

    booking = await make_booking(db, customer, service, status=BookingStatus.CONFIRMED)
    with pytest.raises(ConflictError):
        await state_machine.assign_provider(db, booking, provider, AssignmentSource.AUTO)

    await db.refresh(booking)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.provider_id is None


@pytest.mark.asyncio
async def test_concurrent_manual_and_auto_assignment_only_one_wins(
    db: AsyncSession, customer: User, admin_user: User, provider: Provider, service: Service
):
    """The auto scan read the booking as PENDING before the admin assigned it."""
    booking = await make_booking(db, customer, service)
    stale = _stale_copy(booking)

    await state_machine.assign_provider(db, booking, provider, AssignmentSource.MANUAL, admin_user)

    with pytest.raises(ConflictError):
        await state_machine.assign_provider(db, stale, provider, AssignmentSource.AUTO)

    fresh = await db.get(Booking, booking.id, populate_existing=True)
    assert fresh.assignment_source == AssignmentSource.MANUAL
    logs = (
        await db.execute(select(BookingAuditLog).where(BookingAuditLog.booking_id == booking.id))
    ).scalars().all()
    assert len(logs) == 1


@pytest.mark.asyncio
async def test_assignment_survives_failing_notifications(
    monkeypatch, db: AsyncSession, customer: User, admin_user: User, provider: Provider,
    service: Service, sent_emails: list,
):
    async def _fail(*args, **kwargs):
        raise RuntimeError("notifications table unavailable")

    monkeypatch.setattr(state_machine, "dispatch_notification", _fail)
    booking = await make_booking(db, customer, service)

    await state_machine.assign_provider(db, booking, provider, AssignmentSource.MANUAL, admin_user)

    fresh = await db.get(Booking, booking.id, populate_existing=True)
    assert fresh.status == BookingStatus.ASSIGNED
    assert fresh.provider_id == provider.id
    assert await db.scalar(select(Notification).where(Notification.booking_id == booking.id)) is None
    assert sent_emails == []


@pytest.mark.asyncio
async def test_assignment_survives_failing_email_enqueue(
    monkeypatch, db: AsyncSession, customer: User, provider: Provider, service: Service
):
    def _fail(payload):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(notification_tasks, "queue_assignment_email", _fail)
    booking = await make_booking(db, customer, service)

    await state_machine.assign_provider(db, booking, provider, AssignmentSource.AUTO)

    fresh = await db.get(Booking, booking.id, populate_existing=True)
    assert fresh.status == BookingStatus.ASSIGNED
    assert fresh.assignment_source == AssignmentSource.AUTO
    recipients = set(
        (await db.execute(select(Notification.user_id).where(Notification.booking_id == booking.id)))
        .scalars()
    )
    assert recipients == {customer.id, provider.user_id}


@pytest.mark.asyncio
async def test_assigning_a_booking_that_has_a_provider_conflicts(

    db: AsyncSession, customer: User, admin_user: User, provider: Provider, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.ASSIGNED, provider=provider)
    with pytest.raises(ConflictError):
        await state_machine.assign_provider(db, booking, provider, AssignmentSource.MANUAL, admin_user)


# ── Lifecycle ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_confirm_then_cancel(
    db: AsyncSession, customer: User, admin_user: User, service: Service
):
    booking = await make_booking(db, customer, service)

    await state_machine.confirm(db, booking, admin_user)
    assert booking.status == BookingStatus.CONFIRMED

    await state_machine.cancel(db, booking, admin_user, "Customer called to cancel")
    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancellation_reason == "Customer called to cancel"
    assert booking.cancelled_at is not None


@pytest.mark.asyncio
async def test_cannot_leave_terminal_state(
    db: AsyncSession, customer: User, admin_user: User, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.CANCELLED)
    with pytest.raises(ConflictError):
        await state_machine.confirm(db, booking, admin_user)
    with pytest.raises(ConflictError):
        await state_machine.cancel(db, booking, admin_user, "Second cancel")


@pytest.mark.asyncio
async def test_start_requires_assigned(
    db: AsyncSession, customer: User, admin_user: User, provider: Provider, service: Service
):
    pending = await make_booking(db, customer, service)
    with pytest.raises(ConflictError):
        await state_machine.start(db, pending, admin_user)

    assigned = await make_booking(db, customer, service, status=BookingStatus.ASSIGNED, provider=provider)
    await state_machine.start(db, assigned, admin_user)
    assert assigned.status == BookingStatus.IN_PROGRESS
    assert assigned.started_at is not None


# ── Completion PIN ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_complete_with_correct_pin(
    db: AsyncSession, customer: User, provider: Provider, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.ASSIGNED, provider=provider)
    provider_user = await db.get(User, provider.user_id)
    pin = derive_pin(booking.id, booking.created_at)

    await state_machine.complete_with_pin(db, booking, pin, provider_user)

    assert booking.status == BookingStatus.COMPLETED
    assert booking.completed_at is not None


@pytest.mark.asyncio
async def test_wrong_pin_leaves_booking_unchanged(
    db: AsyncSession, customer: User, provider: Provider, service: Service
):
    booking = await make_booking(db, customer, service, status=BookingStatus.IN_PROGRESS, provider=provider)
    provider_user = await db.get(User, provider.user_id)
    pin = derive_pin(booking.id, booking.created_at)
    wrong = str((int(pin) + 1) % 1_000_000).zfill(6)

    with pytest.raises(ValidationFailure):
        await state_machine.complete_with_pin(db, booking, wrong, provider_user)

    await db.refresh(booking)
    assert booking.status == BookingStatus.IN_PROGRESS
    assert booking.completed_at is None


@pytest.mark.asyncio
async def test_completion_from_pending_conflicts(
    db: AsyncSession, customer: User, admin_user: User, service: Service
):
    booking = await make_booking(db, customer, service)
    pin = derive_pin(booking.id, booking.created_at)
    with pytest.raises(ConflictError):
        await state_machine.complete_with_pin(db, booking, pin, admin_user)
