import datetime as dt
from uuid import uuid4

import pytest
from sqlalchemy import select

from points_ledger.core.settings import get_settings
from points_ledger.jobs.expiry import run_expiry_warnings, run_points_expiry_sweep
from points_ledger.models import EarningSourceType, ExpiryMode, ExpiryType, PointsExpiration, PointsExpirationStatus
from points_ledger.observability.ledger import get_ledger_store
from points_ledger.services.expiry import ExpiryScheduler
from points_ledger.services.ledger import BalanceLedger, ReplayedBalance
from points_ledger.services.rules import EarningRuleService, ExpiryRuleService


async def _seed(session_factory, confirmed_user, pending_user):
    async with session_factory() as session:
        expiry_rule = await ExpiryRuleService(session).create(
            name="30 days",
            expiry_type=ExpiryType.RELATIVE_DURATION,
            expiry_mode=ExpiryMode.DAYS_AFTER_EARN,
            expiry_days=30,
            warning_days_before=3,
        )
        rule = await EarningRuleService(session).create(
            rule_name="Welcome",
            source_type=EarningSourceType.SIGNUP,
            points_awarded=40,
            expiry_rule_id=expiry_rule.id,
            enabled=True,
        )
        ledger = BalanceLedger(session)
        await ledger.earn_from_rule(confirmed_user, rule.id)
        await ledger.confirm_pending_points(confirmed_user, 40)
        await ledger.earn_from_rule(pending_user, rule.id)


@pytest.mark.asyncio
async def test_expiry_sweep_lapses_due_batches(session_factory) -> None:
    confirmed_user, pending_user = uuid4(), uuid4()
    await _seed(session_factory, confirmed_user, pending_user)
    now = dt.datetime.now(dt.timezone.utc)

    early = await run_points_expiry_sweep(session_factory=session_factory, reference_time=now)
    assert early == {"due": 0, "expired_entries": 0, "expired_points": 0, "failed": 0}

    summary = await run_points_expiry_sweep(
        session_factory=session_factory, reference_time=now + dt.timedelta(days=31)
    )
    assert summary == {"due": 1, "expired_entries": 1, "expired_points": 40, "failed": 0}

    async with session_factory() as session:
        ledger = BalanceLedger(session)
        confirmed = await ledger.get_balance(confirmed_user)
        pending = await ledger.get_balance(pending_user)
        assert confirmed.available_points == 0
        assert pending.pending_points == 40
        assert pending.available_points == 0
        assert await ledger.replay(confirmed_user) == ReplayedBalance.of(confirmed)
        assert await ExpiryScheduler(session).due(now + dt.timedelta(days=31)) == []

    expiry = get_ledger_store().snapshot().expiry
    assert expiry == {"sweeps": 2, "entries": 1, "points": 40}


@pytest.mark.asyncio
async def test_expiry_sweep_respects_limit(session_factory) -> None:
    pending_user = uuid4()
    await _seed(session_factory, uuid4(), pending_user)
    async with session_factory() as session:
        await BalanceLedger(session).confirm_pending_points(pending_user, 40)
    later = dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=31)

    first = await run_points_expiry_sweep(session_factory=session_factory, reference_time=later, limit=1)
    assert first["due"] == 1
    second = await run_points_expiry_sweep(session_factory=session_factory, reference_time=later, limit=1)
    assert second["due"] == 1
    third = await run_points_expiry_sweep(session_factory=session_factory, reference_time=later, limit=1)
    assert third["due"] == 0


@pytest.mark.asyncio
async def test_expiry_warnings_are_sent_once(session_factory, notifications, user_directory) -> None:
    confirmed_user, pending_user = uuid4(), uuid4()
    user_directory.add(confirmed_user, "member@example.com", display_name="Ada")
    await _seed(session_factory, confirmed_user, pending_user)
    at = dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=28)

    summary = await run_expiry_warnings(session_factory=session_factory, reference_time=at, notifications=notifications)
    assert summary == {"warned": 2, "skipped": False}

    await notifications.drain()
    assert [event.event_type for event in notifications.sent_events] == ["points_expiring"]
    assert notifications.sent_events[0].subject == "40 points expire soon"
    assert notifications.sent_events[0].body_text.startswith("Hi Ada,")

    again = await run_expiry_warnings(session_factory=session_factory, reference_time=at, notifications=notifications)
    assert again == {"warned": 0, "skipped": False}

    async with session_factory() as session:
        records = (await session.execute(select(PointsExpiration))).scalars().all()
        assert len(records) == 2
        assert all(record.warned_at is not None for record in records)
        assert all(record.status is PointsExpirationStatus.SCHEDULED for record in records)


@pytest.mark.asyncio
async def test_expiry_warnings_can_be_disabled(session_factory, notifications, monkeypatch) -> None:
    await _seed(session_factory, uuid4(), uuid4())
    monkeypatch.setattr(get_settings(), "points_expiry_warning_enabled", False)

    summary = await run_expiry_warnings(
        session_factory=session_factory,
        reference_time=dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=28),
        notifications=notifications,
    )

    assert summary == {"warned": 0, "skipped": True}
    assert notifications.sent_events == []


@pytest.mark.asyncio
async def test_unconfirmed_batches_wait_for_confirmation_in_sweep(session_factory) -> None:
    confirmed_user, pending_user = uuid4(), uuid4()
    await _seed(session_factory, confirmed_user, pending_user)
    later = dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=31)

    await run_points_expiry_sweep(session_factory=session_factory, reference_time=later)
    async with session_factory() as session:
        await BalanceLedger(session).confirm_pending_points(pending_user, 40)

    summary = await run_points_expiry_sweep(session_factory=session_factory, reference_time=later)
    assert summary == {"due": 1, "expired_entries": 1, "expired_points": 40, "failed": 0}
    async with session_factory() as session:
        balance = await BalanceLedger(session).get_balance(pending_user)
        assert (balance.available_points, balance.pending_points) == (0, 0)


@pytest.mark.asyncio
async def test_expiry_warnings_wait_for_a_deliverable_notifier(session_factory, notifications) -> None:
    await _seed(session_factory, uuid4(), uuid4())
    at = dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=28)

    held = await run_expiry_warnings(session_factory=session_factory, reference_time=at)
    assert held == {"warned": 0, "skipped": True}
    async with session_factory() as session:
        waiting = await ExpiryScheduler(session).due_for_warning(at)
        assert len(waiting) == 2
        assert all(record.warned_at is None for record in waiting)

    summary = await run_expiry_warnings(session_factory=session_factory, reference_time=at, notifications=notifications)
    assert summary == {"warned": 2, "skipped": False}
