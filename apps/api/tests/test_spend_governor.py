import pytest

from config import settings
from models.quota_window import SpendWindow
from services.errors import EmergencyStop, GlobalSpendCeilingExceeded, SpendCeilingExceeded
from services.quota_windows import consume, ensure_window_row, read_window
from services.spend_governor import (
    GLOBAL_SCOPE,
    authorize_spend,
    check_spend_alerts,
    get_spend_status,
    record_actual_spend,
    user_scope,
)
from services.tiers import WindowCeilings


USER_ID = "spend-user"
T0 = 1_773_144_000.0  # 2026-03-10 12:00 UTC


@pytest.mark.asyncio
async def test_spend_is_tracked_per_user_and_globally(db):
    result = await authorize_spend(USER_ID, "thumbnail_analysis", "free", db, now=T0)
    assert result.allowed is True
    assert result.tracked is True
    assert result.estimated_cost == pytest.approx(0.001)

    user = await read_window(db, SpendWindow, {"scope": user_scope(USER_ID)}, now=T0)
    shared = await read_window(db, SpendWindow, {"scope": GLOBAL_SCOPE}, now=T0)
    assert user.hourly == user.daily == user.monthly == 1000
    assert shared.daily == 1000

    status = await get_spend_status(USER_ID, "free", db, now=T0)
    assert status["hourly"] == pytest.approx(0.001)
    assert status["limits"] == {"hourly": 0.1, "daily": 0.5, "monthly": 5.0}


@pytest.mark.asyncio
async def test_hourly_ceiling_rejects_without_counting(db):
    for _ in range(6):
        await authorize_spend(USER_ID, "full_image_analysis", "free", db, now=T0)

    with pytest.raises(SpendCeilingExceeded) as exc_info:
        await authorize_spend(USER_ID, "full_image_analysis", "free", db, now=T0 + 60)

    error = exc_info.value
    assert error.status_code == 429
    assert error.detail["code"] == "hourly_limit_exceeded"
    assert error.headers["Retry-After"] == "3540"

    user = await read_window(db, SpendWindow, {"scope": user_scope(USER_ID)}, now=T0 + 60)
    shared = await read_window(db, SpendWindow, {"scope": GLOBAL_SCOPE}, now=T0 + 60)
    assert user.hourly == 90_000
    assert shared.hourly == 90_000

    # Cheaper work still fits under the ceiling.
    assert (await authorize_spend(USER_ID, "thumbnail_analysis", "free", db, now=T0 + 60)).allowed


@pytest.mark.asyncio
async def test_unknown_tier_is_treated_as_free(db):
    for _ in range(6):
        await authorize_spend(USER_ID, "full_image_analysis", "platinum", db, now=T0)
    with pytest.raises(SpendCeilingExceeded):
        await authorize_spend(USER_ID, "full_image_analysis", "platinum", db, now=T0)


@pytest.mark.asyncio
async def test_global_ceiling_applies_across_users(db, monkeypatch):
    monkeypatch.setattr(settings, "GLOBAL_SPEND_LIMITS", {"hourly": 0.02, "daily": 100.0, "emergency": 500.0})

    await authorize_spend("first-user", "full_image_analysis", "founders", db, now=T0)
    with pytest.raises(GlobalSpendCeilingExceeded) as exc_info:
        await authorize_spend("second-user", "full_image_analysis", "founders", db, now=T0)

    assert exc_info.value.status_code == 503
    assert exc_info.value.detail["code"] == "global_capacity_exceeded"
    second = await read_window(db, SpendWindow, {"scope": user_scope("second-user")}, now=T0)
    assert second.hourly == 0


@pytest.mark.asyncio
async def test_emergency_stop_is_distinct_from_window_breaches(db, monkeypatch, caplog):
    monkeypatch.setattr(settings, "GLOBAL_SPEND_LIMITS", {"hourly": 100.0, "daily": 100.0, "emergency": 0.02})

    await authorize_spend(USER_ID, "full_image_analysis", "founders", db, now=T0)
    with pytest.raises(EmergencyStop) as exc_info:
        await authorize_spend(USER_ID, "full_image_analysis", "founders", db, now=T0)

    assert exc_info.value.status_code == 503
    assert exc_info.value.detail["code"] == "service_unavailable"
    assert any(record.levelname == "CRITICAL" for record in caplog.records)

    user = await read_window(db, SpendWindow, {"scope": user_scope(USER_ID)}, now=T0)
    assert user.hourly == 15_000


@pytest.mark.asyncio
async def test_tracking_failures_fail_open(broken_session):
    result = await authorize_spend(USER_ID, "full_image_analysis", "free", broken_session, now=T0)
    assert result.allowed is True
    assert result.tracked is False

    assert await check_spend_alerts(USER_ID, "free", broken_session, now=T0) == []
    assert await record_actual_spend(USER_ID, "full_image_analysis", broken_session, actual_cost=0.01) is False


async def _bump_user_spend(db, micros, now):
    keys = {"scope": user_scope(USER_ID)}
    await ensure_window_row(db, SpendWindow, keys)
    await consume(db, SpendWindow, keys, micros, WindowCeilings(), now=now)
    await db.commit()


@pytest.mark.asyncio
async def test_alerts_fire_once_per_window(db):
    await _bump_user_spend(db, 400_000, T0)

    assert await check_spend_alerts(USER_ID, "free", db, now=T0) == ["daily_spend"]
    assert await check_spend_alerts(USER_ID, "free", db, now=T0 + 60) == []

    next_day = T0 + 86_401
    await _bump_user_spend(db, 450_000, next_day)
    assert await check_spend_alerts(USER_ID, "free", db, now=next_day) == ["daily_spend"]


@pytest.mark.asyncio
async def test_actual_spend_is_recorded(db):
    assert await record_actual_spend(USER_ID, "thumbnail_analysis", db, actual_cost=0.0007, latency_ms=420)
