from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from raffle_backend.app.services.notification_service import (
    KIND_RESULT,
    KIND_WARNING,
    NotificationService,
    is_quiet_hours,
)
from raffle_backend.app.services.state_service import Counter, PendingSlot

from .conftest import DAYTIME, EVENING, NEXT_MORNING, FakeChannel

UTC = ZoneInfo("UTC")


@pytest.mark.parametrize(
    "hour, quiet",
    [(8, True), (9, False), (12, False), (17, False), (18, True), (23, True), (0, True)],
)
def test_quiet_window_wraps_midnight(hour, quiet):
    now = datetime(2024, 5, 1, hour, 30, tzinfo=timezone.utc)
    assert is_quiet_hours(now, zone=UTC, start_hour=18, end_hour=9) is quiet


def test_quiet_hours_use_the_configured_zone():
    # 17:30 UTC is 19:30 in Europe/Berlin (CEST)
    now = datetime(2024, 7, 1, 17, 30, tzinfo=timezone.utc)
    assert is_quiet_hours(now, zone=ZoneInfo("UTC"), start_hour=18, end_hour=9) is False
    assert is_quiet_hours(now, zone=ZoneInfo("Europe/Berlin"), start_hour=18, end_hour=9) is True


def test_equal_bounds_disable_quiet_hours():
    assert is_quiet_hours(EVENING, zone=UTC, start_hour=9, end_hour=9) is False


async def test_entry_at_20_counts_without_sending(session, notifications, channel):
    outcome = await notifications.notify_new_entry("new entry", now=EVENING)

    assert outcome == "counted"
    assert channel.sent == []
    assert await Counter(session).get() == 1


async def test_flush_at_0905_sends_one_summary_and_resets(session, notifications, channel):
    await notifications.notify_new_entry("a", now=EVENING)
    await notifications.notify_new_entry("b", now=EVENING)

    result = await notifications.flush(now=NEXT_MORNING)

    assert result.entries_summarized == 2
    assert channel.texts_to("100") == ["📝 <b>2 new raffle entries</b> arrived during quiet hours."]
    assert await Counter(session).get() == 0

    again = await notifications.flush(now=NEXT_MORNING)
    assert again.entries_summarized == 0
    assert len(channel.texts_to("100")) == 1


async def test_flush_during_quiet_hours_is_noop(session, notifications, channel):
    await notifications.notify_new_entry("a", now=EVENING)
    result = await notifications.flush(now=EVENING)

    assert result.quiet is True
    assert channel.sent == []
    assert await Counter(session).get() == 1


async def test_daytime_entry_is_sent_right_away(notifications, channel):
    assert await notifications.notify_new_entry("entry!", now=DAYTIME) == "sent"
    assert channel.sent == [("100", "entry!"), ("200", "entry!")]


async def test_gated_message_first_writer_wins(session, notifications, channel):
    assert await notifications.deliver(KIND_RESULT, "result", now=EVENING) == "queued"
    assert await notifications.deliver(KIND_WARNING, "warning", now=EVENING) == "dropped"
    assert channel.sent == []
    assert (await PendingSlot(session).peek()).text == "result"

    result = await notifications.flush(now=NEXT_MORNING)
    assert result.pending_kind == KIND_RESULT
    assert result.pending_delivered == 2
    assert [text for _, text in channel.sent] == ["result", "result"]
    assert await PendingSlot(session).peek() is None


async def test_urgent_alert_ignores_quiet_hours(notifications, channel):
    assert await notifications.alert_urgent("boom") == 2
    assert channel.sent == [("100", "boom"), ("200", "boom")]


async def test_unknown_kind_is_rejected(notifications):
    with pytest.raises(ValueError):
        await notifications.deliver("gossip", "x", now=DAYTIME)


async def test_stored_admin_chats_extend_configured_ones(session, channel, settings):
    service = NotificationService(session, channel, settings=settings)
    assert await service.add_admin_chat("300") == ["300"]
    assert await service.add_admin_chat("100") == ["300", "100"]
    assert await service.admin_recipients() == ["100", "200", "300"]

    assert await service.remove_admin_chat("300") == ["100"]
    assert await service.admin_recipients() == ["100", "200"]


async def test_failed_delivery_is_counted_not_raised(session, settings):
    service = NotificationService(session, FakeChannel(ok=False), settings=settings)
    assert await service.alert_urgent("boom") == 0
