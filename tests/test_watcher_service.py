import pytest
from sqlalchemy import func, select

from raffle_backend.app.core.errors_core import ConflictError, ValidationError
from raffle_backend.app.crud.raffles_crud import RafflesCRUD
from raffle_backend.app.crud.settings_crud import SettingsCRUD
from raffle_backend.app.models import Raffle
from raffle_backend.app.services.fund_service import FundLedger
from raffle_backend.app.services.state_service import (
    KEY_COMMIT_WATERMARK,
    KEY_FUND_LAST_DEBIT,
    KEY_PENDING_MESSAGE,
    SkipMarkers,
    WatermarkStore,
)
from raffle_backend.app.services.watcher_service import WatcherService

from .conftest import DAYTIME, EVENING, NEXT_MORNING, add_tickets

CYCLE = 4032
HASH_07 = "0x" + "0" * 62 + "07"


@pytest.fixture
def watcher(session, oracle, notifications, settings):
    oracle.height = CYCLE + 5
    oracle.hashes[CYCLE] = HASH_07
    return WatcherService(session, oracle, notifications, settings=settings)


async def _raffle_count(session) -> int:
    return await session.scalar(select(func.count()).select_from(Raffle))


async def test_boundary_with_seven_tickets_commits_index_zero(session, watcher, channel):
    tickets = await add_tickets(session, CYCLE, 7, chat_ids=True, invalid=2)
    await FundLedger(session).credit(10_000)

    result = await watcher.tick(now=DAYTIME)

    assert result.commit.status == "committed"
    assert result.commit.winning_index == 0
    assert result.commit.prize_sats == 5_000
    raffle = await RafflesCRUD(session).get_by_block(CYCLE)
    assert raffle.total_tickets == 7
    assert raffle.winning_ticket_id == tickets[0].id
    assert raffle.fund_balance_before == 10_000
    assert raffle.claim_status == "pending" and raffle.payment_status == "pending"
    assert raffle.block_hash == "0" * 62 + "07"
    assert await FundLedger(session).balance() == 5_000

    assert any("Raffle Complete" in t for t in channel.texts_to("100"))
    assert any("Raffle Complete" in t for t in channel.texts_to("200"))
    winner_texts = channel.texts_to("9000")
    assert len(winner_texts) == 1 and raffle.claim_token in winner_texts[0]


async def test_repeated_ticks_settle_the_cycle_once(session, watcher, oracle):
    await add_tickets(session, CYCLE, 3)
    await FundLedger(session).credit(1_000)

    for _ in range(4):
        await watcher.tick(now=DAYTIME)

    assert await _raffle_count(session) == 1
    assert await FundLedger(session).balance() == 500
    assert oracle.hash_calls == [CYCLE]


async def test_second_worker_sees_cycle_settled(session_factory, oracle, channel, settings):
    from raffle_backend.app.services.notification_service import NotificationService

    oracle.height = CYCLE + 1
    oracle.hashes[CYCLE] = HASH_07
    async with session_factory() as s1, session_factory() as s2:
        await add_tickets(s1, CYCLE, 2)
        first = WatcherService(s1, oracle, NotificationService(s1, channel, settings=settings), settings=settings)
        second = WatcherService(s2, oracle, NotificationService(s2, channel, settings=settings), settings=settings)

        assert (await first.tick(now=DAYTIME)).commit.status == "committed"
        assert (await second.tick(now=DAYTIME)).commit.status == "up_to_date"
        assert await _raffle_count(s2) == 1


async def test_commit_cycle_is_idempotent(session, watcher):
    await add_tickets(session, CYCLE, 2)
    first = await watcher.commit_cycle(CYCLE, HASH_07, now=DAYTIME)
    second = await watcher.commit_cycle(CYCLE, HASH_07, now=DAYTIME)

    assert first.status == "committed"
    assert second.status == "already_settled"
    assert await _raffle_count(session) == 1


async def test_zero_tickets_skips_with_exactly_one_alert(session, watcher, channel):
    await WatermarkStore(session).advance(KEY_COMMIT_WATERMARK, CYCLE - 2016)
    await FundLedger(session).credit(4_000)

    first = await watcher.tick(now=DAYTIME)
    await watcher.tick(now=DAYTIME)
    await watcher.commit_cycle(CYCLE, HASH_07, now=DAYTIME)

    assert first.commit.status == "skipped"
    assert await _raffle_count(session) == 0
    assert await SkipMarkers(session).is_skipped(CYCLE)
    assert len([t for t in channel.texts_to("100") if "Raffle skipped" in t]) == 1
    assert await FundLedger(session).balance() == 4_000


async def test_fresh_deployment_without_tickets_only_seeds_the_watermark(session, watcher, channel):
    result = await watcher.tick(now=DAYTIME)

    assert result.commit.status == "initialised"
    assert await WatermarkStore(session).get(KEY_COMMIT_WATERMARK) == CYCLE
    assert not await SkipMarkers(session).is_skipped(CYCLE)
    assert channel.sent == []
    assert (await watcher.tick(now=DAYTIME)).commit.status == "up_to_date"


async def test_oracle_outage_changes_nothing(session, watcher, oracle, channel):
    await add_tickets(session, CYCLE, 2)
    oracle.fail = True

    result = await watcher.tick(now=DAYTIME)

    assert result.status == "oracle_unavailable"
    assert await WatermarkStore(session).get(KEY_COMMIT_WATERMARK) is None
    assert await _raffle_count(session) == 0
    assert channel.sent == []

    oracle.fail = False
    assert (await watcher.tick(now=DAYTIME)).commit.status == "committed"


async def test_commit_failure_sends_urgent_alert_and_is_not_retried(session, watcher, channel):
    await add_tickets(session, CYCLE, 2)
    await FundLedger(session).credit(1_000)
    await SettingsCRUD(session).set(KEY_FUND_LAST_DEBIT, str(CYCLE + 2016))
    await session.commit()

    result = await watcher.tick(now=EVENING)
    again = await watcher.tick(now=EVENING)

    assert result.commit.status == "failed"
    assert again.commit.status == "up_to_date"
    assert await _raffle_count(session) == 0
    assert await FundLedger(session).balance() == 1_000
    assert await WatermarkStore(session).get(KEY_COMMIT_WATERMARK) == CYCLE
    urgent = [t for t in channel.texts_to("100") if "URGENT" in t]
    assert len(urgent) == 1 and "Replayed fund debit" in urgent[0]


async def test_warning_sent_once_inside_window(session, watcher, oracle, channel):
    next_block = CYCLE + 2016
    oracle.height = next_block - 100
    await WatermarkStore(session).advance(KEY_COMMIT_WATERMARK, CYCLE)
    await add_tickets(session, next_block, 4)

    first = await watcher.tick(now=DAYTIME)
    second = await watcher.tick(now=DAYTIME)

    assert first.warning_sent is True
    assert second.warning_sent is False
    warnings = [t for t in channel.texts_to("100") if "Raffle block approaching" in t]
    assert len(warnings) == 1
    assert f"#{next_block:,}" in warnings[0] and "Tickets so far: 4" in warnings[0]


async def test_no_warning_outside_window(session, watcher, oracle, channel):
    oracle.height = CYCLE + 2016 - 145
    await WatermarkStore(session).advance(KEY_COMMIT_WATERMARK, CYCLE)

    assert (await watcher.tick(now=DAYTIME)).warning_sent is False
    assert channel.sent == []


async def test_result_during_quiet_hours_is_queued_then_flushed(session, watcher, notifications, channel):
    await add_tickets(session, CYCLE, 1)

    result = await watcher.tick(now=EVENING)

    assert result.commit.status == "committed"
    assert channel.texts_to("100") == []
    assert await SettingsCRUD(session).get(KEY_PENDING_MESSAGE) is not None

    flushed = await notifications.flush(now=NEXT_MORNING)
    assert flushed.pending_kind == "result"
    assert len(channel.texts_to("100")) == 1


async def test_manual_run_rejects_unmined_block(watcher):
    with pytest.raises(ValidationError):
        await watcher.run_manual(CYCLE + 2016)


async def test_manual_run_rejects_settled_cycle(session, watcher):
    await add_tickets(session, CYCLE, 1)
    await watcher.tick(now=DAYTIME)

    with pytest.raises(ConflictError):
        await watcher.run_manual(CYCLE)


async def test_manual_run_on_skipped_cycle_needs_force(session, watcher):
    await WatermarkStore(session).advance(KEY_COMMIT_WATERMARK, CYCLE - 2016)
    await watcher.tick(now=DAYTIME)
    await add_tickets(session, CYCLE, 2)

    with pytest.raises(ConflictError):
        await watcher.run_manual(CYCLE)

    outcome = await watcher.run_manual(CYCLE, force=True)
    assert outcome.status == "committed"
    assert outcome.total_tickets == 2
    assert not await SkipMarkers(session).is_skipped(CYCLE)


async def test_manual_run_rejects_non_boundary_block(watcher):
    with pytest.raises(ValidationError):
        await watcher.run_manual(CYCLE + 1)
