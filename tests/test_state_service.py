import pytest

from raffle_backend.app.core.system_locks import (
    InvariantViolation,
    assert_row_present,
    assert_watermark_advance,
    assert_winner_in_range,
)
from raffle_backend.app.crud.settings_crud import SettingsCRUD
from raffle_backend.app.services.state_service import (
    KEY_COMMIT_WATERMARK,
    Counter,
    PendingMessage,
    PendingSlot,
    SkipMarkers,
    WatermarkStore,
)


async def test_compare_and_set_branches_on_current_value(session):
    crud = SettingsCRUD(session)
    assert await crud.compare_and_set("k", None, "1") is True
    assert await crud.compare_and_set("k", None, "2") is False
    assert await crud.compare_and_set("k", "0", "2") is False
    assert await crud.compare_and_set("k", "1", "2") is True
    await session.commit()
    assert await crud.get("k") == "2"


async def test_insert_if_absent_without_on_conflict_dialect(session, monkeypatch):
    crud = SettingsCRUD(session)
    await crud.set("other", "x")
    monkeypatch.setattr(crud, "_dialect_name", lambda: "mssql")

    assert await crud.insert_if_absent("k", "1") is True
    assert await crud.insert_if_absent("k", "2") is False
    assert await crud.compare_and_set("k", None, "3") is False
    assert await crud.compare_and_set("k", "1", "3") is True
    await session.commit()
    assert await crud.get("k") == "3"
    assert await crud.get("other") == "x"


async def test_watermark_only_moves_forward(session):
    marks = WatermarkStore(session)
    assert await marks.get(KEY_COMMIT_WATERMARK) is None

    assert await marks.advance(KEY_COMMIT_WATERMARK, 2016) is True
    assert await marks.advance(KEY_COMMIT_WATERMARK, 2016) is False
    assert await marks.advance(KEY_COMMIT_WATERMARK, 1008) is False
    assert await marks.advance(KEY_COMMIT_WATERMARK, 4032) is True
    assert await marks.get(KEY_COMMIT_WATERMARK) == 4032


async def test_concurrent_watermark_writers_one_wins(session_factory):
    async with session_factory() as first, session_factory() as second:
        a, b = WatermarkStore(first), WatermarkStore(second)
        assert await a.advance("wm", 2016) is True
        assert await b.advance("wm", 2016) is False


async def test_pending_slot_first_writer_wins(session):
    slot = PendingSlot(session)
    first = PendingMessage(recipients=["100"], text="first", kind="result")
    second = PendingMessage(recipients=["100"], text="second", kind="warning")

    assert await slot.put_if_empty(first) is True
    assert await slot.put_if_empty(second) is False
    assert (await slot.peek()).text == "first"

    taken = await slot.take()
    assert taken is not None and taken.text == "first" and taken.kind == "result"
    assert await slot.take() is None
    assert await slot.put_if_empty(second) is True


async def test_counter_increment_and_swap(session):
    counter = Counter(session)
    assert await counter.swap_to_zero() == 0
    assert await counter.increment() == 1
    assert await counter.increment(2) == 3
    assert await counter.swap_to_zero() == 3
    assert await counter.get() == 0


async def test_skip_markers(session):
    skips = SkipMarkers(session)
    assert await skips.is_skipped(2016) is False
    assert await skips.mark(2016) is True
    assert await skips.mark(2016) is False
    assert await skips.is_skipped(2016) is True
    assert await skips.clear(2016) is True
    assert await skips.is_skipped(2016) is False


def test_pending_message_json_keeps_fields():
    message = PendingMessage(recipients=["1", "2"], text="<b>hi</b>", kind="skipped", queued_at="t")
    assert PendingMessage.from_json(message.to_json()) == message


def test_watermark_regression_guard():
    with pytest.raises(InvariantViolation):
        assert_watermark_advance("wm", 4032, 2016)


def test_winner_and_row_guards():
    assert assert_winner_in_range(2, 3) == 2
    with pytest.raises(InvariantViolation):
        assert_winner_in_range(None, 0)
    with pytest.raises(InvariantViolation):
        assert_winner_in_range(3, 3)

    assert assert_row_present("row", what="Raffle 1") == "row"
    with pytest.raises(InvariantViolation, match="Raffle 1 vanished"):
        assert_row_present(None, what="Raffle 1")
