import pytest

from raffle_backend.app.core.errors_core import ValidationError
from raffle_backend.app.core.system_locks import InvariantViolation
from raffle_backend.app.services.fund_service import FundLedger, split_prize


@pytest.mark.parametrize(
    "balance, prize, remainder",
    [(10_000, 5_000, 5_000), (1_000, 500, 500), (1, 0, 1), (0, 0, 0), (7, 3, 4)],
)
def test_split_prize(balance, prize, remainder):
    assert split_prize(balance) == (prize, remainder)


def test_split_prize_rejects_negative_balance():
    with pytest.raises(InvariantViolation):
        split_prize(-1)


async def test_credit_then_debit_half(session):
    fund = FundLedger(session)
    assert await fund.balance() == 0

    assert await fund.credit(10_000) == 10_000
    assert await fund.next_prize() == 5_000

    debit = await fund.debit_half(2016)
    await session.commit()

    assert (debit.prize, debit.balance_before, debit.balance_after) == (5_000, 10_000, 5_000)
    assert await fund.balance() == 5_000
    assert await fund.last_debited_cycle() == 2016


async def test_balance_of_one_pays_nothing(session):
    fund = FundLedger(session)
    await fund.credit(1)

    debit = await fund.debit_half(4032)
    await session.commit()

    assert debit.prize == 0
    assert await fund.balance() == 1


async def test_debit_for_same_cycle_is_refused(session):
    fund = FundLedger(session)
    await fund.credit(1_000)
    await fund.debit_half(4032)
    await session.commit()

    with pytest.raises(InvariantViolation):
        await fund.debit_half(4032)
    with pytest.raises(InvariantViolation):
        await fund.debit_half(2016)
    await session.rollback()
    assert await fund.balance() == 500


async def test_rolled_back_debit_leaves_fund_untouched(session):
    fund = FundLedger(session)
    await fund.credit(800)
    await fund.debit_half(2016)
    await session.rollback()

    assert await fund.balance() == 800
    assert await fund.last_debited_cycle() is None


@pytest.mark.parametrize("amount", [0, -5])
async def test_credit_must_be_positive(session, amount):
    with pytest.raises(ValidationError):
        await FundLedger(session).credit(amount)
