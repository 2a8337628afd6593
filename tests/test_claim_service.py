import asyncio
from datetime import timedelta

import httpx
import pytest

from raffle_backend.app.core.errors_core import (
    ConflictError,
    LnurlError,
    NotFoundError,
    PaymentError,
    PaymentOutcomeUnknownError,
    ValidationError,
)
from raffle_backend.app.crud.raffles_crud import RafflesCRUD
from raffle_backend.app.crud.tickets_crud import TicketsCRUD
from raffle_backend.app.integrations.lnd_api import LndRestClient
from raffle_backend.app.models import Raffle
from raffle_backend.app.services import claim_service as claims
from raffle_backend.app.services.claim_service import ClaimService, issue
from raffle_backend.app.services.notification_service import NotificationService
from raffle_backend.app.services.payment_service import LndPaymentService

from .conftest import DAYTIME, add_tickets

INVOICE = "lnbc50u1ptestinvoice"
LATER = DAYTIME + timedelta(days=31)


async def _settled_raffle(session, *, prize: int = 5_000, lightning_address: bool = True) -> Raffle:
    tickets = await add_tickets(session, 4032, 1)
    if not lightning_address:
        tickets[0].lightning_address = None
    claim = issue(now=DAYTIME, ttl_days=30)
    raffle = Raffle(
        block_height=4032,
        block_hash="00" * 31 + "07",
        total_tickets=1,
        winning_index=0,
        winning_ticket_id=tickets[0].id,
        prize_amount_sats=prize,
        fund_balance_before=prize * 2,
        claim_token=claim.token,
        claim_expires_at=claim.expires_at,
        created_at=DAYTIME,
    )
    await RafflesCRUD(session).insert(raffle)
    await session.commit()
    return raffle


@pytest.fixture
def awake_settings(settings):
    return settings.model_copy(update={"QUIET_START_HOUR": 0, "QUIET_END_HOUR": 0})


@pytest.fixture
def service(session, payments, channel, awake_settings):
    notifications = NotificationService(session, channel, settings=awake_settings)
    return ClaimService(session, payments, notifications, settings=awake_settings)


async def _reload(session, raffle_id: int) -> Raffle:
    return await RafflesCRUD(session).get(raffle_id)


async def test_withdraw_request_describes_the_prize(session, service):
    raffle = await _settled_raffle(session)

    body = await service.withdraw_request(raffle.claim_token, now=DAYTIME)

    assert body["tag"] == "withdrawRequest"
    assert body["k1"] == raffle.claim_token
    assert body["minWithdrawable"] == body["maxWithdrawable"] == 5_000_000
    assert body["callback"] == f"https://raffle.test/lnurl/withdraw/{raffle.claim_token}/callback"
    assert "#4032" in body["defaultDescription"]


async def test_unknown_token_is_not_found(service):
    with pytest.raises(LnurlError) as err:
        await service.withdraw_request("nope", now=DAYTIME)
    assert err.value.reason == claims.REASON_NOT_FOUND


async def test_expired_claim_is_marked_on_access(session, service):
    raffle = await _settled_raffle(session)

    with pytest.raises(LnurlError) as err:
        await service.withdraw_request(raffle.claim_token, now=LATER)

    assert err.value.reason == claims.REASON_EXPIRED
    assert (await _reload(session, raffle.id)).claim_status == "expired"
    with pytest.raises(LnurlError):
        await service.withdraw_request(raffle.claim_token, now=DAYTIME)


@pytest.mark.parametrize(
    "k1, pr, amount, reason",
    [
        ("wrong", INVOICE, 5_000, claims.REASON_BAD_K1),
        (None, INVOICE, 5_000, claims.REASON_BAD_K1),
        ("<token>", "", 5_000, claims.REASON_NO_INVOICE),
        ("<token>", INVOICE, 0, claims.REASON_NO_AMOUNT),
        ("<token>", INVOICE, 5_001, claims.REASON_OVER_PRIZE),
    ],
)
async def test_callback_rejects_bad_requests_without_mutation(session, service, payments, k1, pr, amount, reason):
    raffle = await _settled_raffle(session)
    payments.invoice_amounts[INVOICE] = amount
    if k1 == "<token>":
        k1 = raffle.claim_token

    with pytest.raises(LnurlError) as err:
        await service.withdraw_callback(raffle.claim_token, k1=k1, pr=pr, now=DAYTIME)

    assert err.value.reason == reason
    assert payments.paid == []
    assert (await _reload(session, raffle.id)).claim_status == "pending"


async def test_callback_pays_and_records_the_hash(session, service, payments):
    raffle = await _settled_raffle(session)
    payments.invoice_amounts[INVOICE] = 4_000

    body = await service.withdraw_callback(raffle.claim_token, k1=raffle.claim_token, pr=INVOICE, now=DAYTIME)

    assert body == {"status": "OK"}
    assert payments.paid == [INVOICE]
    stored = await _reload(session, raffle.id)
    assert stored.claim_status == "claimed"
    assert stored.payment_status == "paid"
    assert stored.payment_hash == "cd" * 32
    assert stored.claimed_at is not None


async def test_second_redemption_is_refused(session, service, payments):
    raffle = await _settled_raffle(session)
    payments.invoice_amounts[INVOICE] = 5_000
    await service.withdraw_callback(raffle.claim_token, k1=raffle.claim_token, pr=INVOICE, now=DAYTIME)

    with pytest.raises(LnurlError) as err:
        await service.withdraw_callback(raffle.claim_token, k1=raffle.claim_token, pr=INVOICE, now=DAYTIME)

    assert err.value.reason == claims.REASON_CLAIMED
    assert payments.paid == [INVOICE]


async def test_failed_payment_releases_claim_for_retry(session, service, payments, channel):
    raffle = await _settled_raffle(session)
    payments.invoice_amounts[INVOICE] = 5_000
    payments.fail_with = "unable to find a path to destination"

    with pytest.raises(LnurlError) as err:
        await service.withdraw_callback(raffle.claim_token, k1=raffle.claim_token, pr=INVOICE, now=DAYTIME)

    assert err.value.reason == "unable to find a path to destination"
    stored = await _reload(session, raffle.id)
    assert stored.claim_status == "pending"
    assert stored.payment_status == "pending"
    assert stored.payment_error == "unable to find a path to destination"
    assert any("unable to find a path" in text for text in channel.texts_to("100"))

    payments.fail_with = None
    assert await service.withdraw_callback(
        raffle.claim_token, k1=raffle.claim_token, pr=INVOICE, now=DAYTIME
    ) == {"status": "OK"}
    stored = await _reload(session, raffle.id)
    assert stored.payment_status == "paid" and stored.payment_error is None


async def test_status_is_read_only(session, service):
    raffle = await _settled_raffle(session)

    fresh = await service.status(raffle.claim_token, now=DAYTIME)
    late = await service.status(raffle.claim_token, now=LATER)

    assert fresh["status"] == "pending"
    assert fresh["prizeSats"] == 5_000
    assert fresh["blockHeight"] == 4032
    assert fresh["lnurl"] == f"lnurlw://raffle.test/lnurl/withdraw/{raffle.claim_token}"
    assert late["status"] == "expired"
    assert (await _reload(session, raffle.id)).claim_status == "pending"
    assert await service.status("missing") is None


async def test_expire_stale_moves_overdue_claims_once(session, service):
    await _settled_raffle(session)

    assert await service.expire_stale(now=DAYTIME) == 0
    assert await service.expire_stale(now=LATER) == 1
    assert await service.expire_stale(now=LATER) == 0


async def test_mark_paid_blocks_the_lnurl_path(session, service):
    raffle = await _settled_raffle(session)

    paid = await service.mark_paid(raffle.id, payment_hash="aa" * 32, now=DAYTIME)

    assert paid.payment_status == "paid" and paid.payment_hash == "aa" * 32
    with pytest.raises(ConflictError):
        await service.mark_paid(raffle.id)
    with pytest.raises(LnurlError) as err:
        await service.withdraw_request(raffle.claim_token, now=DAYTIME)
    assert err.value.reason == claims.REASON_CLAIMED


async def test_mark_paid_unknown_raffle(service):
    with pytest.raises(NotFoundError):
        await service.mark_paid(999)


async def test_pay_to_lightning_address(session, service, payments):
    raffle = await _settled_raffle(session)

    paid = await service.pay_to_lightning_address(raffle.id)

    assert payments.address_payments == [("user0@wallet.test", 5_000)]
    assert paid.payment_status == "paid"
    assert paid.payment_hash == "12" * 32
    assert paid.claim_status == "claimed"


async def test_pay_to_lightning_address_failure_marks_raffle_failed(session, service, payments):
    raffle = await _settled_raffle(session)
    payments.fail_with = "no_route"

    with pytest.raises(PaymentError):
        await service.pay_to_lightning_address(raffle.id)

    stored = await _reload(session, raffle.id)
    assert stored.payment_status == "failed"
    assert stored.payment_error == "no_route"
    assert stored.claim_status == "pending"


async def test_pay_to_lightning_address_needs_an_address(session, service):
    raffle = await _settled_raffle(session, lightning_address=False)
    ticket = await TicketsCRUD(session).get(raffle.winning_ticket_id)
    assert ticket.lightning_address is None

    with pytest.raises(ValidationError):
        await service.pay_to_lightning_address(raffle.id)


async def test_concurrent_redemptions_pay_once(session_factory, payments, awake_settings):
    async with session_factory() as setup:
        raffle = await _settled_raffle(setup)
    token = raffle.claim_token
    payments.invoice_amounts[INVOICE] = 5_000

    async def redeem():
        async with session_factory() as own:
            service = ClaimService(own, payments, settings=awake_settings)
            return await service.withdraw_callback(token, k1=token, pr=INVOICE, now=DAYTIME)

    results = await asyncio.gather(*(redeem() for _ in range(5)), return_exceptions=True)

    assert [r for r in results if r == {"status": "OK"}] == [{"status": "OK"}]
    refused = [r for r in results if isinstance(r, LnurlError)]
    assert len(refused) == 4
    assert {r.reason for r in refused} == {claims.REASON_CLAIMED}
    assert len(payments.paid) == 1


def _timing_out_node(sends: list) -> LndPaymentService:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/v1/payreq/"):
            return httpx.Response(200, json={"num_satoshis": "5000", "payment_hash": "ab" * 32})
        sends.append(request)
        if len(sends) == 1:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200, json={"payment_error": "", "payment_hash": "cd" * 32})

    client = LndRestClient(
        base_url="https://node.test:8080",
        macaroon="0201036c6e64",
        timeout_seconds=1,
        transport=httpx.MockTransport(handler),
    )
    return LndPaymentService(client, fee_limit_sats=10)


async def test_send_without_answer_keeps_claim_locked(session, channel, awake_settings):
    raffle = await _settled_raffle(session)
    token = raffle.claim_token
    sends = []
    notifications = NotificationService(session, channel, settings=awake_settings)
    service = ClaimService(session, _timing_out_node(sends), notifications, settings=awake_settings)

    with pytest.raises(LnurlError) as err:
        await service.withdraw_callback(token, k1=token, pr=INVOICE, now=DAYTIME)

    assert err.value.reason == claims.REASON_UNRESOLVED
    stored = await _reload(session, raffle.id)
    assert stored.claim_status == "claimed"
    assert stored.payment_status == "pending"
    assert "ReadTimeout" in stored.payment_error
    urgent = [t for t in channel.texts_to("100") if "outcome unknown" in t]
    assert len(urgent) == 1 and f"/api/admin/raffle/{raffle.id}/reopen" in urgent[0]

    with pytest.raises(LnurlError) as again:
        await service.withdraw_callback(token, k1=token, pr="lnbc50u1secondinvoice", now=DAYTIME)
    assert again.value.reason == claims.REASON_CLAIMED
    assert len(sends) == 1

    reopened = await service.reopen_claim(raffle.id)
    assert reopened.claim_status == "pending"
    assert await service.withdraw_callback(
        token, k1=token, pr="lnbc50u1secondinvoice", now=DAYTIME
    ) == {"status": "OK"}
    assert len(sends) == 2
    assert (await _reload(session, raffle.id)).payment_status == "paid"


async def test_reopen_refuses_claims_that_are_not_held(session, service, payments):
    raffle = await _settled_raffle(session)

    with pytest.raises(ConflictError):
        await service.reopen_claim(raffle.id)

    payments.invoice_amounts[INVOICE] = 5_000
    await service.withdraw_callback(raffle.claim_token, k1=raffle.claim_token, pr=INVOICE, now=DAYTIME)
    with pytest.raises(ConflictError):
        await service.reopen_claim(raffle.id)
    with pytest.raises(NotFoundError):
        await service.reopen_claim(999)


async def test_lightning_address_without_answer_keeps_claim_locked(session, service, payments, channel):
    raffle = await _settled_raffle(session)
    payments.no_answer = True

    with pytest.raises(PaymentOutcomeUnknownError):
        await service.pay_to_lightning_address(raffle.id)

    stored = await _reload(session, raffle.id)
    assert stored.claim_status == "claimed"
    assert stored.payment_status == "pending"
    assert "ReadTimeout" in stored.payment_error
    assert any("outcome unknown" in t for t in channel.texts_to("100"))

    with pytest.raises(ConflictError):
        await service.pay_to_lightning_address(raffle.id)
    with pytest.raises(LnurlError) as err:
        await service.withdraw_request(raffle.claim_token, now=DAYTIME)
    assert err.value.reason == claims.REASON_CLAIMED
