import base64
import json

import httpx
import pytest

from raffle_backend.app.core.errors_core import (
    LightningUnavailableError,
    OracleUnavailableError,
    PaymentError,
    PaymentOutcomeUnknownError,
)
from raffle_backend.app.integrations.lnd_api import LndRestClient
from raffle_backend.app.integrations.lnurl_pay_api import LnurlPayClient, LnurlPayError, lightning_address_url
from raffle_backend.app.integrations.mempool_api import MempoolAPIClient
from raffle_backend.app.integrations.telegram_api import TelegramChannel
from raffle_backend.app.services.payment_service import LndPaymentService

BLOCK_HASH = "00000000000000000002a7c4c1e48d76c5a37902165a270156b7a8d72728a054"


# -----------------------------------------------------------------------------
# Chain oracle
# -----------------------------------------------------------------------------
def _oracle(handler) -> MempoolAPIClient:
    return MempoolAPIClient(
        base_urls=["https://primary.test/api", "https://backup.test/api"],
        timeout_seconds=1,
        transport=httpx.MockTransport(handler),
    )


async def test_oracle_falls_back_to_next_endpoint():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        if request.url.host == "primary.test":
            return httpx.Response(503, text="busy")
        if request.url.path.endswith("/blocks/tip/height"):
            return httpx.Response(200, text="840123\n")
        return httpx.Response(200, text=BLOCK_HASH.upper())

    oracle = _oracle(handler)

    assert await oracle.get_height() == 840_123
    assert await oracle.get_hash_at(840_000) == BLOCK_HASH
    assert seen == ["primary.test", "backup.test", "primary.test", "backup.test"]


async def test_oracle_unavailable_when_all_endpoints_fail():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(OracleUnavailableError) as err:
        await _oracle(handler).get_height()
    assert len(err.value.details["errors"]) == 2


@pytest.mark.parametrize("body", ["not-a-number", "-5"])
async def test_oracle_rejects_malformed_height(body):
    oracle = _oracle(lambda request: httpx.Response(200, text=body))
    with pytest.raises(OracleUnavailableError):
        await oracle.get_height()


async def test_oracle_rejects_malformed_hash():
    oracle = _oracle(lambda request: httpx.Response(200, text="deadbeef"))
    with pytest.raises(OracleUnavailableError):
        await oracle.get_hash_at(1)


# -----------------------------------------------------------------------------
# LND payments
# -----------------------------------------------------------------------------
def _payments(handler, *, lnurl_handler=None) -> LndPaymentService:
    client = LndRestClient(
        base_url="https://node.test:8080",
        macaroon="0201036c6e64",
        timeout_seconds=1,
        transport=httpx.MockTransport(handler),
    )
    lnurl = LnurlPayClient(timeout_seconds=1, transport=httpx.MockTransport(lnurl_handler or handler))
    return LndPaymentService(client, lnurl_client=lnurl, fee_limit_sats=10)


async def test_pay_sends_fixed_fee_limit_and_returns_hex_hash():
    payment_hash = bytes(range(32))
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={"payment_error": "", "payment_hash": base64.b64encode(payment_hash).decode()},
        )

    result = await _payments(handler).pay("lnbc1invoice")

    assert result.payment_hash == payment_hash.hex()
    body = json.loads(requests[0].content)
    assert body == {"payment_request": "lnbc1invoice", "fee_limit": {"fixed": "10"}}
    assert requests[0].headers["Grpc-Metadata-macaroon"] == "0201036c6e64"
    assert len(requests) == 1


async def test_payment_error_is_passed_through_verbatim():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"payment_error": "insufficient_balance"})

    with pytest.raises(PaymentError) as err:
        await _payments(handler).pay("lnbc1invoice")
    assert err.value.message == "insufficient_balance"


async def test_http_error_keeps_node_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text='{"message":"invoice expired"}')

    with pytest.raises(PaymentError) as err:
        await _payments(handler).pay("lnbc1invoice")
    assert err.value.message == 'LND API error (500): {"message":"invoice expired"}'


async def test_send_without_answer_is_outcome_unknown():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(PaymentOutcomeUnknownError) as err:
        await _payments(handler).pay("lnbc1invoice")
    assert err.value.code == "payment_outcome_unknown"
    assert "ReadTimeout" in err.value.message


async def test_unreachable_node_is_a_definite_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PaymentError) as err:
        await _payments(handler).pay("lnbc1invoice")
    assert not isinstance(err.value, PaymentOutcomeUnknownError)
    assert err.value.message.startswith("LND unreachable")


async def test_decode_reads_amount_and_hash():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/payreq/lnbc1invoice"
        return httpx.Response(200, json={"num_satoshis": "2500", "payment_hash": "ab" * 32, "description": "x"})

    decoded = await _payments(handler).decode("lnbc1invoice")
    assert decoded.amount_sats == 2_500
    assert decoded.payment_hash == "ab" * 32


async def test_unconfigured_node_is_unavailable():
    service = LndPaymentService(LndRestClient(base_url="", macaroon=""), fee_limit_sats=10)

    with pytest.raises(LightningUnavailableError):
        await service.pay("lnbc1invoice")
    assert (await service.node_status())["configured"] is False


async def test_pay_lightning_address_resolves_and_pays():
    def lnurl_handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/.well-known/lnurlp/alice":
            return httpx.Response(
                200,
                json={
                    "tag": "payRequest",
                    "callback": "https://wallet.test/cb/alice",
                    "minSendable": 1000,
                    "maxSendable": 100_000_000,
                    "metadata": "[]",
                },
            )
        assert request.url.params["amount"] == "5000000"
        return httpx.Response(200, json={"pr": "lnbc50u1alice"})

    def node_handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/v1/payreq/"):
            return httpx.Response(200, json={"num_satoshis": "5000", "payment_hash": "ab" * 32})
        return httpx.Response(200, json={"payment_error": "", "payment_hash": "cd" * 32})

    result = await _payments(node_handler, lnurl_handler=lnurl_handler).pay_lightning_address(
        "Alice@Wallet.test", 5_000, "prize"
    )
    assert result.payment_hash == "cd" * 32


async def test_pay_lightning_address_refuses_wrong_invoice_amount():
    def lnurl_handler(request: httpx.Request) -> httpx.Response:
        if "lnurlp" in request.url.path:
            return httpx.Response(
                200,
                json={"tag": "payRequest", "callback": "https://wallet.test/cb", "minSendable": 1000, "maxSendable": 10**9},
            )
        return httpx.Response(200, json={"pr": "lnbc1other"})

    def node_handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/v1/payreq/"):
            return httpx.Response(200, json={"num_satoshis": "1", "payment_hash": "ab" * 32})
        raise AssertionError("must not pay")

    with pytest.raises(PaymentError):
        await _payments(node_handler, lnurl_handler=lnurl_handler).pay_lightning_address("bob@wallet.test", 5_000)


# -----------------------------------------------------------------------------
# LNURL-pay and Telegram
# -----------------------------------------------------------------------------
def test_lightning_address_url():
    assert lightning_address_url("Bob@Example.COM") == "https://example.com/.well-known/lnurlp/bob"
    with pytest.raises(LnurlPayError):
        lightning_address_url("not-an-address")


async def test_lnurl_error_status_is_an_error():
    client = LnurlPayClient(
        timeout_seconds=1,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "ERROR", "reason": "nope"})),
    )
    with pytest.raises(LnurlPayError, match="nope"):
        await client.resolve("bob@wallet.test")


async def test_telegram_without_token_reports_false():
    channel = TelegramChannel(token="")
    assert channel.enabled is False
    assert await channel.send_message("100", "hello") is False
