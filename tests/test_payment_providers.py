"""Tests for the payment gateway adapters against an in-process fake gateway."""

import asyncio
import time
from decimal import Decimal

import pytest
from aiohttp import web

from agrimarket.errors import ProviderError, ProviderTimeoutError
from agrimarket.models.order import PaymentMethod
from agrimarket.models.payment import (
    AuthorizationMode,
    CardInput,
    Customer,
    PaymentRequest,
    PaymentResultStatus,
)
from agrimarket.services.payment_providers import (
    FlutterwaveProvider,
    PaypackProvider,
    normalize_status,
    parse_expiration,
)


def payment_request(method=PaymentMethod.MOBILE_MONEY, **overrides):
    data = {
        "amount": Decimal("2500"),
        "reference": "ORD2405010001-1714557600000",
        "method": method,
        "phone_number": "0788123456",
        "customer": Customer(name="Kigali Bistro", email="orders@bistro.rw", phone="0788123456"),
    }
    data.update(overrides)
    return PaymentRequest(**data)


@pytest.fixture
async def gateway(aiohttp_server):
    """Fake gateway; ``state["replies"]`` maps a route key to ``(status, body)``."""
    state = {"replies": {}, "seen": [], "authorizations": 0, "delay": 0}

    async def reply(key, request):
        if state["delay"]:
            await asyncio.sleep(state["delay"])
        body = await request.json() if request.can_read_body else None
        state["seen"].append((key, dict(request.query), body, request.headers.get("Authorization")))
        status, payload = state["replies"][key]
        return web.json_response(payload, status=status)

    async def charges(request):
        return await reply(f"charge:{request.query['type']}", request)

    async def verify(request):
        return await reply(f"verify:{request.match_info['tx_id']}", request)

    async def verify_by_reference(request):
        return await reply("verify_by_reference", request)

    async def authorize(request):
        state["authorizations"] += 1
        return web.json_response({"access": "agent-token", "expires": time.time() + 3600})

    async def cashin(request):
        return await reply("cashin", request)

    async def find(request):
        return await reply(f"find:{request.match_info['ref']}", request)

    app = web.Application()
    app.router.add_post("/charges", charges)
    app.router.add_get("/transactions/verify_by_reference", verify_by_reference)
    app.router.add_get("/transactions/{tx_id}/verify", verify)
    app.router.add_post("/auth/agents/authorize", authorize)
    app.router.add_post("/transactions/cashin", cashin)
    app.router.add_get("/transactions/find/{ref}", find)

    server = await aiohttp_server(app)
    state["url"] = str(server.make_url(""))
    return state


def flutterwave(gateway, timeout=5):
    return FlutterwaveProvider(secret_key="FLWSECK-test", base_url=gateway["url"], timeout=timeout)


def paypack(gateway, timeout=5):
    return PaypackProvider(client_id="id", client_secret="secret", base_url=gateway["url"], timeout=timeout)


class TestStatusHelpers:
    @pytest.mark.parametrize("raw,expected", [
        ("successful", PaymentResultStatus.SUCCESSFUL),
        ("SUCCESS", PaymentResultStatus.SUCCESSFUL),
        ("failed", PaymentResultStatus.FAILED),
        ("cancelled", PaymentResultStatus.FAILED),
        ("pending", PaymentResultStatus.PENDING),
        ("something-new", PaymentResultStatus.PENDING),
        (None, PaymentResultStatus.PENDING),
    ])
    def test_normalize_status(self, raw, expected):
        assert normalize_status(raw) == expected

    def test_parse_expiration(self):
        assert parse_expiration("2024-05-01 10:15:00 AM").hour == 10
        assert parse_expiration("2024-05-01T22:15:00").hour == 22
        assert parse_expiration("soon") is None
        assert parse_expiration(None) is None


class TestFlutterwaveProvider:
    async def test_mobile_money_is_pending_with_redirect(self, gateway):
        gateway["replies"]["charge:mobile_money_rwanda"] = (200, {
            "status": "success",
            "message": "Charge initiated",
            "meta": {"authorization": {"redirect": "https://checkout.example/pay", "mode": "redirect"}},
        })

        response = await flutterwave(gateway).initiate_mobile_money(payment_request(), "0788123456")

        assert response.status == PaymentResultStatus.PENDING
        assert response.redirect_url == "https://checkout.example/pay"
        assert response.provider_reference == "ORD2405010001-1714557600000"
        _, _, body, auth = gateway["seen"][0]
        assert body["tx_ref"] == "ORD2405010001-1714557600000"
        assert body["phone_number"] == "0788123456"
        assert auth == "Bearer FLWSECK-test"

    async def test_http_error_raises_provider_error(self, gateway):
        gateway["replies"]["charge:mobile_money_rwanda"] = (400, {
            "status": "error", "message": "Invalid phone number",
        })

        with pytest.raises(ProviderError) as exc:
            await flutterwave(gateway).initiate_mobile_money(payment_request(), "0788123456")
        assert "Invalid phone number" in str(exc.value)
        assert not isinstance(exc.value, ProviderTimeoutError)

    async def test_timeout_raises_provider_timeout(self, gateway):
        gateway["delay"] = 0.5
        gateway["replies"]["charge:mobile_money_rwanda"] = (200, {"status": "success"})

        with pytest.raises(ProviderTimeoutError):
            await flutterwave(gateway, timeout=0.1).initiate_mobile_money(
                payment_request(), "0788123456"
            )

    async def test_card_redirect_mode(self, gateway):
        gateway["replies"]["charge:card"] = (200, {
            "status": "success",
            "message": "Charge authorization data required",
            "data": {"id": 987, "status": "pending", "flw_ref": "FLW-MOCK-1", "card": {"type": "VISA"}},
            "meta": {"authorization": {"mode": "redirect", "redirect": "https://3ds.example"}},
        })
        card = CardInput(card_number="5531886652142950", cvv="564", expiry_month="09", expiry_year="32")

        response = await flutterwave(gateway).charge_card(payment_request(PaymentMethod.CARD), card)

        assert response.status == PaymentResultStatus.PENDING
        assert response.authorization_mode == AuthorizationMode.REDIRECT
        assert response.redirect_url == "https://3ds.example"
        assert response.transaction_id == "987"
        assert response.card_type == "VISA"

    async def test_card_pin_is_sent_as_authorization(self, gateway):
        gateway["replies"]["charge:card"] = (200, {
            "status": "success",
            "data": {"id": 988, "status": "successful"},
        })
        card = CardInput(
            card_number="5531886652142950", cvv="564", expiry_month="09", expiry_year="32", pin="3310"
        )

        response = await flutterwave(gateway).charge_card(payment_request(PaymentMethod.CARD), card)

        assert response.status == PaymentResultStatus.SUCCESSFUL
        assert response.authorization_mode == AuthorizationMode.DIRECT
        _, _, body, _ = gateway["seen"][0]
        assert body["authorization"] == {"mode": "pin", "pin": "3310"}

    async def test_bank_transfer_details(self, gateway):
        gateway["replies"]["charge:bank_transfer"] = (200, {
            "status": "success",
            "meta": {"authorization": {
                "transfer_reference": "MockFLWRef-1",
                "transfer_account": "0067100155",
                "transfer_bank": "Mock Bank",
                "transfer_amount": 2500,
                "transfer_note": "Mock note",
                "account_expiration": "2024-05-01 10:15:00 AM",
            }},
        })

        response = await flutterwave(gateway).initiate_bank_transfer(
            payment_request(PaymentMethod.BANK_TRANSFER), 3600
        )

        assert response.status == PaymentResultStatus.PENDING
        assert response.provider_reference == "MockFLWRef-1"
        assert response.transfer_account == "0067100155"
        assert response.transfer_amount == Decimal("2500")
        assert response.account_expiration.hour == 10
        _, _, body, _ = gateway["seen"][0]
        assert body["expires"] == 3600
        assert body["is_permanent"] is False

    async def test_verify_by_transaction_id(self, gateway):
        gateway["replies"]["verify:12345"] = (200, {
            "status": "success",
            "data": {"id": 12345, "status": "successful", "flw_ref": "FLW-1", "amount": 2500},
        })

        response = await flutterwave(gateway).verify_transaction("ORD-ref", "12345")

        assert response.status == PaymentResultStatus.SUCCESSFUL
        assert response.transaction_id == "12345"

    async def test_verify_by_reference(self, gateway):
        gateway["replies"]["verify_by_reference"] = (200, {
            "status": "success",
            "data": {"id": 5, "status": "failed"},
        })

        response = await flutterwave(gateway).verify_transaction("ORD-ref")

        assert response.status == PaymentResultStatus.FAILED
        _, query, _, _ = gateway["seen"][0]
        assert query == {"tx_ref": "ORD-ref"}


class TestPaypackProvider:
    async def test_cashin_uses_cached_token(self, gateway):
        gateway["replies"]["cashin"] = (200, {"ref": "pp-ref-1", "status": "pending", "amount": 2500})
        provider = paypack(gateway)

        first = await provider.initiate_mobile_money(payment_request(), "+250788123456")
        second = await provider.initiate_mobile_money(payment_request(), "0788123456")

        assert first.provider_reference == "pp-ref-1"
        assert first.status == PaymentResultStatus.PENDING
        assert second.transaction_id == "pp-ref-1"
        assert gateway["authorizations"] == 1
        _, _, body, auth = gateway["seen"][0]
        assert body == {"amount": 2500, "number": "0788123456"}
        assert auth == "Bearer agent-token"

    async def test_cashin_without_reference_fails(self, gateway):
        gateway["replies"]["cashin"] = (200, {"status": "pending"})

        with pytest.raises(ProviderError):
            await paypack(gateway).initiate_mobile_money(payment_request(), "0788123456")

    async def test_verify(self, gateway):
        gateway["replies"]["find:pp-ref-1"] = (200, {"ref": "pp-ref-1", "status": "successful"})

        response = await paypack(gateway).verify_transaction("pp-ref-1")

        assert response.status == PaymentResultStatus.SUCCESSFUL
        assert response.provider_reference == "pp-ref-1"

    async def test_card_not_supported(self, gateway):
        card = CardInput(card_number="5531886652142950", cvv="564", expiry_month="09", expiry_year="32")
        with pytest.raises(ProviderError):
            await paypack(gateway).charge_card(payment_request(PaymentMethod.CARD), card)
