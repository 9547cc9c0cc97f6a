import json

import httpx
import pytest

from momo_billing.errors import GatewayError, ValidationError
from momo_billing.gateway import (
    GatewayClient,
    GatewayConfig,
    build_provider_transaction_id,
    detect_carrier,
    normalize_phone,
    resolve_gateway,
    resolve_mode,
    summarize_request_body,
)

CONFIG = GatewayConfig(api_user="api-user", api_password="api-pass", api_key="test_abc",
                       base_url="https://gateway.test")


def client_for(handler):
    return GatewayClient(CONFIG, transport=httpx.MockTransport(handler))


@pytest.mark.parametrize("raw, expected", [
    ("+237 677-12-34-56", "677123456"),
    ("237699000111", "699000111"),
    ("(655) 11 22 33", "655112233"),
    ("677123456", "677123456"),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("phone", ["670000000", "679999999", "650123456", "654123456", "680123456", "689123456"])
def test_mtn_prefixes(phone):
    assert detect_carrier(phone) == "MTN"
    assert resolve_gateway(phone) == "CM_MTN"


@pytest.mark.parametrize("phone", ["690000000", "699999999", "655123456", "659123456"])
def test_orange_prefixes(phone):
    assert detect_carrier(phone) == "ORANGE"
    assert resolve_gateway(phone) == "CM_ORANGE"


@pytest.mark.parametrize("phone", ["620123456", "660123456", "12", "", "abc123456"])
def test_unknown_prefixes(phone):
    assert detect_carrier(phone) is None


def test_unknown_prefix_uses_configured_default():
    assert resolve_gateway("620123456", default="CM_EU") == "CM_EU"


def test_unknown_prefix_without_default_is_rejected():
    with pytest.raises(ValidationError) as exc:
        resolve_gateway("620123456")
    assert "Mobile Money provider" in exc.value.reason


def test_explicit_override_wins():
    assert resolve_gateway("699000111", override="CM_MTN") == "CM_MTN"


def test_provider_transaction_id_strips_separators():
    assert build_provider_transaction_id("3f2a-11b0_ZZ") == "jbl3f2a11b0ZZ"


def test_resolve_mode():
    assert resolve_mode("live_123") == "live"
    assert resolve_mode("test_123") == "test"
    assert resolve_mode("whatever") == "test"
    assert resolve_mode("live_123", "TEST") == "test"


def test_config_from_env_requires_credentials(monkeypatch):
    monkeypatch.delenv("PAYUNIT_API_USER", raising=False)
    monkeypatch.setenv("PAYUNIT_API_PASSWORD", "p")
    monkeypatch.setenv("PAYUNIT_API_KEY", "k")

    with pytest.raises(GatewayError) as exc:
        GatewayConfig.from_env()
    assert exc.value.fallback_eligible is False


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("PAYUNIT_API_USER", "u")
    monkeypatch.setenv("PAYUNIT_API_PASSWORD", "p")
    monkeypatch.setenv("PAYUNIT_API_KEY", "live_key")
    monkeypatch.delenv("PAYUNIT_MODE", raising=False)
    monkeypatch.setenv("PAYUNIT_BASE_URL", "https://gw.example/")
    monkeypatch.setenv("PAYUNIT_DEFAULT_GATEWAY", "CM_MTN")

    config = GatewayConfig.from_env()

    assert config.mode == "live"
    assert config.base_url == "https://gw.example"
    assert config.default_gateway == "CM_MTN"


def test_summarize_request_body_hides_phone_and_urls():
    summary = summarize_request_body({
        "phone_number": "677123456",
        "return_url": "https://app.example/payment/return?tx=1",
        "amount": 500,
    })
    assert summary == {
        "phone_number_suffix": "3456",
        "return_url": "https://app.example/payment/return",
        "amount": 500,
    }


def test_initialize_sends_auth_headers_and_parses_providers():
    seen = {}

    def handler(request):
        seen["request"] = request
        return httpx.Response(200, json={
            "status": "SUCCESS",
            "data": {
                "transaction_id": "jbl1",
                "transaction_url": "https://checkout.test/jbl1",
                "providers": [{"shortcode": "CM_MTN", "name": "MTN"}, {"shortcode": "CM_ORANGE", "name": "Orange"}],
            },
        })

    result = client_for(handler).initialize(4700, "XAF", "jbl1", "https://app/return", "https://app/webhook")

    request = seen["request"]
    assert request.method == "POST"
    assert request.url.path == "/api/gateway/initialize"
    assert request.headers["x-api-key"] == "test_abc"
    assert request.headers["mode"] == "test"
    assert request.headers["authorization"].startswith("Basic ")
    body = json.loads(request.content)
    assert body["total_amount"] == 4700
    assert body["notify_url"] == "https://app/webhook"
    assert body["payment_country"] == "CM"

    assert result.transaction_url == "https://checkout.test/jbl1"
    assert result.providers == ["CM_MTN", "CM_ORANGE"]


def test_push_returns_gateway_fields():
    def handler(request):
        body = json.loads(request.content)
        assert body["paymentType"] == "button"
        assert body["phone_number"] == "677123456"
        return httpx.Response(200, json={
            "status": "SUCCESS",
            "data": {"transaction_id": "jbl1", "payment_status": "PENDING", "t_id": "T1", "gateway": "CM_MTN"},
        })

    result = client_for(handler).push(4700, "XAF", "jbl1", "677123456", "CM_MTN", "https://app/return")

    assert result.t_id == "T1"
    assert result.payment_status == "PENDING"


def test_html_error_is_fallback_eligible():
    def handler(request):
        return httpx.Response(403, text="<!DOCTYPE html><html>blocked</html>", headers={"content-type": "text/html"})

    with pytest.raises(GatewayError) as exc:
        client_for(handler).push(4700, "XAF", "jbl1", "677123456", "CM_MTN", "https://app/return")

    assert exc.value.fallback_eligible is True
    assert exc.value.status_code == 403
    assert "blocked the request" in str(exc.value)


def test_http_error_with_text_is_fallback_eligible():
    def handler(request):
        return httpx.Response(500, text="  internal \n error ")

    with pytest.raises(GatewayError) as exc:
        client_for(handler).status("jbl1")

    assert exc.value.fallback_eligible is True
    assert str(exc.value) == "Payunit API error (500): internal error"


def test_invalid_json_is_fallback_eligible():
    def handler(request):
        return httpx.Response(200, text="not json")

    with pytest.raises(GatewayError) as exc:
        client_for(handler).status("jbl1")

    assert exc.value.fallback_eligible is True


def test_failed_envelope_is_fatal():
    def handler(request):
        return httpx.Response(200, json={"status": "FAILED", "statusCode": 400, "message": "Invalid phone"})

    with pytest.raises(GatewayError) as exc:
        client_for(handler).push(4700, "XAF", "jbl1", "677123456", "CM_MTN", "https://app/return")

    assert exc.value.fallback_eligible is False
    assert "Invalid phone" in str(exc.value)


def test_transport_error_is_fatal():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError) as exc:
        client_for(handler).initialize(4700, "XAF", "jbl1", "https://app/return")

    assert exc.value.fallback_eligible is False


def test_status_upper_cases_transaction_status():
    def handler(request):
        assert request.url.path == "/api/gateway/paymentstatus/jbl1"
        return httpx.Response(200, json={
            "status": "SUCCESS",
            "data": {"transaction_id": "jbl1", "transaction_status": "success", "gateway": "CM_MTN", "amount": "4700"},
        })

    result = client_for(handler).status("jbl1")

    assert result.status == "SUCCESS"
    assert result.gateway == "CM_MTN"
