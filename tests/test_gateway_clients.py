import pytest
import requests

from storefront.errors import RemoteProviderError
from storefront.services.nets_client import NetsQrClient
from storefront.services.paypal_client import PayPalClient


class StubResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class StubHttp:
    """Answers requests in order and remembers what was sent."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _next(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def request(self, method, url, **kwargs):
        return self._next(method.upper(), url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)


TOKEN = StubResponse(payload={"access_token": "token-abc"})


def _paypal(*responses):
    http = StubHttp(*responses)
    client = PayPalClient("client-id", "secret", "https://paypal.test/", "SGD", 5, http=http)
    return client, http


def test_paypal_create_order_sends_amount_and_invoice():
    client, http = _paypal(TOKEN, StubResponse(payload={"id": "ORDER-1", "status": "CREATED"}))

    created = client.create_order("39.70", "INV-1")

    assert created["id"] == "ORDER-1"
    method, url, kwargs = http.calls[1]
    assert url == "https://paypal.test/v2/checkout/orders"
    assert kwargs["headers"]["Authorization"] == "Bearer token-abc"
    unit = kwargs["json"]["purchase_units"][0]
    assert unit["amount"] == {"currency_code": "SGD", "value": "39.70"}
    assert unit["invoice_id"] == "INV-1"


def test_paypal_capture_prefers_capture_level_status():
    body = {
        "status": "COMPLETED",
        "payer": {"email_address": "buyer@example.com"},
        "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "PENDING"}]}}],
    }
    client, _ = _paypal(TOKEN, StubResponse(payload=body))

    capture = client.capture_order("ORDER-1")

    assert capture.status == "PENDING"
    assert not capture.completed
    assert capture.to_dict()["payerEmail"] == "buyer@example.com"


def test_paypal_http_error_becomes_remote_provider_error():
    client, _ = _paypal(TOKEN, StubResponse(status_code=422, text='{"name":"UNPROCESSABLE_ENTITY"}'))

    with pytest.raises(RemoteProviderError) as excinfo:
        client.capture_order("ORDER-1")

    assert excinfo.value.status == 422
    assert excinfo.value.status_code == 502


def test_paypal_requires_credentials():
    client = PayPalClient("", "", "https://paypal.test", http=StubHttp())

    with pytest.raises(RemoteProviderError):
        client.get_access_token()


def test_nets_qr_request_returns_data_block():
    data = {"response_code": "00", "qr_code": "iVBOR", "txn_retrieval_ref": "REF-1"}
    http = StubHttp(StubResponse(payload={"result": {"data": data}}))
    client = NetsQrClient("https://nets.test/qr", "key", "project", 5, http=http)

    assert client.request_qr_code("39.70", "INV-1") == data
    _method, url, kwargs = http.calls[0]
    assert url == "https://nets.test/qr/request"
    assert kwargs["headers"]["api-key"] == "key"
    assert kwargs["json"]["amt_in_dollars"] == "39.70"


def test_nets_qr_rejection_raises():
    http = StubHttp(StubResponse(payload={"result": {"data": {"response_code": "68", "network_status": -1}}}))
    client = NetsQrClient("https://nets.test/qr", "key", "project", 5, http=http)

    with pytest.raises(RemoteProviderError):
        client.request_qr_code("39.70", "INV-1")


def test_nets_status_query_parses_codes():
    payload = {"result": {"data": {"response_code": "00", "txn_status": "1"}}}
    http = StubHttp(StubResponse(payload=payload))
    client = NetsQrClient("https://nets.test/qr", "key", "project", 5, http=http)

    status = client.query_transaction_status("REF-1", 1)

    assert status.succeeded
    assert http.calls[0][2]["json"] == {"txn_retrieval_ref": "REF-1", "frontend_timeout_status": 1}


def test_nets_network_failure_raises():
    http = StubHttp(requests.ConnectionError("boom"))
    client = NetsQrClient("https://nets.test/qr", "key", "project", 5, http=http)

    with pytest.raises(RemoteProviderError):
        client.query_transaction_status("REF-1")
