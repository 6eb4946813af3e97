import pytest
import requests

from chipmaturer.domain.exceptions import ConfigurationError
from chipmaturer.infrastructure.config import GatewaySettings
from chipmaturer.infrastructure.whatsapp import (
    EvolutionGateway,
    GatewayError,
    GatewayFailure,
    InstanceCreated,
    InstanceStatus,
    MessageSent,
    normalize_endpoint,
)


class Resp:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class Router:
    """Answers requests.request calls by (method, path)."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def __call__(self, method, url, headers=None, timeout=None, **kwargs):
        path = url.replace("https://evo.example.com", "")
        self.calls.append((method, path, headers, kwargs))
        route = self.routes[(method, path)]
        if isinstance(route, Exception):
            raise route
        return route


@pytest.fixture
def gateway():
    return EvolutionGateway(GatewaySettings(endpoint="evo.example.com", api_key="secret",
                                            qr_wait_seconds=0))


def test_normalize_endpoint():
    assert normalize_endpoint("evo.example.com/") == "https://evo.example.com"
    assert normalize_endpoint("http://localhost:8080") == "http://localhost:8080"


def test_missing_credentials_raise_configuration_error():
    gateway = EvolutionGateway(GatewaySettings(endpoint="", api_key=""))
    assert not gateway.is_configured
    with pytest.raises(ConfigurationError):
        gateway.send_text("acct_a", "+5511999990000", "hi")


def test_create_instance_fetches_qr(monkeypatch, gateway):
    router = Router({
        ("POST", "/instance/create"): Resp(201, {"instance": {"instanceName": "acct_a"}}),
        ("GET", "/instance/connect/acct_a"): Resp(200, {"base64": "data:image/png;base64,AAA"}),
    })
    monkeypatch.setattr(requests, "request", router)

    result = gateway.create_instance("acct_a", "Acct A")

    assert result == InstanceCreated(instance_name="acct_a", qr_code="data:image/png;base64,AAA")
    method, path, headers, kwargs = router.calls[0]
    assert headers["apikey"] == "secret"
    assert kwargs["json"] == {"instanceName": "acct_a", "qrcode": True,
                              "integration": "WHATSAPP-BAILEYS"}


def test_create_instance_failure_is_tagged(monkeypatch, gateway):
    router = Router({
        ("POST", "/instance/create"): Resp(403, {"message": ["name already in use"]}),
    })
    monkeypatch.setattr(requests, "request", router)

    result = gateway.create_instance("acct_a", "Acct A")

    assert isinstance(result, GatewayFailure)
    assert result.error == "name already in use"
    assert result.status_code == 403
    assert isinstance(result.to_exception(), GatewayError)


def test_send_text(monkeypatch, gateway):
    router = Router({
        ("POST", "/message/sendText/acct_a"): Resp(201, {"key": {"id": "ABC123"}}),
    })
    monkeypatch.setattr(requests, "request", router)

    result = gateway.send_text("acct_a", "+5511999990000", "bom dia")

    assert result == MessageSent(message_id="ABC123")
    assert router.calls[0][3]["json"] == {"number": "+5511999990000", "text": "bom dia"}


def test_send_text_requires_fields_without_network(monkeypatch, gateway):
    router = Router({})
    monkeypatch.setattr(requests, "request", router)

    result = gateway.send_text("acct_a", "", "hi")

    assert isinstance(result, GatewayFailure)
    assert router.calls == []


def test_send_text_network_error(monkeypatch, gateway):
    router = Router({
        ("POST", "/message/sendText/acct_a"): requests.ConnectionError("refused"),
    })
    monkeypatch.setattr(requests, "request", router)

    result = gateway.send_text("acct_a", "+5511999990000", "hi")

    assert isinstance(result, GatewayFailure)
    assert "refused" in result.error


def test_fetch_status_open_reads_profile(monkeypatch, gateway):
    router = Router({
        ("GET", "/instance/fetchInstances"): Resp(200, [
            {"instance": {"instanceName": "acct_a", "state": "open"}}
        ]),
        ("GET", "/chat/whatsappProfile/acct_a"): Resp(200, {
            "wuid": "5511988887777@s.whatsapp.net",
            "name": "Ana",
            "profilePictureUrl": "https://pics.example/ana.jpg",
        }),
    })
    monkeypatch.setattr(requests, "request", router)

    result = gateway.fetch_status("acct_a")

    assert isinstance(result, InstanceStatus)
    assert result.is_open
    assert result.profile.phone == "5511988887777"
    assert result.profile.display_name == "Ana"
    assert result.profile.picture == "https://pics.example/ana.jpg"
    assert router.calls[0][3]["params"] == {"instanceName": "acct_a"}


def test_fetch_status_closed_requests_new_qr(monkeypatch, gateway):
    router = Router({
        ("GET", "/instance/fetchInstances"): Resp(200, [{"name": "acct_a", "connectionStatus": "close"}]),
        ("GET", "/instance/connect/acct_a"): Resp(200, {"qrcode": {"base64": "QR2"}}),
    })
    monkeypatch.setattr(requests, "request", router)

    result = gateway.fetch_status("acct_a")

    assert result.connection_state == "close"
    assert result.qr_code == "QR2"
    assert not result.is_open


def test_fetch_status_unknown_instance(monkeypatch, gateway):
    monkeypatch.setattr(requests, "request", Router({
        ("GET", "/instance/fetchInstances"): Resp(200, []),
    }))

    result = gateway.fetch_status("ghost")

    assert isinstance(result, GatewayFailure)
    assert result.error == "Instance not found"
