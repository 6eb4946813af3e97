"""
Evolution API Client - HTTP Gateway to WhatsApp
================================================

Talks to an Evolution API server (Baileys integration):
- POST /instance/create            register an instance
- GET  /instance/connect/{name}    QR code for the handshake
- GET  /instance/fetchInstances    connection state
- GET  /chat/whatsappProfile/{name} phone and profile of an open instance
- POST /message/sendText/{name}    relay a text message

Missing credentials raise ConfigurationError. Everything else that goes
wrong on the wire comes back as a GatewayFailure.
"""

import logging
import time
from typing import Any, Optional, Union

import requests
from pydantic import BaseModel, ValidationError as PydanticValidationError

from ..config import GatewaySettings, get_settings
from ...domain.exceptions import ConfigurationError
from .messaging_provider import (
    CreateInstanceResult,
    GatewayFailure,
    InstanceCreated,
    InstanceStatus,
    MessageSent,
    MessagingProvider,
    ProfileInfo,
    SendResult,
    StatusResult,
)

logger = logging.getLogger(__name__)

WHATSAPP_JID_SUFFIX = "@s.whatsapp.net"


class _QrPayload(BaseModel):
    base64: Optional[str] = None
    qrcode: Optional[Union[str, dict]] = None
    code: Optional[str] = None

    def image(self) -> Optional[str]:
        if self.base64:
            return self.base64
        if isinstance(self.qrcode, dict):
            return self.qrcode.get("base64") or self.qrcode.get("code")
        return self.qrcode or self.code


class _SendPayload(BaseModel):
    key: Optional[dict] = None

    def message_id(self) -> Optional[str]:
        return (self.key or {}).get("id")


class _InstanceEntry(BaseModel):
    instance: Optional[dict] = None
    name: Optional[str] = None
    connectionStatus: Optional[str] = None

    def state(self) -> str:
        inner = self.instance or {}
        return inner.get("state") or inner.get("status") or self.connectionStatus or "close"

    def qr_code(self) -> Optional[str]:
        qr = (self.instance or {}).get("qrcode")
        if isinstance(qr, dict):
            return qr.get("base64") or qr.get("code")
        return qr or None


class _ProfilePayload(BaseModel):
    wuid: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    profilePictureUrl: Optional[str] = None

    def to_profile(self) -> ProfileInfo:
        phone = self.wuid.replace(WHATSAPP_JID_SUFFIX, "") if self.wuid else None
        return ProfileInfo(
            phone=phone,
            display_name=self.name,
            picture=self.picture or self.profilePictureUrl,
        )


def normalize_endpoint(endpoint: str) -> str:
    """Default to https:// when no scheme is given."""
    endpoint = endpoint.strip().rstrip("/")
    if not endpoint.startswith("http://") and not endpoint.startswith("https://"):
        endpoint = f"https://{endpoint}"
    return endpoint


def _error_message(data: Any, default: str) -> str:
    if isinstance(data, dict):
        message = data.get("message") or data.get("error")
        if isinstance(data.get("response"), dict) and not message:
            message = data["response"].get("message")
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        if message:
            return str(message)
    return default


class EvolutionGateway(MessagingProvider):
    """
    Evolution API implementation of the messaging provider.

    USAGE:
        gateway = EvolutionGateway()
        created = gateway.create_instance("acct_a", "Acct A")
    """

    def __init__(self, settings: Optional[GatewaySettings] = None):
        settings = settings or get_settings().gateway
        self._endpoint = settings.endpoint
        self._api_key = settings.api_key
        self._integration = settings.integration
        self._qr_wait = settings.qr_wait_seconds
        self._timeout = settings.timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self._endpoint and self._api_key)

    def _base_url(self) -> str:
        if not self.is_configured:
            raise ConfigurationError(
                "Evolution API credentials not configured. "
                "Set EVOLUTION_API_KEY and EVOLUTION_API_ENDPOINT."
            )
        return normalize_endpoint(self._endpoint)

    def _request(self, method: str, path: str, default_error: str,
                 **kwargs) -> Union[Any, GatewayFailure]:
        """Perform one call. Returns decoded JSON or a GatewayFailure."""
        url = f"{self._base_url()}{path}"
        headers = {"apikey": self._api_key}
        if "json" in kwargs:
            headers["Content-Type"] = "application/json"

        try:
            response = requests.request(
                method, url, headers=headers, timeout=self._timeout, **kwargs
            )
        except requests.Timeout:
            logger.warning(f"Evolution API timeout: {method} {path}")
            return GatewayFailure(error=f"{default_error}: gateway timeout")
        except requests.RequestException as e:
            logger.warning(f"Evolution API error on {method} {path}: {e}")
            return GatewayFailure(error=f"{default_error}: {e}")

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.ok:
            logger.warning(f"Evolution API {method} {path} returned {response.status_code}: {data}")
            return GatewayFailure(
                error=_error_message(data, default_error),
                status_code=response.status_code,
                details=data if isinstance(data, dict) else None,
            )

        if data is None:
            return GatewayFailure(error=f"{default_error}: invalid JSON response",
                                  status_code=response.status_code)
        return data

    def _fetch_qr_code(self, instance_name: str) -> Optional[str]:
        data = self._request("GET", f"/instance/connect/{instance_name}", "Failed to fetch QR code")
        if isinstance(data, GatewayFailure):
            return None
        try:
            return _QrPayload.model_validate(data).image()
        except PydanticValidationError:
            logger.warning(f"Unexpected QR payload for {instance_name}: {data}")
            return None

    def create_instance(self, instance_name: str, display_name: str) -> CreateInstanceResult:
        if not instance_name or not display_name:
            return GatewayFailure(error="instanceName and connectionName are required")

        logger.info(f"Creating instance: {instance_name}")
        data = self._request(
            "POST",
            "/instance/create",
            "Failed to create instance",
            json={
                "instanceName": instance_name,
                "qrcode": True,
                "integration": self._integration,
            },
        )
        if isinstance(data, GatewayFailure):
            return data

        # Let the instance come up before asking for its QR code
        if self._qr_wait > 0:
            time.sleep(self._qr_wait)

        return InstanceCreated(
            instance_name=instance_name,
            qr_code=self._fetch_qr_code(instance_name),
        )

    def send_text(self, instance_name: str, number: str, text: str) -> SendResult:
        if not instance_name or not number or not text:
            return GatewayFailure(error="instanceName, to, and message are required")

        data = self._request(
            "POST",
            f"/message/sendText/{instance_name}",
            "Failed to send message",
            json={"number": number, "text": text},
        )
        if isinstance(data, GatewayFailure):
            return data

        try:
            payload = _SendPayload.model_validate(data)
        except PydanticValidationError:
            return MessageSent()
        return MessageSent(message_id=payload.message_id())

    def fetch_status(self, instance_name: str) -> StatusResult:
        if not instance_name:
            return GatewayFailure(error="instanceName parameter is required")

        data = self._request(
            "GET",
            "/instance/fetchInstances",
            "Evolution API instance fetch failed",
            params={"instanceName": instance_name},
        )
        if isinstance(data, GatewayFailure):
            return data

        if isinstance(data, dict):
            data = [data]
        if not data:
            return GatewayFailure(error="Instance not found", status_code=404)

        try:
            entry = _InstanceEntry.model_validate(data[0])
        except PydanticValidationError as e:
            return GatewayFailure(error=f"Unexpected instance payload: {e}")

        state = entry.state()
        qr_code = entry.qr_code()
        profile = ProfileInfo()

        if state == "open":
            profile_data = self._request(
                "GET", f"/chat/whatsappProfile/{instance_name}", "Failed to fetch profile"
            )
            if not isinstance(profile_data, GatewayFailure):
                try:
                    profile = _ProfilePayload.model_validate(profile_data).to_profile()
                except PydanticValidationError:
                    logger.warning(f"Unexpected profile payload for {instance_name}")
        elif not qr_code:
            qr_code = self._fetch_qr_code(instance_name)

        return InstanceStatus(
            instance_name=instance_name,
            connection_state=state,
            qr_code=qr_code,
            profile=profile,
        )
