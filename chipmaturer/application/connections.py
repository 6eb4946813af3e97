"""
Connection Registry - Chips and Their Gateway Handshake
========================================================

Every mutation is written to the store immediately. Gateway calls are
blocking; the web layer runs create() and synchronize() in a worker thread.
"""

import logging
import random
import re
import uuid
from typing import List, Optional

from ..domain.exceptions import ConfigurationError, NotFoundError, ValidationError
from ..domain.models import Connection, ConnectionStatus, utc_now
from ..infrastructure.persistence import Database
from ..infrastructure.whatsapp import GatewayFailure, MessagingProvider
from .pairs import PairRegistry

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {"name", "phone", "status", "instance_name"}
OPERATOR_STATUSES = {ConnectionStatus.INACTIVE.value}


def instance_name_for(name: str) -> str:
    """Gateway instance name: lower case, whitespace runs become underscores."""
    return re.sub(r"\s+", "_", name.strip().lower())


class ConnectionRegistry:
    """
    USAGE:
        registry = ConnectionRegistry(db, EvolutionGateway(), pairs)
        chip = registry.create("Acct A")
        registry.synchronize(chip.id)
    """

    # Placeholder handle until the gateway reports the real number
    DEFAULT_PHONE_PREFIX = "+5511"

    def __init__(
        self,
        db: Database,
        gateway: MessagingProvider,
        pairs: Optional[PairRegistry] = None,
        rng: Optional[random.Random] = None,
    ):
        self._db = db
        self._gateway = gateway
        self._pairs = pairs
        self._rng = rng or random.Random()

    def list(self) -> List[Connection]:
        return self._db.get_all_connections()

    def get(self, connection_id: str) -> Connection:
        connection = self._db.get_connection(connection_id)
        if connection is None:
            raise NotFoundError(f"Connection {connection_id} not found")
        return connection

    def active_count(self) -> int:
        return sum(1 for c in self.list() if c.is_active)

    def default_phone(self) -> str:
        return f"{self.DEFAULT_PHONE_PREFIX}{self._rng.randrange(10 ** 8):08d}"

    def _check_unique(self, name: str, instance_name: str, exclude_id: str = "") -> None:
        for existing in self.list():
            if existing.id == exclude_id:
                continue
            if existing.name.lower() == name.lower():
                raise ValidationError(f"A connection named '{name}' already exists.")
            if existing.instance_name == instance_name:
                raise ValidationError(
                    f"Instance name '{instance_name}' is already used by '{existing.name}'."
                )

    def _set_status(self, connection_id: str, status: ConnectionStatus, **extra) -> None:
        self._db.update_connection(
            connection_id, status=status.value, last_active=utc_now(), **extra
        )

    def create(self, name: str, phone: Optional[str] = None) -> Connection:
        """
        Register a chip and start its QR handshake.

        Raises:
            ValidationError: empty or duplicate name (nothing is written).
            ConfigurationError: gateway credentials missing (chip saved as inactive).
            GatewayError: the gateway refused the instance (chip saved as inactive).
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Connection name is required.")

        instance_name = instance_name_for(name)
        self._check_unique(name, instance_name)

        now = utc_now()
        connection = Connection(
            id=uuid.uuid4().hex,
            name=name,
            phone=(phone or "").strip() or self.default_phone(),
            instance_name=instance_name,
            status=ConnectionStatus.CONNECTING.value,
            last_active=now,
            created_at=now,
        )
        self._db.add_connection(connection)
        logger.info(f"Connection created: {name} ({instance_name})")

        try:
            result = self._gateway.create_instance(instance_name, name)
        except ConfigurationError:
            self._set_status(connection.id, ConnectionStatus.INACTIVE)
            raise

        if isinstance(result, GatewayFailure):
            self._set_status(connection.id, ConnectionStatus.INACTIVE)
            logger.warning(f"Handshake failed for {name}: {result.error}")
            raise result.to_exception()

        self._set_status(connection.id, ConnectionStatus.ACTIVE, qr_code=result.qr_code or "")
        return self.get(connection.id)

    def update(self, connection_id: str, **fields) -> Connection:
        current = self.get(connection_id)

        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        # active and error are only reached through a gateway handshake
        if "status" in fields and fields["status"] not in OPERATOR_STATUSES:
            raise ValidationError(
                f"Status '{fields['status']}' cannot be set directly; synchronize the chip instead."
            )

        if "name" in fields:
            fields["name"] = (fields["name"] or "").strip()
            if not fields["name"]:
                raise ValidationError("Connection name is required.")
        if "instance_name" in fields:
            fields["instance_name"] = (fields["instance_name"] or "").strip()
            if not fields["instance_name"]:
                raise ValidationError("Instance name is required.")
        name = fields.get("name", current.name)
        instance_name = fields.get("instance_name", current.instance_name)
        self._check_unique(name, instance_name, exclude_id=connection_id)

        self._db.update_connection(connection_id, last_active=utc_now(), **fields)
        return self.get(connection_id)

    def delete(self, connection_id: str) -> None:
        """Remove a chip together with every pair it belongs to."""
        connection = self.get(connection_id)
        for pair in self._db.get_pairs_for_connection(connection_id):
            if self._pairs is not None:
                self._pairs.remove(pair.id)
            else:
                self._db.delete_pair(pair.id)
        self._db.delete_connection(connection_id)
        logger.info(f"Connection deleted: {connection.name}")

    def synchronize(self, connection_id: str) -> Connection:
        """
        Ask the gateway for the current state and a fresh QR code.

        Raises:
            ConfigurationError / GatewayError: the chip is marked as error.
        """
        connection = self.get(connection_id)
        self._set_status(connection_id, ConnectionStatus.CONNECTING)

        try:
            result = self._gateway.fetch_status(connection.instance_name)
        except ConfigurationError:
            self._set_status(connection_id, ConnectionStatus.ERROR)
            raise

        if isinstance(result, GatewayFailure):
            self._set_status(connection_id, ConnectionStatus.ERROR)
            logger.warning(f"Sync failed for {connection.name}: {result.error}")
            raise result.to_exception()

        if result.is_open:
            profile = result.profile
            self._set_status(
                connection_id,
                ConnectionStatus.ACTIVE,
                phone=profile.phone or connection.phone,
                profile_name=profile.display_name or "",
                profile_picture=profile.picture or "",
                qr_code="",
            )
        else:
            self._set_status(
                connection_id,
                ConnectionStatus.CONNECTING,
                qr_code=result.qr_code or connection.qr_code,
            )

        return self.get(connection_id)
