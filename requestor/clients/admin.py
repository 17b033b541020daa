"""Admin API client importing the requestor identity key.

``POST /admin/import-key`` with ``{"key": <hex>, "nodeId": <hex>}`` is sent
exactly once per run. Nothing downstream can be attributed without the
identity, so failures are not retried and surface as
:class:`KeyImportUnreachable` or :class:`KeyImportRejected`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from requestor.config.models import NODE_ID_PATTERN
from requestor.core.errors import ApiError, ApiUnreachable, KeyImportError, KeyImportRejected, KeyImportUnreachable
from requestor.core.types import NodeId

from .rest import RestClient

LOGGER = logging.getLogger(__name__)

IMPORT_KEY_PATH = "/admin/import-key"


@dataclass(slots=True, frozen=True)
class NodeIdentity:
    """Imported key material and the node id it is attributed to."""

    key: str
    node_id: NodeId

    @classmethod
    def build(cls, key: bytes | str, node_id: str) -> "NodeIdentity":
        """Normalize ``key`` to lower-case hex and validate ``node_id``."""

        if isinstance(key, bytes):
            key_hex = key.hex()
        else:
            key_hex = key.strip().lower()
            try:
                bytes.fromhex(key_hex)
            except ValueError as exc:
                raise ValueError("key must be bytes or a hex string") from exc
        if not key_hex:
            raise ValueError("key must not be empty")
        if not NODE_ID_PATTERN.match(node_id):
            raise ValueError(f"Invalid node id: {node_id!r}")
        return cls(key=key_hex, node_id=NodeId(node_id.lower()))

    def to_payload(self) -> dict[str, str]:
        return {"key": self.key, "nodeId": self.node_id}


class KeyStoreClient(RestClient):
    """Admin endpoint wrapper; single attempt, no backoff."""

    def __init__(self, base_url: str, **kwargs) -> None:
        kwargs["max_retries"] = 1
        super().__init__(base_url, **kwargs)
        self._identity: NodeIdentity | None = None

    @property
    def identity(self) -> NodeIdentity:
        """Return the identity imported by :meth:`import_key`."""

        if self._identity is None:
            raise KeyImportError("No identity has been imported yet")
        return self._identity

    def import_key(self, key: bytes | str, node_id: str) -> NodeIdentity:
        identity = NodeIdentity.build(key, node_id)
        try:
            self._request("POST", IMPORT_KEY_PATH, json_body=identity.to_payload())
        except ApiUnreachable as exc:
            raise KeyImportUnreachable(str(exc)) from exc
        except ApiError as exc:
            raise KeyImportRejected(exc.status, exc.message) from exc
        self._identity = identity
        LOGGER.info("Imported key", extra={"node_id": identity.node_id})
        return identity


__all__ = ["KeyStoreClient", "NodeIdentity"]
