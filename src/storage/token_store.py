"""
Token Store backed by an AsyncKeyValue backend.

Holds every piece of persistent bridge state under stable key layouts:

    client:{clientId}                   -> OAuth client record
    static_client_actual:{wellKnownId}  -> {"client_id": actual client id}
    grant:{grantId}                     -> downstream grant (encrypted props)
    code:{sha256(code)}                 -> authorization code (single use)
    token:{sha256(token)}               -> issued access token
    refresh:{sha256(token)}             -> refresh token pointer to its grant
    cache:{key}                         -> cached resource response

The backend is any py-key-value-aio store (memory for development, disk for a
single host). No process-local caching happens here: concurrent server
instances sharing a backend observe the same alias and client records.
"""

import logging
from typing import Any, Optional

from key_value.aio.protocols import AsyncKeyValue

from auth.models import OAuthClientRecord
from core.exceptions import DependencyError

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "mcp-oauth"


def create_key_value_backend(backend: str, directory: str) -> AsyncKeyValue:
    """Create the configured key-value backend.

    Args:
        backend: "memory" or "disk".
        directory: Directory for the disk backend.

    Returns:
        An AsyncKeyValue store.

    Raises:
        DependencyError: If the backend's optional dependencies are missing.
        ValueError: If the backend name is unknown.
    """
    if backend == "memory":
        from key_value.aio.stores.memory import MemoryStore

        return MemoryStore()

    if backend == "disk":
        try:
            from key_value.aio.stores.disk import DiskStore
        except ImportError as e:
            raise DependencyError(
                "Disk store not installed. Install with: pip install 'py-key-value-aio[disk]'"
            ) from e
        return DiskStore(directory=directory)

    raise ValueError(f"Unknown token store backend: {backend}")


class TokenStore:
    """Typed access to the bridge's persisted state."""

    def __init__(
        self, backend: AsyncKeyValue, collection: str = DEFAULT_COLLECTION
    ) -> None:
        self._backend = backend
        self._collection = collection

    # ------------------------------------------------------------------
    # Raw get / put / delete
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        return await self._backend.get(key=key, collection=self._collection)

    async def put(
        self, key: str, value: dict[str, Any], ttl: Optional[float] = None
    ) -> None:
        await self._backend.put(
            key=key, value=value, collection=self._collection, ttl=ttl
        )

    async def delete(self, key: str) -> bool:
        return await self._backend.delete(key=key, collection=self._collection)

    async def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime of a key in seconds, None if it never expires."""
        _, remaining = await self._backend.ttl(key=key, collection=self._collection)
        return remaining

    # ------------------------------------------------------------------
    # Client records
    # ------------------------------------------------------------------

    async def get_client(self, client_id: str) -> Optional[OAuthClientRecord]:
        data = await self.get(f"client:{client_id}")
        if data is None:
            return None
        return OAuthClientRecord.model_validate(data)

    async def put_client(self, client: OAuthClientRecord) -> None:
        await self.put(f"client:{client.client_id}", client.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Static client alias
    # ------------------------------------------------------------------

    async def get_static_alias(self, well_known_id: str) -> Optional[str]:
        data = await self.get(f"static_client_actual:{well_known_id}")
        if not data:
            return None
        return data.get("client_id")

    async def put_static_alias(self, well_known_id: str, actual_client_id: str) -> None:
        # Last write wins: concurrent bootstraps each store a valid client id
        await self.put(
            f"static_client_actual:{well_known_id}", {"client_id": actual_client_id}
        )

    # ------------------------------------------------------------------
    # Cached resource responses
    # ------------------------------------------------------------------

    async def get_cached(self, cache_key: str) -> Optional[Any]:
        data = await self.get(f"cache:{cache_key}")
        if data is None:
            return None
        return data.get("value")

    async def put_cached(self, cache_key: str, value: Any, ttl: float) -> None:
        await self.put(f"cache:{cache_key}", {"value": value}, ttl=ttl)
