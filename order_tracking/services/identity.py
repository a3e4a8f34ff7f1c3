"""
Client Identity Resolver

Produces the anonymous client identifier that the checkout flow stamps on
orders (``metadata.clientId``). The identifier is generated once, persisted
in the data directory and returned unchanged on every later call, from this
process or any other one sharing the directory.

Concurrency:
    The identity file is guarded by a FileLock, so two sessions starting at
    the same moment agree on a single identifier instead of each writing
    their own.

Failure mode:
    If the file cannot be locked, read or written the resolver falls back
    to an identifier kept in memory for the lifetime of this resolver.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientIdentity:
    client_id: str
    created_at: datetime
    persisted: bool = True

    def to_dict(self) -> dict:
        return {
            "clientId": self.client_id,
            "createdAt": self.created_at.isoformat(),
        }


def generate_client_id() -> str:
    """``client_<epoch-millis>_<12 hex chars>``"""
    return f"client_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}"


class ClientIdentityResolver:
    """
    Resolves (and on first use creates) the anonymous client identity.

    Example:
        >>> resolver = ClientIdentityResolver(Path("data/client_identity.json"))
        >>> resolver.resolve().client_id
        'client_1718000000000_3f2a9c1b7d4e'
    """

    def __init__(self, storage_path: Optional[Path], lock_timeout: float = 5.0):
        self.storage_path = Path(storage_path) if storage_path else None
        self.lock_timeout = lock_timeout
        self._identity: Optional[ClientIdentity] = None

    def resolve(self) -> ClientIdentity:
        """Return the client identity, creating and persisting it if needed."""
        if self._identity is not None:
            return self._identity

        identity = None
        if self.storage_path is not None:
            try:
                identity = self._load_or_create()
            except Timeout:
                logger.warning(
                    f"Identity lock not acquired within {self.lock_timeout}s - "
                    "using an in-memory client id"
                )
            except OSError as e:
                logger.warning(f"Identity storage unavailable ({e}) - using an in-memory client id")
        else:
            logger.warning("No identity storage configured - using an in-memory client id")

        if identity is None:
            identity = ClientIdentity(
                client_id=generate_client_id(),
                created_at=datetime.now(timezone.utc),
                persisted=False,
            )

        self._identity = identity
        logger.info(f"Client identity resolved: …{identity.client_id[-12:]} (persisted={identity.persisted})")
        return identity

    def _load_or_create(self) -> ClientIdentity:
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.storage_path) + ".lock", timeout=self.lock_timeout)

        with lock:
            existing = self._read()
            if existing is not None:
                return existing

            identity = ClientIdentity(
                client_id=generate_client_id(),
                created_at=datetime.now(timezone.utc),
            )
            tmp_path = self.storage_path.with_suffix(self.storage_path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(identity.to_dict()), encoding="utf-8")
            tmp_path.replace(self.storage_path)
            logger.info(f"New client identity created at {self.storage_path}")
            return identity

    def _read(self) -> Optional[ClientIdentity]:
        if not self.storage_path.exists():
            return None
        try:
            data = json.loads(self.storage_path.read_text(encoding="utf-8"))
            return ClientIdentity(
                client_id=str(data["clientId"]),
                created_at=datetime.fromisoformat(data["createdAt"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            # Unreadable content counts as cleared storage
            logger.warning(f"Corrupt identity file {self.storage_path} ({e}), regenerating")
            return None
