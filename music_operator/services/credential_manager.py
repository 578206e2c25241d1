"""
Credential Manager - create-once, backfill-only database credentials.

Two Secrets are owned by each MusicService with a database tier:

- <name>-db-root: key "password", seeded from spec.database.rootPassword
  when given, generated otherwise
- <name>-db-replication: keys "username" and "password", created on first
  need (replication enabled and at least one replica or cluster node)

Existing values are never overwritten; only missing keys are backfilled.
Rotating a credential under a running replica set would break replication,
so a changed rootPassword in the spec does not touch an existing Secret.
"""
import base64
import secrets
from typing import Any, Dict, Optional

from music_operator.config.logging import get_logger
from music_operator.config.settings import settings
from music_operator.exceptions import NotFoundError
from music_operator.models.music_service import MusicService
from music_operator.models.resources import ResourceKind
from music_operator.store.base import StateStore
from music_operator.utils.k8s import object_meta

logger = get_logger(__name__)

REPLICATION_USERNAME = "repl"
USERNAME_KEY = "username"
PASSWORD_KEY = "password"
REPLICATION_SECRET_SUFFIX = "-db-replication"
ROOT_SECRET_SUFFIX = "-db-root"


def replication_secret_name(ms: MusicService) -> str:
    return f"{ms.name}{REPLICATION_SECRET_SUFFIX}"


def root_secret_name(ms: MusicService) -> str:
    return f"{ms.name}{ROOT_SECRET_SUFFIX}"


def generate_password(num_bytes: Optional[int] = None) -> str:
    """Hex-encoded random secret (2 characters per byte)."""
    return secrets.token_hex(num_bytes or settings.credential_password_bytes)


def _encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def decode_secret_value(secret: Dict[str, Any], key: str) -> Optional[str]:
    raw = (secret.get("data") or {}).get(key)
    if raw is None:
        return None
    return base64.b64decode(raw).decode("utf-8")


def replication_needed(ms: MusicService) -> bool:
    """Replication enabled and at least one replica or cluster node."""
    if not ms.database_enabled:
        return False
    db = ms.spec.database
    if not db.replication_enabled:
        return False
    if db.ha_enabled:
        # A cluster always has replicas + 1 nodes
        return True
    return db.replicas > 0


class CredentialManager:
    """
    Issues database credentials as Secrets owned by the parent.
    """

    def __init__(self, store: StateStore, password_bytes: Optional[int] = None):
        self.store = store
        self.password_bytes = password_bytes or settings.credential_password_bytes

    async def ensure(self, ms: MusicService) -> Dict[str, str]:
        """
        Ensure every credential the current spec needs exists.

        Returns:
            Mapping of secret name -> "created" / "backfilled" / "unchanged"
        """
        results: Dict[str, str] = {}
        if not ms.database_enabled:
            return results

        root_password = ms.spec.database.root_password or None
        results[root_secret_name(ms)] = await self._ensure_secret(
            ms,
            root_secret_name(ms),
            {PASSWORD_KEY: lambda: root_password or generate_password(self.password_bytes)},
        )

        if replication_needed(ms):
            results[replication_secret_name(ms)] = await self._ensure_secret(
                ms,
                replication_secret_name(ms),
                {
                    USERNAME_KEY: lambda: REPLICATION_USERNAME,
                    PASSWORD_KEY: lambda: generate_password(self.password_bytes),
                },
            )
        return results

    async def cleanup(self, namespace: str, name: str) -> int:
        """
        Delete the credential Secrets of a parent being deleted.

        Takes the parent identity rather than the model so that cleanup also
        runs for a parent whose spec no longer validates.

        Returns:
            Number of Secrets deleted
        """
        deleted = 0
        for secret in (name + REPLICATION_SECRET_SUFFIX, name + ROOT_SECRET_SUFFIX):
            if await self.store.delete_if_exists(ResourceKind.SECRET.value, namespace, secret):
                deleted += 1
                logger.info("credential_deleted", secret=secret)
        return deleted

    async def _ensure_secret(self, ms: MusicService, name: str, generators: Dict[str, Any]) -> str:
        try:
            secret = await self.store.get(ResourceKind.SECRET.value, ms.namespace, name)
        except NotFoundError:
            body = {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": object_meta(ms, name, "db-credentials"),
                "type": "Opaque",
                "data": {key: _encode(generate()) for key, generate in sorted(generators.items())},
            }
            await self.store.create(ResourceKind.SECRET.value, body)
            logger.info("credential_created", secret=name, keys=sorted(generators))
            return "created"

        data = dict(secret.get("data") or {})
        missing = sorted(key for key in generators if not data.get(key))
        if not missing:
            return "unchanged"

        for key in missing:
            data[key] = _encode(generators[key]())
        secret["data"] = data
        await self.store.update(ResourceKind.SECRET.value, secret)
        logger.warning("credential_backfilled", secret=name, keys=missing)
        return "backfilled"
