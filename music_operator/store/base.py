"""
State store interface.

Objects are plain k8s-shaped dicts. Writes use optimistic concurrency on
metadata.resourceVersion: a write carrying a stale version raises
ConflictError and the caller re-fetches on its next pass.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from music_operator.exceptions import NotFoundError

Resource = Dict[str, Any]


class StateStore(ABC):
    """Get/Create/Update/Delete/List by (kind, namespace, name)."""

    @abstractmethod
    async def get(self, kind: str, namespace: str, name: str) -> Resource:
        """
        Fetch a live object.

        Raises:
            NotFoundError: If the object does not exist
        """

    @abstractmethod
    async def create(self, kind: str, body: Resource) -> Resource:
        """
        Create an object and return the stored copy.

        Raises:
            ConflictError: If an object with the same name already exists
        """

    @abstractmethod
    async def update(self, kind: str, body: Resource) -> Resource:
        """
        Replace an object's spec/metadata; status is left untouched.

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If metadata.resourceVersion is stale
        """

    @abstractmethod
    async def update_status(self, kind: str, body: Resource) -> Resource:
        """Replace only the status of an object."""

    @abstractmethod
    async def delete(self, kind: str, namespace: str, name: str) -> None:
        """
        Delete an object. Objects with finalizers only get a deletionTimestamp.

        Raises:
            NotFoundError: If the object does not exist
        """

    @abstractmethod
    async def list(
        self,
        kind: str,
        namespace: Optional[str],
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Resource]:
        """List objects of a kind, optionally filtered by namespace and labels."""

    async def get_optional(self, kind: str, namespace: str, name: str) -> Optional[Resource]:
        """get() that maps NotFound to None."""
        try:
            return await self.get(kind, namespace, name)
        except NotFoundError:
            return None

    async def delete_if_exists(self, kind: str, namespace: str, name: str) -> bool:
        try:
            await self.delete(kind, namespace, name)
        except NotFoundError:
            return False
        return True

    async def close(self) -> None:
        """Release client resources."""
