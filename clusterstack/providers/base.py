"""Interfaces for the external collaborators the engine drives."""
from typing import Any, Dict, List, Protocol, Tuple


class ProvisioningApi(Protocol):
    """Create/update/delete/describe capability of a cloud provider."""

    def create(self, kind: str, config: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Create a resource; return its identity and provider-assigned attributes."""
        ...

    def update(self, identity: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a new configuration in place; return the refreshed attributes."""
        ...

    def delete(self, identity: str) -> None:
        """
        Delete a resource, or raise ResourceNotFoundError.

        The engine deletes dependents before what they depend on: orphans
        first, then the prior resources of every replaced node in reverse
        realization order, all before anything new is created. A dependent
        that is updated in place still points at the old resource when that
        is deleted, so a provider must accept deleting a resource that is
        only referenced by configuration about to be updated.
        """
        ...

    def describe(self, identity: str) -> Dict[str, Any]:
        """Return current attributes, or raise ResourceNotFoundError."""
        ...


class SecretGenerator(Protocol):
    def generate(
        self,
        template: Dict[str, str],
        excluded_classes: List[str],
        fields: List[str],
        length: int = 32,
        exclude_characters: str = "",
    ) -> Dict[str, str]:
        """Return ``template`` plus a generated value for each name in ``fields``."""
        ...
