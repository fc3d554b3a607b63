# app/services/catalog.py
"""
Read-only view of the resource catalog.

Resources are owned by an external catalog; this module only resolves ids
to base URLs and fetches a resource's x402 discovery document.
"""
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from urllib.parse import urljoin

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from x402.types import PaymentRequirements

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/x402"


class Resource(BaseModel):
    """A metered resource registered in the catalog."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    base_url: str
    well_known_url: Optional[str] = None
    payment_address: Optional[str] = None
    price_hint: Optional[float] = None
    active: bool = True


class DiscoveryDocument(BaseModel):
    """The /.well-known/x402 document describing accepted payments."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    x402_version: int
    accepts: List[PaymentRequirements] = Field(default_factory=list)


class ResourceCatalog(ABC):
    @abstractmethod
    def get(self, resource_id: str) -> Optional[Resource]:
        """Return the resource, or None if unknown."""

    @abstractmethod
    def list_resources(self) -> List[Resource]:
        """All resources, active or not."""

    def resolve(self, resource_id: str) -> Optional[Resource]:
        """Return the resource only if it exists and is active."""
        resource = self.get(resource_id)
        if resource is None or not resource.active:
            return None
        return resource

    def list_active(self) -> List[Resource]:
        return [resource for resource in self.list_resources() if resource.active]


class InMemoryResourceCatalog(ResourceCatalog):
    def __init__(self, resources: Iterable[Resource] = ()):
        self._resources: Dict[str, Resource] = {resource.id: resource for resource in resources}

    def add(self, resource: Resource) -> None:
        self._resources[resource.id] = resource

    def get(self, resource_id: str) -> Optional[Resource]:
        return self._resources.get(resource_id)

    def list_resources(self) -> List[Resource]:
        return list(self._resources.values())


def load_catalog_file(path: str) -> InMemoryResourceCatalog:
    """
    Load resources from a JSON file holding a list of resource objects
    (or {"resources": [...]}).

    Invalid entries are skipped with a warning.
    """
    with open(Path(path), "r") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("resources", [])
    if not isinstance(data, list):
        raise ValueError(f"Resource catalog {path} must contain a list of resources")

    resources = []
    for entry in data:
        try:
            resources.append(Resource.model_validate(entry))
        except ValidationError as e:
            logger.warning(f"Skipping invalid resource entry in {path}: {e}")
            continue

    logger.info(f"Loaded {len(resources)} resources from {path}")
    return InMemoryResourceCatalog(resources)


def get_discovery_url(resource: Resource) -> str:
    return resource.well_known_url or urljoin(resource.base_url, WELL_KNOWN_PATH)


def fetch_discovery_document(resource: Resource, timeout: float = 10) -> DiscoveryDocument:
    """
    Fetch and parse a resource's x402 discovery document.

    Raises:
        RequestException: If the HTTP request fails
        ValueError: If the document is malformed
    """
    url = get_discovery_url(resource)
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        return DiscoveryDocument.model_validate(response.json())
    except requests.exceptions.RequestException as e:
        logger.error(f"Error fetching discovery document ({url}): {e}")
        raise
    except (ValueError, ValidationError) as e:
        logger.error(f"Error parsing discovery document ({url}): {e}")
        raise ValueError(f"Could not parse discovery document: {e}") from e
