"""
Cluster client used by step runners and the promotion engine.

The engine only depends on the ClusterClient and CredentialsDatabase
protocols. KubernetesClient is the httpx implementation that talks to the
Kubernetes REST API directly, with resources passed around as unstructured
dicts.
"""
import copy
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import httpx
from pydantic import BaseModel

from promoter.core.config import settings
from promoter.core.errors import NotFoundError, TechnicalError
from promoter.services.merge import create_merge_patch

logger = logging.getLogger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"

# kind -> (API group path, plural resource name, namespaced)
RESOURCES: Dict[str, Tuple[str, str, bool]] = {
    "Application": ("apis/argoproj.io/v1alpha1", "applications", True),
    "AppProject": ("apis/argoproj.io/v1alpha1", "appprojects", True),
    "Secret": ("api/v1", "secrets", True),
    "Event": ("api/v1", "events", True),
    "Project": ("apis/kargo.akuity.io/v1alpha1", "projects", False),
    "Warehouse": ("apis/kargo.akuity.io/v1alpha1", "warehouses", True),
}


class Credentials(BaseModel):
    username: str = ""
    password: str = ""
    ssh_private_key: str = ""


class CredentialsDatabase(Protocol):
    """Looks up repository credentials for a project."""

    async def get(
        self, project: str, cred_type: str, repo_url: str
    ) -> Optional[Credentials]:
        ...


class ClusterClient(Protocol):
    """Typed-by-kind access to cluster resources as unstructured dicts."""

    async def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        ...

    async def list(
        self, kind: str, namespace: str, label_selector: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        ...

    async def patch(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        ...

    async def create(self, kind: str, namespace: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...


class KubernetesClient:
    """Client for the Kubernetes REST API"""

    def __init__(
        self,
        base_url: str = None,
        token: str = None,
        verify: bool = None,
        timeout: float = None,
    ):
        self.base_url = (base_url or settings.KUBE_API_URL).rstrip("/")
        self.token = token if token is not None else _read_token()
        self.verify = settings.KUBE_VERIFY_SSL if verify is None else verify
        self.timeout = timeout or settings.KUBE_TIMEOUT_SECONDS
        self.headers = {"Accept": "application/json"}
        if self.token:
            self.headers["Authorization"] = f"Bearer {self.token}"

    def _url(self, kind: str, namespace: str, name: Optional[str] = None) -> str:
        if kind not in RESOURCES:
            raise ValueError(
                f"Unsupported resource kind: {kind}. "
                f"Supported kinds: {sorted(RESOURCES.keys())}"
            )
        group_path, plural, namespaced = RESOURCES[kind]
        url = f"{self.base_url}/{group_path}"
        if namespaced:
            url += f"/namespaces/{namespace}"
        url += f"/{plural}"
        if name:
            url += f"/{name}"
        return url

    async def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Get a single resource, or None if it does not exist"""
        async with httpx.AsyncClient(verify=self.verify) as client:
            try:
                response = await client.get(
                    self._url(kind, namespace, name),
                    headers=self.headers,
                    timeout=self.timeout,
                )
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as e:
                raise TechnicalError(
                    f"error getting {kind} {name!r} in namespace {namespace!r}: {e}"
                ) from e

    async def list(
        self, kind: str, namespace: str, label_selector: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """List resources in a namespace, optionally filtered by labels"""
        params = {}
        if label_selector:
            params["labelSelector"] = label_selector
        async with httpx.AsyncClient(verify=self.verify) as client:
            try:
                response = await client.get(
                    self._url(kind, namespace),
                    headers=self.headers,
                    params=params,
                    timeout=self.timeout,
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise TechnicalError(
                    f"error listing {kind} in namespace {namespace!r}: {e}"
                ) from e
            data = response.json()
            return data.get("items") or []

    async def patch(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply a JSON merge patch to a resource"""
        headers = {**self.headers, "Content-Type": MERGE_PATCH_CONTENT_TYPE}
        async with httpx.AsyncClient(verify=self.verify) as client:
            try:
                response = await client.patch(
                    self._url(kind, namespace, name),
                    headers=headers,
                    json=patch,
                    timeout=self.timeout,
                )
                if response.status_code == 404:
                    raise NotFoundError(kind, namespace, name)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as e:
                raise TechnicalError(
                    f"error patching {kind} {name!r} in namespace {namespace!r}: {e}"
                ) from e

    async def create(self, kind: str, namespace: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Create a resource"""
        async with httpx.AsyncClient(verify=self.verify) as client:
            try:
                response = await client.post(
                    self._url(kind, namespace),
                    headers=self.headers,
                    json=obj,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as e:
                raise TechnicalError(
                    f"error creating {kind} in namespace {namespace!r}: {e}"
                ) from e


def _read_token() -> str:
    if settings.KUBE_TOKEN:
        return settings.KUBE_TOKEN
    token_file = settings.KUBE_TOKEN_FILE
    if token_file and os.path.exists(token_file):
        with open(token_file) as f:
            return f.read().strip()
    return ""


async def patch_unstructured(
    client: ClusterClient,
    kind: str,
    namespace: str,
    name: str,
    modify: Callable[[Dict[str, Any]], None],
) -> Dict[str, Any]:
    """Modify the live copy of a resource and send only the difference.

    The live object is fetched, a copy of it is handed to ``modify`` which
    edits it in place, and a JSON merge patch between the live and the
    modified object is sent. Fields ``modify`` does not touch are left out
    of the patch, so unrelated concurrent edits are not clobbered.

    Raises:
        NotFoundError: If the resource does not exist
    """
    live = await client.get(kind, namespace, name)
    if live is None:
        raise NotFoundError(kind, namespace, name)
    modified = copy.deepcopy(live)
    modify(modified)
    patch = create_merge_patch(live, modified)
    if not patch:
        logger.debug(f"No changes to patch for {kind} {namespace}/{name}")
        return live
    return await client.patch(kind, namespace, name, patch)
