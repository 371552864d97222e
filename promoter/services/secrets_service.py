"""
Loads the generic Secrets of a project for use in step configuration.
"""
import base64
import logging
from typing import Any, Dict, Optional

from promoter.core.errors import TechnicalError
from promoter.services.kube_client import ClusterClient

logger = logging.getLogger(__name__)

CREDENTIAL_TYPE_LABEL_KEY = "kargo.akuity.io/cred-type"
CREDENTIAL_TYPE_GENERIC = "generic"
# Older projects mark their secrets with this label instead
PROJECT_SECRET_LABEL_KEY = "kargo.akuity.io/project-secret"


async def load_project_secrets(
    client: Optional[ClusterClient], project: str
) -> Dict[str, Dict[str, str]]:
    """Return the project's generic Secrets keyed by name.

    Each value maps a Secret data key to its decoded string value.

    Args:
        client: Cluster client, or None when no cluster access is configured
        project: Project name, which is also its namespace

    Returns:
        Mapping of Secret name to Secret data

    Raises:
        TechnicalError: If the Secrets could not be listed
    """
    if client is None:
        return {}

    selectors = [
        f"{CREDENTIAL_TYPE_LABEL_KEY}={CREDENTIAL_TYPE_GENERIC}",
        f"{PROJECT_SECRET_LABEL_KEY}=true",
    ]
    found = []
    for selector in selectors:
        try:
            found.extend(await client.list("Secret", project, label_selector=selector))
        except TechnicalError as e:
            raise TechnicalError(f"error listing Secrets for Project {project!r}: {e}") from e

    secrets: Dict[str, Dict[str, str]] = {}
    for secret in sorted(found, key=lambda s: s.get("metadata", {}).get("name", "")):
        name = secret.get("metadata", {}).get("name", "")
        if not name or name in secrets:
            continue
        secrets[name] = _secret_data(secret)
    logger.debug(f"Loaded {len(secrets)} secrets for project {project}")
    return secrets


def _secret_data(secret: Dict[str, Any]) -> Dict[str, str]:
    data = {}
    for key, value in (secret.get("data") or {}).items():
        data[key] = base64.b64decode(value).decode("utf-8")
    for key, value in (secret.get("stringData") or {}).items():
        data[key] = value
    return data
