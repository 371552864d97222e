"""
Lookup of artifacts in the Freight being promoted.
"""
import logging
from typing import Any, Dict, List, Optional

from promoter.core.errors import ConfigurationError, TechnicalError
from promoter.schemas.freight import (
    FreightCollection,
    FreightOrigin,
    FreightReference,
    FreightRequest,
    Image,
    Warehouse,
)
from promoter.services.kube_client import ClusterClient
from promoter.services.step_registry import StepContext

logger = logging.getLogger(__name__)


class ImageFinder:
    """
    Finds container images in the Freight being promoted.

    When no origin is given for an image, it is inferred from the requested
    Freight: the one Warehouse subscribed to the image's repository.

    Example:
        finder = ImageFinder.from_step_context(step_ctx)
        image = await finder.find("ghcr.io/example/storefront")
    """

    def __init__(
        self,
        freight: Optional[List[FreightReference]] = None,
        freight_requests: Optional[List[FreightRequest]] = None,
        project: str = "",
        kargo_client: Optional[ClusterClient] = None,
    ):
        self.freight = freight or []
        self.freight_requests = freight_requests or []
        self.project = project
        self.kargo_client = kargo_client

    @classmethod
    def from_step_context(cls, step_ctx: StepContext) -> "ImageFinder":
        return cls(
            freight=FreightCollection.model_validate(step_ctx.freight or {}).references(),
            freight_requests=[
                FreightRequest.model_validate(req) for req in step_ctx.freight_requests
            ],
            project=step_ctx.project,
            kargo_client=step_ctx.kargo_client,
        )

    async def find(
        self, repo_url: str, origin: Optional[FreightOrigin] = None
    ) -> Optional[Image]:
        """
        Find the image from repo_url in the Freight from the desired origin.

        Returns:
            The image, or None if the Freight carries no such image

        Raises:
            ConfigurationError: If more than one requested Freight could
                provide the image and no origin was given
            TechnicalError: If a requested Warehouse could not be read
        """
        if origin is None:
            origin = await self._infer_origin(repo_url)
            if origin is None:
                return None

        for ref in self.freight:
            if not ref.origin.equals(origin):
                continue
            for image in ref.images:
                if image.repo_url == repo_url:
                    return image
        logger.debug(f"No image from {repo_url} in Freight from {origin}")
        return None

    async def _infer_origin(self, repo_url: str) -> Optional[FreightOrigin]:
        origin = None
        for req in self.freight_requests:
            warehouse = await self._get_warehouse(req.origin.name)
            if not warehouse.subscribes_to_image(repo_url):
                continue
            if origin is not None:
                raise ConfigurationError(
                    f"multiple requested Freight could potentially provide a container "
                    f"image from repository {repo_url}: please provide an origin "
                    f"manually to disambiguate"
                )
            origin = FreightOrigin(kind=warehouse.kind, name=warehouse.metadata.name)
        return origin

    async def _get_warehouse(self, name: str) -> Warehouse:
        if self.kargo_client is None:
            raise TechnicalError(
                f'cannot look up Warehouse "{name}": no Kargo client available'
            )
        try:
            obj: Optional[Dict[str, Any]] = await self.kargo_client.get(
                "Warehouse", self.project, name
            )
        except TechnicalError as e:
            raise TechnicalError(
                f'error getting Warehouse "{name}" in namespace "{self.project}": {e}'
            ) from e
        if obj is None:
            raise TechnicalError(
                f'Warehouse "{name}" not found in namespace "{self.project}"'
            )
        return Warehouse.model_validate(obj)
