"""
Typed views over the Kargo Freight a promotion carries and the Warehouses
that produce it.
"""
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional, Dict


class KargoModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "allow",
    }


class FreightOrigin(KargoModel):
    kind: str = ""
    name: str = ""

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"

    def equals(self, other: Optional["FreightOrigin"]) -> bool:
        return other is not None and self.kind == other.kind and self.name == other.name


class GitCommit(KargoModel):
    repo_url: str = Field("", alias="repoURL")
    id: str = ""
    tag: str = ""
    branch: str = ""


class Image(KargoModel):
    repo_url: str = Field("", alias="repoURL")
    tag: str = ""
    digest: str = ""


class Chart(KargoModel):
    repo_url: str = Field("", alias="repoURL")
    name: str = ""
    version: str = ""


class FreightReference(KargoModel):
    name: str = ""
    origin: FreightOrigin = FreightOrigin()
    commits: List[GitCommit] = []
    images: List[Image] = []
    charts: List[Chart] = []


class FreightCollection(KargoModel):
    """Freight being promoted, keyed by origin ("Warehouse/<name>")."""
    id: str = ""
    items: Dict[str, FreightReference] = {}

    def references(self) -> List[FreightReference]:
        return [self.items[key] for key in sorted(self.items)]


class FreightRequest(KargoModel):
    origin: FreightOrigin


class ImageSubscription(KargoModel):
    repo_url: str = Field("", alias="repoURL")


class RepoSubscription(KargoModel):
    image: Optional[ImageSubscription] = None


class WarehouseMeta(KargoModel):
    name: str = ""
    namespace: str = ""


class WarehouseSpec(KargoModel):
    subscriptions: List[RepoSubscription] = []


class Warehouse(KargoModel):
    kind: str = "Warehouse"
    metadata: WarehouseMeta = WarehouseMeta()
    spec: WarehouseSpec = WarehouseSpec()

    def subscribes_to_image(self, repo_url: str) -> bool:
        return any(
            sub.image is not None and sub.image.repo_url == repo_url
            for sub in self.spec.subscriptions
        )
