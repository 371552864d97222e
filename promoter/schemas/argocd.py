"""
Typed views over Argo CD resources and argocd-update step configuration.

These mirror the Kubernetes JSON representation (camelCase keys). Unknown
fields are preserved so that a model can be dumped back to an unstructured
object without losing data.
"""
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum

from promoter.schemas.freight import FreightOrigin


ANNOTATION_KEY_REFRESH = "argocd.argoproj.io/refresh"
REFRESH_TYPE_HARD = "hard"
EVENT_REASON_OPERATION_STARTED = "OperationStarted"
APPLICATION_API_VERSION = "argoproj.io/v1alpha1"


class ArgoCDModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "allow",
    }

    def to_object(self) -> Dict[str, Any]:
        """Dump to an unstructured object, omitting empty values."""
        return self.model_dump(by_alias=True, exclude_defaults=True, mode="json")


class OperationPhase(str, Enum):
    RUNNING = "Running"
    TERMINATING = "Terminating"
    FAILED = "Failed"
    ERROR = "Error"
    SUCCEEDED = "Succeeded"

    def completed(self) -> bool:
        return self in (OperationPhase.FAILED, OperationPhase.ERROR, OperationPhase.SUCCEEDED)

    def failed(self) -> bool:
        return self in (OperationPhase.FAILED, OperationPhase.ERROR)


class ObjectMeta(ArgoCDModel):
    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}


class HelmParameter(ArgoCDModel):
    name: str
    value: str = ""


class ApplicationSourceHelm(ArgoCDModel):
    parameters: List[HelmParameter] = []


class ApplicationSourceKustomize(ArgoCDModel):
    images: List[str] = []


class ApplicationSource(ArgoCDModel):
    repo_url: str = Field("", alias="repoURL")
    chart: str = ""
    path: str = ""
    target_revision: str = ""
    helm: Optional[ApplicationSourceHelm] = None
    kustomize: Optional[ApplicationSourceKustomize] = None


class ApplicationDestination(ArgoCDModel):
    server: str = ""
    namespace: str = ""
    name: str = ""


class SyncPolicy(ArgoCDModel):
    automated: Optional[Dict[str, Any]] = None
    sync_options: List[str] = []
    retry: Optional[Dict[str, Any]] = None


class ApplicationSpec(ArgoCDModel):
    project: str = ""
    source: Optional[ApplicationSource] = None
    sources: List[ApplicationSource] = []
    destination: ApplicationDestination = ApplicationDestination()
    sync_policy: Optional[SyncPolicy] = None


class OperationInitiator(ArgoCDModel):
    username: str = ""
    automated: bool = False


class Info(ArgoCDModel):
    name: str
    value: str = ""


class SyncOperation(ArgoCDModel):
    revisions: List[str] = []
    sync_options: List[str] = []


class Operation(ArgoCDModel):
    initiated_by: OperationInitiator = OperationInitiator()
    info: List[Info] = []
    sync: Optional[SyncOperation] = None
    retry: Optional[Dict[str, Any]] = None


class SyncOperationResult(ArgoCDModel):
    revision: str = ""
    revisions: List[str] = []
    source: Optional[ApplicationSource] = None
    sources: List[ApplicationSource] = []


class OperationState(ArgoCDModel):
    operation: Operation = Operation()
    phase: OperationPhase
    message: str = ""
    sync_result: Optional[SyncOperationResult] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class HealthStatus(ArgoCDModel):
    status: str = ""
    message: str = ""


class SyncStatus(ArgoCDModel):
    status: str = ""
    revision: str = ""
    revisions: List[str] = []


class ApplicationCondition(ArgoCDModel):
    type: str
    message: str = ""


class ApplicationStatus(ArgoCDModel):
    health: HealthStatus = HealthStatus()
    sync: SyncStatus = SyncStatus()
    conditions: List[ApplicationCondition] = []
    operation_state: Optional[OperationState] = None


class Application(ArgoCDModel):
    api_version: str = APPLICATION_API_VERSION
    kind: str = "Application"
    metadata: ObjectMeta = ObjectMeta()
    spec: ApplicationSpec = ApplicationSpec()
    operation: Optional[Operation] = None
    status: ApplicationStatus = ApplicationStatus()

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def current_sources(self) -> List[ApplicationSource]:
        """Sources of a multi-source app, or the single legacy source."""
        if self.spec.sources:
            return list(self.spec.sources)
        if self.spec.source is not None:
            return [self.spec.source]
        return []


class SyncWindow(ArgoCDModel):
    kind: str = ""
    schedule: str = ""
    duration: str = ""
    applications: List[str] = []
    namespaces: List[str] = []
    clusters: List[str] = []
    manual_sync: bool = False
    time_zone: str = ""


class AppProjectSpec(ArgoCDModel):
    sync_windows: List[SyncWindow] = []


class AppProject(ArgoCDModel):
    metadata: ObjectMeta = ObjectMeta()
    spec: AppProjectSpec = AppProjectSpec()


# argocd-update step configuration


class SelectorRequirement(ArgoCDModel):
    key: str
    operator: str
    values: List[str] = []


class ArgoCDAppSelector(ArgoCDModel):
    match_labels: Dict[str, str] = {}
    match_expressions: List[SelectorRequirement] = []


class HelmImageValue(str, Enum):
    """Which part of a Freight image a Helm parameter is set to."""
    IMAGE_AND_TAG = "ImageAndTag"
    TAG = "Tag"
    IMAGE_AND_DIGEST = "ImageAndDigest"
    DIGEST = "Digest"


class HelmImageUpdate(ArgoCDModel):
    key: str
    repo_url: str = Field(..., alias="repoURL")
    value: HelmImageValue
    from_origin: Optional[FreightOrigin] = None


class HelmImageUpdates(ArgoCDModel):
    images: List[HelmImageUpdate] = []


class KustomizeImageUpdate(ArgoCDModel):
    repo_url: str = Field(..., alias="repoURL")
    use_digest: bool = False
    new_name: str = ""
    from_origin: Optional[FreightOrigin] = None


class KustomizeImageUpdates(ArgoCDModel):
    images: List[KustomizeImageUpdate] = []


class ArgoCDAppSourceUpdate(ArgoCDModel):
    repo_url: str = Field(..., alias="repoURL")
    chart: str = ""
    desired_revision: str = ""
    desired_commit_from_step: str = ""
    update_target_revision: bool = False
    from_origin: Optional[FreightOrigin] = None
    helm: Optional[HelmImageUpdates] = None
    kustomize: Optional[KustomizeImageUpdates] = None


class ArgoCDAppUpdate(ArgoCDModel):
    name: str = ""
    namespace: str = ""
    selector: Optional[ArgoCDAppSelector] = None
    from_origin: Optional[FreightOrigin] = None
    sources: List[ArgoCDAppSourceUpdate] = []


class ArgoCDUpdateConfig(ArgoCDModel):
    apps: List[ArgoCDAppUpdate]
    from_origin: Optional[FreightOrigin] = None
