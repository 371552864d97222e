"""
Testkit package for promoter tests.

Provides HTTP-boundary mocking, an in-memory cluster, factories and golden
resource fixtures.
"""
from .factories.argocd_factory import (
    ArgoCDResourceFactory,
    KargoResourceFactory,
    KubeResourceFactory,
)
from .fake_cluster import FakeClusterClient, apply_merge_patch
from .http_mocks.kube_mock import KubeHttpMock

__all__ = [
    "ArgoCDResourceFactory",
    "KargoResourceFactory",
    "KubeResourceFactory",
    "FakeClusterClient",
    "apply_merge_patch",
    "KubeHttpMock",
]
