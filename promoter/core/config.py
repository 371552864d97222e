from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # API Configuration
    API_V1_PREFIX: str = "/api/v1"
    PROJECT_NAME: str = "Promoter"
    LOG_LEVEL: str = "INFO"

    # Kubernetes API
    KUBE_API_URL: str = "https://kubernetes.default.svc"
    KUBE_TOKEN: str = ""
    KUBE_TOKEN_FILE: Optional[str] = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    KUBE_VERIFY_SSL: bool = True
    KUBE_TIMEOUT_SECONDS: float = 30.0

    # Argo CD Integration
    ALLOW_ARGOCD_CLIENT: bool = True
    ARGOCD_NAMESPACE: str = "argocd"
    OPERATION_INITIATOR: str = "kargo-controller"
    ARGOCD_UPDATE_TIMEOUT_SECONDS: int = 300
    ARGOCD_RETRY_AFTER_SECONDS: int = 30

    # Health checks
    HEALTH_COOLDOWN_SECONDS: float = 10.0

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
