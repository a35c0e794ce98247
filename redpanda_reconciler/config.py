"""
Configuration for Redpanda Reconciler.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Server (probes + metrics)
    host: str = "0.0.0.0"
    port: int = 8081
    debug: bool = False
    log_level: str = "info"

    # Kubernetes
    # Uses in-cluster config by default
    kubeconfig_path: Optional[str] = None
    # Empty means all namespaces
    watch_namespace: str = ""

    # Driver
    max_concurrent_reconciles: int = 2
    backoff_base_seconds: float = 0.005
    backoff_max_seconds: float = 300.0

    # PVC unbinder
    pvc_unbinder_enabled: bool = False
    # Time a Pod must be stuck in Pending before its volumes are released
    pvc_unbinder_timeout_seconds: int = 900
    # Label selector, e.g. "app.kubernetes.io/name=redpanda"
    pvc_unbinder_selector: Optional[str] = None
    pvc_unbinder_allow_rebinding: bool = False
    # Restrict the unbinder to Pods of a single Redpanda release
    pvc_unbinder_owner_namespace: Optional[str] = None
    pvc_unbinder_owner_name: Optional[str] = None

    # Redpanda cluster controller
    redpanda_controller_enabled: bool = True
    field_owner: str = "redpanda-operator"
    chart_dir: str = "/charts/redpanda/templates"
    chart_version: str = "5.9.4"
    chart_repository_url: str = "https://charts.redpanda.com/"
    deletion_poll_seconds: float = 5.0

    # Redpanda admin API
    admin_api_url_template: str = (
        "http://{name}.{namespace}.svc.cluster.local:9644"
    )
    admin_api_timeout_seconds: float = 10.0

    class Config:
        env_prefix = "REDPANDA_RECONCILER_"


settings = Settings()
