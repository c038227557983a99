from .app_spec import (
    MetadataTemplate,
    ProcessSpec,
    RoutingSettings,
    DeploymentSpec,
    CanarySpec,
    AppSpec,
)
from .framework_spec import FrameworkSpec, FrameworkStatus

__all__ = [
    "MetadataTemplate",
    "ProcessSpec",
    "RoutingSettings",
    "DeploymentSpec",
    "CanarySpec",
    "AppSpec",
    "FrameworkSpec",
    "FrameworkStatus",
]
