from .app_spec import (
    MetadataTemplateSchema,
    ProcessSpecSchema,
    RoutingSettingsSchema,
    DeploymentSpecSchema,
    CanarySpecSchema,
    AppSpecSchema,
)
from .framework_spec import FrameworkSpecSchema, FrameworkStatusSchema

__all__ = [
    "MetadataTemplateSchema",
    "ProcessSpecSchema",
    "RoutingSettingsSchema",
    "DeploymentSpecSchema",
    "CanarySpecSchema",
    "AppSpecSchema",
    "FrameworkSpecSchema",
    "FrameworkStatusSchema",
]
