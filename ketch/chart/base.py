from typing import Any, Dict, NamedTuple, Optional
from ketch.types.schemas import DeploymentSpecSchema


class ChartConfig(NamedTuple):
    app_name: str
    #: Version of the chart to install, None for the local chart as is.
    chart_version: Optional[str] = None
    #: Version of the app recorded on the release.
    app_version: Optional[str] = None


class ChartApplier:
    """Installs, upgrades and uninstalls the chart of an app in one namespace."""

    namespace: str

    async def update_chart(self, values: Dict[str, Any], config: ChartConfig) -> Any:
        """Install or upgrade the release of `config.app_name`.

        Returns:
            A handle describing the release.
        """
        raise NotImplementedError()

    async def delete_chart(self, app_name: str) -> None:
        """Uninstall the release of the app. Uninstalling a missing release is a no-op."""
        raise NotImplementedError()


def chart_values(app, framework, group: str) -> Dict[str, Any]:
    """Values rendered by the app chart."""
    schema = DeploymentSpecSchema(many=True)
    return {
        "app": {
            "name": app.name,
            "group": group,
            "framework": framework.name,
            "namespace": framework.namespace,
            "deployments": schema.dump(app.deployments),
            "deploymentsCount": app.deployments_count,
        }
    }


def chart_config(app) -> ChartConfig:
    latest = app.latest_deployment
    return ChartConfig(
        app_name=app.name,
        app_version=str(latest.version) if latest else None,
    )
