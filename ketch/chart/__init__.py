"""Installing the chart that renders an App into kubernetes objects."""

from .base import ChartApplier, ChartConfig, chart_values, chart_config
from .helm import HelmChartApplier, HelmChartFactory

__all__ = [
    "ChartApplier",
    "ChartConfig",
    "chart_values",
    "chart_config",
    "HelmChartApplier",
    "HelmChartFactory",
]
