import asyncio
import json
import logging
import os
import tempfile
from typing import Any, Dict, List, Optional
from ketch.chart.base import ChartApplier, ChartConfig
from ketch.types.settings import Settings
from ketch.utils.errors import ChartError

_RELEASE_NOT_FOUND = "not found"


class HelmChartApplier(ChartApplier):
    """Chart applier running the helm CLI.

    Every update runs `helm upgrade --install`, so a release changed or
    removed outside the operator is restored on the next pass.
    """

    def __init__(self, namespace: str, conf: Settings, logger: logging.Logger = None) -> None:
        self.namespace = namespace
        self.conf = conf
        self.logger = logger or logging.getLogger(__name__)

    async def update_chart(self, values: Dict[str, Any], config: ChartConfig) -> Dict[str, Any]:
        fd, path = tempfile.mkstemp(prefix=f"{config.app_name}-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(values, f)
            args = [
                "upgrade",
                config.app_name,
                self.conf.chart_path,
                "--install",
                "--namespace",
                self.namespace,
                "--values",
                path,
                "--output",
                "json",
            ]
            if config.chart_version:
                args += ["--version", config.chart_version]
            stdout = await self._run(args)
        finally:
            os.unlink(path)

        try:
            return json.loads(stdout) if stdout.strip() else {}
        except json.JSONDecodeError:
            return {"name": config.app_name, "namespace": self.namespace}

    async def delete_chart(self, app_name: str) -> None:
        try:
            await self._run(["uninstall", app_name, "--namespace", self.namespace])
        except ChartError as e:
            if _RELEASE_NOT_FOUND not in str(e):
                raise
            self.logger.info(f"Release {app_name} not found in {self.namespace}, nothing to uninstall")

    async def _run(self, args: List[str]) -> str:
        cmd = [self.conf.helm_binary, *args]
        self.logger.debug(f"Running {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ChartError(f"failed to run {self.conf.helm_binary}: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.conf.helm_timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ChartError(
                f"helm {args[0]} timed out after {self.conf.helm_timeout_seconds}s"
            )
        if proc.returncode != 0:
            raise ChartError(
                f"helm {args[0]} failed: {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace")


class HelmChartFactory:
    """Hands out one HelmChartApplier per namespace."""

    def __init__(self, conf: Settings, logger: logging.Logger = None) -> None:
        self.conf = conf
        self.logger = logger
        self._appliers: Dict[str, HelmChartApplier] = {}

    def __call__(self, namespace: str) -> HelmChartApplier:
        applier: Optional[HelmChartApplier] = self._appliers.get(namespace)
        if applier is None:
            applier = self._appliers[namespace] = HelmChartApplier(
                namespace, self.conf, logger=self.logger
            )
        return applier
