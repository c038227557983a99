from typing import Dict


class Labels:
    """Labels and annotation keys ketch puts on workloads and events.

    All keys live under the operator group, e.g. ``theketch.io/app-name``.
    """

    APP_NAME = "app-name"
    APP_PROCESS = "app-process"
    APP_DEPLOYMENT_VERSION = "app-deployment-version"

    _labels: Dict[str, str]

    def __init__(self, group: str, labels: Dict[str, str] = None) -> None:
        self.group = group
        self._labels = labels if labels else dict()

    def key(self, suffix: str) -> str:
        return f"{self.group}/{suffix}"

    def update(self, labels: Dict[str, str]) -> "Labels":
        self._labels.update(labels.copy())
        return self

    def as_dict(self) -> Dict[str, str]:
        """Return labels are dictionary."""
        return self._labels.copy()

    def as_str(self):
        """Return labels as comma separated string."""
        return ",".join([f"{k}={v}" for k, v in self._labels.items()])

    def include(self, suffix: str, value) -> "Labels":
        return self.update({self.key(suffix): str(value)})

    def include_app_name(self, name: str) -> "Labels":
        return self.include(self.APP_NAME, name)

    def include_app_process(self, process: str) -> "Labels":
        return self.include(self.APP_PROCESS, process)

    def include_deployment_version(self, version: int) -> "Labels":
        return self.include(self.APP_DEPLOYMENT_VERSION, version)

    def __str__(self):
        return f"Labels<{self._labels}>"

    @classmethod
    def pod_selector(cls, group: str, app_name: str, version: int) -> "Labels":
        """Labels selecting the pods of one deployment version of an app."""
        return cls(group).include_app_name(app_name).include_deployment_version(version)
