import logging
from collections import defaultdict

import mlflow

logger = logging.getLogger(__name__)


class Counters:
    """
    Named integer counters grouped like Hadoop job counters.

    When an mlflow run is active every update is also logged as a metric
    (named "<group>/<counter>", stepped by the superstep when given).
    """

    def __init__(self, log_to_mlflow: bool = True):
        self.log_to_mlflow = log_to_mlflow
        self._groups: defaultdict[str, dict[str, int]] = defaultdict(dict)

    def update_counter(self, group: str, name: str, value: int, step: int | None = None) -> None:
        self._groups[group][name] = int(value)
        logger.debug(f"counter {group}/{name}={value}")
        if self.log_to_mlflow and mlflow.active_run() is not None:
            mlflow.log_metric(_metric_key(group, name), float(value), step=step)

    def get(self, group: str, name: str, default: int | None = None) -> int | None:
        return self._groups.get(group, {}).get(name, default)

    def group(self, group: str) -> dict[str, int]:
        return dict(self._groups.get(group, {}))

    def as_dict(self) -> dict[str, dict[str, int]]:
        return {group: dict(values) for group, values in self._groups.items()}


def _metric_key(group: str, name: str) -> str:
    # mlflow only allows alphanumerics, _ - . / and spaces in metric names
    raw = f"{group}/{name}"
    return "".join(c if (c.isalnum() or c in "_-./ ") else "_" for c in raw)
