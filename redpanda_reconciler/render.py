"""
Chart rendering adapter.

The reconciler treats rendering as an opaque function of
``(namespace, release_name, values)``. ``TemplateRenderer`` is the default
implementation: a directory of Jinja2-templated YAML manifests.
"""

from pathlib import Path
from typing import Any, Dict, List, Protocol

import structlog
import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined

logger = structlog.get_logger(__name__)


class Renderer(Protocol):
    def __call__(
        self, namespace: str, release_name: str, values: Dict[str, Any]
    ) -> List[Dict[str, Any]]: ...


class TemplateRenderer:
    """Render every ``*.yaml`` template in ``chart_dir``, in file-name order."""

    def __init__(self, chart_dir: str):
        self.chart_dir = Path(chart_dir)
        self._env = Environment(
            loader=FileSystemLoader(str(self.chart_dir)),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def __call__(
        self, namespace: str, release_name: str, values: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        context = {
            "Release": {
                "Name": release_name,
                "Namespace": namespace,
                "Service": "Helm",
            },
            "Values": values,
        }

        objects: List[Dict[str, Any]] = []
        for path in sorted(self.chart_dir.glob("*.yaml")):
            text = self._env.get_template(path.name).render(**context)
            for doc in yaml.safe_load_all(text):
                if not doc:
                    continue
                if not isinstance(doc, dict) or "kind" not in doc:
                    raise ValueError(f"{path.name}: rendered document is not an object")
                objects.append(doc)

        logger.debug(
            "Rendered chart",
            chart_dir=str(self.chart_dir),
            release=release_name,
            objects=len(objects),
        )
        return objects
