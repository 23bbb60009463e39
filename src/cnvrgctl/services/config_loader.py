"""Configuration loader for cnvrgctl."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from cnvrgctl.errors import CnvrgctlError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    DEFAULT_PATHS = (
        Path(".cnvrgctl.yml"),
        Path("~/.cnvrgctl.yaml"),
    )

    SUPPORTED_KEYS = {
        "namespace",
        "kubeconfig",
        "context",
        "verbose",
        "log_file",
        "manifest_file",
        "workloads",
        "scale_timeout",
        "tunnel_timeout",
    }

    def find_default(self) -> Optional[str]:
        for candidate in self.DEFAULT_PATHS:
            path = candidate.expanduser()
            if path.is_file():
                return str(path)
        return None

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        """Reads ``config_path``, or the first default file found when it is empty.

        An explicit path must exist; missing default files are not an error.
        """
        if not config_path:
            config_path = self.find_default()
            if not config_path:
                return {}

        path = Path(config_path).expanduser()
        if not path.exists():
            raise CnvrgctlError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise CnvrgctlError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise CnvrgctlError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise CnvrgctlError(f"Unknown configuration keys: {unknown_list}")

        workloads = parsed.get("workloads")
        if workloads is not None and (
            not isinstance(workloads, list) or not all(isinstance(item, str) for item in workloads)
        ):
            raise CnvrgctlError("Config key `workloads` must be a list of deployment names.")

        return parsed
