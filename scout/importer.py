from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from scout.errors import ConfigurationError
from scout.models import Target, parse_target


def load_targets_file(path: Path) -> list[Target]:
    """
    Read target definitions from YAML (or JSON), either a bare list or a mapping
    with a ``targets`` list.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data: Any = yaml.safe_load(f) or []
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"cannot read {path}: {exc}") from exc

    if isinstance(data, dict):
        data = data.get("targets") or []
    if not isinstance(data, list):
        raise ConfigurationError("targets file must hold a list of targets")

    targets: list[Target] = []
    for idx, entry in enumerate(data):
        try:
            targets.append(parse_target(entry))
        except ConfigurationError as exc:
            raise ConfigurationError(f"targets[{idx}]: {exc}") from exc
    return targets
