"""Pipeline configuration loaded from schemas/pipeline_config.yaml."""
import copy
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

CONFIG_PATH = Path(__file__).parent.parent / "schemas" / "pipeline_config.yaml"


@lru_cache(maxsize=4)
def _load(path: str) -> Dict[str, Any]:
    with open(path) as f:
        return yaml.safe_load(f)


def load_pipeline_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the pipeline configuration.

    Args:
        path: Alternate YAML file (defaults to the bundled config)

    Returns:
        A fresh copy of the parsed config, safe for callers to modify
    """
    return copy.deepcopy(_load(str(path or CONFIG_PATH)))


def gate_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return (config or load_pipeline_config())["gates"]


def ocr_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return (config or load_pipeline_config())["ocr"]


def ai_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return (config or load_pipeline_config())["ai"]


def confidence_weights(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return (config or load_pipeline_config())["confidence"]
