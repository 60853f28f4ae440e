# Module: platform_utils
# License: MIT (WalVerse project)
# Description: Device detection, configuration loading and logging setup for the try-on pipeline.
# Platform: Both
# Dependencies: torch, yaml, os, pathlib

"""
Platform Utilities
==================
Detects the inference device, loads the YAML configuration and sets up
logging. All other modules import from here.
"""

import logging
import os
import re
from pathlib import Path
from typing import Dict, Optional, Union

import yaml

logger = logging.getLogger("walverse.platform")

_ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "configs" / "tryon_config.yaml"


def detect_gpu_info() -> Dict[str, object]:
    """
    Detect GPU information used to pick the inference device.

    Returns:
        dict: GPU metadata with keys:
            - available (bool)
            - name (str)
            - total_memory_gb (float)
            - is_rocm (bool)
    """
    info = {
        "available": False,
        "name": "CPU",
        "total_memory_gb": 0.0,
        "is_rocm": False,
    }

    try:
        import torch
        if not torch.cuda.is_available():
            logger.debug("No GPU detected. Inference runs on CPU.")
            return info

        info["available"] = True
        info["name"] = torch.cuda.get_device_name(0)
        props = torch.cuda.get_device_properties(0)
        info["total_memory_gb"] = round(props.total_memory / (1024 ** 3), 2)
        info["is_rocm"] = hasattr(torch.version, "hip") and torch.version.hip is not None

        logger.info(
            "GPU: %s | Memory: %.1f GB | ROCm: %s",
            info["name"],
            info["total_memory_gb"],
            info["is_rocm"],
        )

    except ImportError:
        logger.warning("PyTorch not installed. GPU detection unavailable.")

    return info


def resolve_device(device: Optional[str] = None) -> str:
    """
    Resolve the configured device string.

    Args:
        device: 'auto', 'cpu', 'cuda' or 'cuda:N'. None behaves like 'auto'.

    Returns:
        str: A concrete torch device string.
    """
    if device and device != "auto":
        return device
    return "cuda:0" if detect_gpu_info()["available"] else "cpu"


def load_config(config_path: Optional[Union[str, Path]] = None) -> dict:
    """
    Load the try-on configuration YAML file with environment variable expansion.

    Args:
        config_path: Path to the YAML config file. If None, uses WALVERSE_CONFIG
            or the bundled configs/tryon_config.yaml.

    Returns:
        dict: Parsed configuration.

    Raises:
        FileNotFoundError: If the config file does not exist.
    """
    if config_path is None:
        config_path = os.environ.get("WALVERSE_CONFIG", DEFAULT_CONFIG_PATH)

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        raw = f.read()

    # Expand ${VAR} references; unset variables become empty strings
    raw = _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), raw)

    config = yaml.safe_load(raw) or {}
    logger.debug("Loaded config from %s", config_path)
    return config


def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the try-on pipeline scripts.

    Args:
        level: Logging level string (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("walverse").setLevel(log_level)
