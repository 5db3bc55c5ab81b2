"""Configuration sub-package.

Provides settings loading and typed configuration access.

Quick usage::

    from node_motion.config import get_analysis_config

    cfg = get_analysis_config("project.yaml")
    print(cfg.estimation.methods)
"""

from __future__ import annotations

from node_motion.config.settings import (
    DEFAULT_CONFIG_PATH,
    get_analysis_config,
    get_config,
    get_typed_config,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "get_analysis_config",
    "get_config",
    "get_typed_config",
]
