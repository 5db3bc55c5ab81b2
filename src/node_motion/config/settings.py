"""Settings module -- single entry point for analysis configuration.

:func:`get_config` returns the merged configuration dictionary.  It loads
the ``default.yaml`` shipped with this package, overlays the file named by
the ``NMA_CONFIG`` environment variable when set, and finally applies any
``NMA_`` prefixed environment variable overrides.
"""

from __future__ import annotations

import functools
import os
from pathlib import Path
from typing import Any

from node_motion.domain.models import AnalysisConfig, AppConfig

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "default.yaml"

_ENV_PREFIX = "NMA_"
_OVERLAY_ENV = "NMA_CONFIG"


def get_typed_config(overlay_path: str | Path | None = None) -> AppConfig:
    """Return the :class:`AppConfig` wrapper for typed access.

    Resolution order:

    1. packaged ``default.yaml``
    2. *overlay_path*, or the file named by ``NMA_CONFIG``
    3. Environment variables with ``NMA_`` prefix

    Parameters
    ----------
    overlay_path:
        Optional project-specific YAML file merged over the defaults.

    Returns
    -------
    AppConfig
        Frozen configuration object.
    """
    if overlay_path is None:
        overlay_path = os.environ.get(_OVERLAY_ENV) or None

    return AppConfig.load(
        default_path=DEFAULT_CONFIG_PATH,
        overlay_path=overlay_path,
        env_prefix=_ENV_PREFIX,
    )


@functools.lru_cache(maxsize=1)
def get_config() -> dict[str, Any]:
    """Return the fully merged configuration dictionary.

    The result is cached so that repeated calls within the same process are
    essentially free.
    """
    return get_typed_config().data


def get_analysis_config(overlay_path: str | Path | None = None) -> AnalysisConfig:
    """Return the typed :class:`AnalysisConfig` for a batch run.

    Without *overlay_path* the cached :func:`get_config` tree is used.
    """
    if overlay_path is None:
        return AnalysisConfig.from_mapping(get_config())
    return get_typed_config(overlay_path).analysis()
