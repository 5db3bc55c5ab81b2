"""Observation table loading and validation.

Reads the delimited node-position table, checks its shape, strips the
subject-scan qualifier from node ids, maps location codes and phase labels
onto the configured levels, and converts units (cm -> mm for shifts,
percent -> fraction for bladder volumes).  Any deviation from the expected
shape raises :class:`~node_motion.domain.errors.DataShapeError`.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

import numpy as np
import pandas as pd

from node_motion.domain.errors import DataShapeError
from node_motion.domain.models import AnalysisConfig

logger = logging.getLogger(__name__)

SUBJECT = "subject"
NODE = "node"
NODE_KEY = "node_key"
PHASE = "phase"
LOCATION = "location"
BLADDER_COLUMNS: tuple[str, ...] = ("bladder_baseline", "bladder_relative")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_observations(
    path: str | Path,
    config: AnalysisConfig | None = None,
) -> pd.DataFrame:
    """Read and prepare the observation table at *path*.

    Parameters
    ----------
    path:
        Delimited text file with one row per node per imaging session.
    config:
        Column names, units and category levels.  Defaults to
        :class:`AnalysisConfig` defaults.

    Returns
    -------
    pd.DataFrame
        Canonical observation frame, see :func:`prepare_observations`.
    """
    cfg = config or AnalysisConfig()
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Observation table not found: {path}")

    raw = pd.read_csv(
        path, sep=cfg.delimiter, decimal=cfg.decimal,
        dtype=str, keep_default_na=True, skipinitialspace=True,
    )
    logger.info("Read %d rows x %d columns from %s", len(raw), raw.shape[1], path)
    return prepare_observations(raw, cfg)


def prepare_observations(
    raw: pd.DataFrame,
    config: AnalysisConfig | None = None,
) -> pd.DataFrame:
    """Validate a raw table and convert it to the canonical frame.

    The returned frame has columns ``subject``, ``node``, ``node_key``,
    ``phase``, ``location``, the six shift columns (``bone_x`` ...
    ``tumor_z``, mm) and the two bladder columns (fractions).  ``location``
    and ``phase`` are ordered categoricals with the configured reference
    level first.

    Raises
    ------
    DataShapeError
        On missing columns, unparseable node ids, unknown category levels,
        non-numeric measurements, or a node recorded at several locations.
    """
    cfg = config or AnalysisConfig()
    columns = cfg.columns

    missing = [raw_name for raw_name in columns.values() if raw_name not in raw.columns]
    if missing:
        raise DataShapeError(
            f"Missing required columns: {', '.join(missing)} "
            f"(found: {', '.join(map(str, raw.columns))})"
        )

    frame = raw[list(columns.values())].rename(
        columns={v: k for k, v in columns.items()}
    ).copy()

    frame[SUBJECT] = _clean_labels(frame[SUBJECT], SUBJECT)
    frame[NODE] = _strip_node_qualifier(frame[NODE], cfg.node_pattern)
    frame[NODE_KEY] = frame[SUBJECT] + "/" + frame[NODE]
    frame[LOCATION] = _map_locations(frame[LOCATION], cfg)
    frame[PHASE] = _map_phases(frame[PHASE], cfg)

    for col in cfg.shift_columns:
        frame[col] = _to_numeric(frame[col], col, cfg.decimal) * cfg.shift_scale
    for col in BLADDER_COLUMNS:
        frame[col] = _to_numeric(frame[col], col, cfg.decimal) * cfg.bladder_scale

    _check_node_locations(frame)

    ordered = [SUBJECT, NODE, NODE_KEY, PHASE, LOCATION,
               *cfg.shift_columns, *BLADDER_COLUMNS]
    frame = frame[ordered].reset_index(drop=True)
    logger.info(
        "Prepared %d observations: %d subjects, %d nodes",
        len(frame), frame[SUBJECT].nunique(), frame[NODE_KEY].nunique(),
    )
    return frame


def subset_for(data: pd.DataFrame, location: str | None) -> pd.DataFrame:
    """Return the rows for *location*, or all rows when it is ``None``."""
    if location is None:
        return data
    return data[data[LOCATION] == location]


def stratify_by_location(
    data: pd.DataFrame,
    locations: tuple[str, ...] | None = None,
) -> dict[str, pd.DataFrame]:
    """Split the frame into one subset per location.

    Every row lands in exactly one stratum, so the stratum sizes add up to
    ``len(data)``.  Locations listed but absent from the data map to empty
    frames.
    """
    if locations is None:
        if isinstance(data[LOCATION].dtype, pd.CategoricalDtype):
            locations = tuple(data[LOCATION].cat.categories)
        else:
            locations = tuple(pd.unique(data[LOCATION]))
    strata = {loc: subset_for(data, loc) for loc in locations}
    counted = sum(len(s) for s in strata.values())
    if counted != len(data):
        raise DataShapeError(
            f"Location strata cover {counted} of {len(data)} observations; "
            "some rows carry a location outside the configured set"
        )
    return strata


def observation_counts(data: pd.DataFrame) -> dict[str, int]:
    """Observation, subject and node counts for a frame."""
    return {
        "n_obs": int(len(data)),
        "n_subjects": int(data[SUBJECT].nunique()),
        "n_nodes": int(data[NODE_KEY].nunique()),
    }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _as_text(values: pd.Series) -> pd.Series:
    """Stringify a column, mapping missing values to ``""``."""
    return values.where(values.notna(), "").astype(str).str.strip()


def _clean_labels(values: pd.Series, name: str) -> pd.Series:
    labels = _as_text(values)
    empty = (labels == "").to_numpy()
    if empty.any():
        rows = ", ".join(str(i) for i in labels.index[empty][:5])
        raise DataShapeError(f"Empty {name} id in rows: {rows}")
    return labels


def _strip_node_qualifier(values: pd.Series, pattern: str) -> pd.Series:
    """Reduce raw node ids such as ``LN3_P01S05`` to the node label ``LN3``."""
    labels = _clean_labels(values, NODE)
    regex = re.compile(pattern)
    if "node" not in regex.groupindex:
        raise DataShapeError(f"Node pattern must define a 'node' group: {pattern!r}")

    def _extract(label: str) -> str:
        match = regex.search(label)
        if match is None or not match.group("node"):
            raise DataShapeError(f"Cannot parse node id {label!r} with {pattern!r}")
        return match.group("node")

    return labels.map(_extract)


def _map_locations(values: pd.Series, cfg: AnalysisConfig) -> pd.Series:
    codes = _clean_labels(values, LOCATION)
    lookup = {str(k).strip().upper(): v for k, v in cfg.location_codes.items()}
    # Accept location names as well as codes.
    lookup.update({name.upper(): name for name in cfg.locations})
    mapped = codes.str.upper().map(lookup)
    unknown = sorted(set(codes[mapped.isna()]))
    if unknown:
        raise DataShapeError(
            f"Unknown location codes: {', '.join(unknown)} "
            f"(expected one of {', '.join(cfg.location_codes)})"
        )
    return _ordered_categorical(mapped, cfg.locations, cfg.location_reference)


def _map_phases(values: pd.Series, cfg: AnalysisConfig) -> pd.Series:
    labels = _clean_labels(values, PHASE)
    mapped = labels.str.lower().map(cfg.phase_aliases)
    unknown = sorted(set(labels[mapped.isna()]))
    if unknown:
        raise DataShapeError(
            f"Unknown treatment phase labels: {', '.join(unknown)} "
            f"(expected one of {', '.join(cfg.phase_aliases)})"
        )
    return _ordered_categorical(mapped, cfg.phases, cfg.phase_reference)


def _ordered_categorical(
    values: pd.Series, levels: tuple[str, ...], reference: str,
) -> pd.Series:
    if reference not in levels:
        raise DataShapeError(f"Reference level {reference!r} not in {levels}")
    categories = [reference, *(lvl for lvl in levels if lvl != reference)]
    return pd.Series(
        pd.Categorical(values, categories=categories), index=values.index,
    )


def _to_numeric(values: pd.Series, name: str, decimal: str = ".") -> pd.Series:
    text = _as_text(values)
    if decimal != ".":
        text = text.str.replace(decimal, ".", regex=False)
    numbers = pd.to_numeric(text.replace("", np.nan), errors="coerce")
    bad = numbers.isna() & (text != "")
    if bad.any():
        sample = ", ".join(sorted(set(text[bad]))[:5])
        raise DataShapeError(f"Non-numeric values in column {name!r}: {sample}")
    return numbers.astype(np.float64)


def _check_node_locations(frame: pd.DataFrame) -> None:
    per_node = frame.groupby(NODE_KEY, observed=True)[LOCATION].nunique()
    moved = per_node[per_node > 1]
    if not moved.empty:
        raise DataShapeError(
            f"Nodes recorded at more than one location: {', '.join(moved.index[:5])}"
        )
