"""Synthetic node-position cohorts with known variance components.

Generates observation tables from a nested model

    shift = mu + location effect + phase effect + slope * bladder_relative
            + subject offset + node offset + residual

with subject, node and residual terms drawn from independent normals.
All data is reproducible via a fixed numpy RNG seed.  The canonical frame
matches :func:`node_motion.data.loader.prepare_observations`; the raw frame
matches the on-disk layout (cm, percent, qualified node ids).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd

from node_motion.data.loader import (
    BLADDER_COLUMNS,
    LOCATION,
    NODE,
    NODE_KEY,
    PHASE,
    SUBJECT,
)
from node_motion.domain.models import AnalysisConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CohortParameters:
    """Generating parameters for a synthetic cohort (shifts in mm)."""

    n_subjects: int = 20
    nodes_per_subject: int = 3
    sessions_per_node: int = 8
    intercept: float = 0.0
    subject_sd: float = 2.0
    node_sd: float = 1.5
    residual_sd: float = 1.0
    location_effects: dict[str, float] = field(default_factory=dict)
    phase_effect: float = 0.0
    bladder_slope: float = 0.0
    seed: int = 42


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def generate_observations(
    params: CohortParameters | None = None,
    config: AnalysisConfig | None = None,
) -> pd.DataFrame:
    """Generate a canonical observation frame.

    Node labels ``LN1``, ``LN2`` ... are reused in every subject, so the
    frame also exercises the nesting of nodes within subjects.  Nodes cycle
    through the configured locations; the first half of each node's sessions
    is in the reference phase, the rest in the other phase.

    Parameters
    ----------
    params:
        Cohort size, variance components and fixed effects.
    config:
        Supplies location and phase levels and the response columns.

    Returns
    -------
    pd.DataFrame
        Frame in the layout produced by the loader.
    """
    p = params or CohortParameters()
    cfg = config or AnalysisConfig()
    rng = np.random.default_rng(seed=p.seed)

    locations = cfg.locations
    phases = (cfg.phase_reference,
              *(ph for ph in cfg.phases if ph != cfg.phase_reference))
    n_before = max(1, p.sessions_per_node // 2)

    rows: list[dict[str, object]] = []
    subject_offsets = {
        col: rng.normal(0.0, p.subject_sd, size=p.n_subjects)
        for col in cfg.shift_columns
    }
    for i in range(p.n_subjects):
        subject = f"P{i + 1:02d}"
        baseline = float(rng.uniform(0.3, 0.9))
        for j in range(p.nodes_per_subject):
            node = f"LN{j + 1}"
            location = locations[j % len(locations)]
            node_offsets = {
                col: rng.normal(0.0, p.node_sd) for col in cfg.shift_columns
            }
            for k in range(p.sessions_per_node):
                phase = phases[0] if k < n_before or len(phases) == 1 else phases[1]
                relative = float(rng.normal(1.0, 0.25))
                row: dict[str, object] = {
                    SUBJECT: subject,
                    NODE: node,
                    NODE_KEY: f"{subject}/{node}",
                    PHASE: phase,
                    LOCATION: location,
                    "bladder_baseline": baseline,
                    "bladder_relative": relative,
                }
                fixed = (
                    p.intercept
                    + p.location_effects.get(location, 0.0)
                    + (p.phase_effect if phase != phases[0] else 0.0)
                    + p.bladder_slope * relative
                )
                for col in cfg.shift_columns:
                    row[col] = (
                        fixed
                        + subject_offsets[col][i]
                        + node_offsets[col]
                        + rng.normal(0.0, p.residual_sd)
                    )
                rows.append(row)

    frame = pd.DataFrame(rows)
    frame[LOCATION] = pd.Categorical(
        frame[LOCATION],
        categories=[cfg.location_reference,
                    *(loc for loc in locations if loc != cfg.location_reference)],
    )
    frame[PHASE] = pd.Categorical(frame[PHASE], categories=list(phases))
    ordered = [SUBJECT, NODE, NODE_KEY, PHASE, LOCATION,
               *cfg.shift_columns, *BLADDER_COLUMNS]
    logger.debug(
        "Generated %d synthetic observations (%d subjects x %d nodes x %d sessions)",
        len(frame), p.n_subjects, p.nodes_per_subject, p.sessions_per_node,
    )
    return frame[ordered]


# ---------------------------------------------------------------------------
# Raw layout round trip
# ---------------------------------------------------------------------------


def to_raw_table(data: pd.DataFrame, config: AnalysisConfig | None = None) -> pd.DataFrame:
    """Convert a canonical frame back to the raw file layout.

    Shifts are divided back to cm, bladder volumes scaled back to percent,
    locations written as codes and node ids given a ``_<subject>S<n>``
    scan qualifier.
    """
    cfg = config or AnalysisConfig()
    codes = {name: code for code, name in cfg.location_codes.items()}
    raw = pd.DataFrame(index=data.index)
    raw[cfg.columns[SUBJECT]] = data[SUBJECT].astype(str)
    scan = data.groupby(NODE_KEY).cumcount() + 1
    raw[cfg.columns[NODE]] = (
        data[NODE].astype(str) + "_" + data[SUBJECT].astype(str)
        + "S" + scan.map("{:02d}".format)
    )
    raw[cfg.columns[PHASE]] = data[PHASE].astype(str)
    raw[cfg.columns[LOCATION]] = data[LOCATION].astype(str).map(codes)
    for col in cfg.shift_columns:
        raw[cfg.columns[col]] = data[col] / cfg.shift_scale
    for col in BLADDER_COLUMNS:
        raw[cfg.columns[col]] = data[col] / cfg.bladder_scale
    return raw


def write_raw_table(
    data: pd.DataFrame,
    path: str | Path,
    config: AnalysisConfig | None = None,
) -> Path:
    """Write *data* to *path* in the raw delimited layout."""
    cfg = config or AnalysisConfig()
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    to_raw_table(data, cfg).to_csv(
        path, sep=cfg.delimiter, decimal=cfg.decimal, index=False,
    )
    logger.info("Wrote %d synthetic rows to %s", len(data), path)
    return path


def generate_raw_table(
    params: CohortParameters | None = None,
    config: AnalysisConfig | None = None,
) -> pd.DataFrame:
    """Generate a cohort directly in raw layout (for loader round trips)."""
    cfg = config or AnalysisConfig()
    return to_raw_table(generate_observations(params, cfg), cfg)