"""Summary tables for fitted models and conventional error statistics.

Every builder returns a :class:`pandas.DataFrame` with one row per record
so the same frame can be written to CSV and rendered as a Markdown pipe
table for the report.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Iterable

import numpy as np
import pandas as pd

from node_motion.domain.models import (
    FITTED,
    BatchEntry,
    ConventionalErrors,
    ModelSpec,
)

logger = logging.getLogger(__name__)

VARIANCE_COLUMNS = [
    "reference", "subset", "axis", "n_obs", "n_subjects", "n_nodes",
    "subject_sd", "node_sd", "systematic_sd", "random_sd", "singular", "converged",
]
FIXED_EFFECT_COLUMNS = [
    "model", "reference", "subset", "axis", "term", "estimate", "std_error",
    "df", "statistic", "p_value", "ci_lower", "ci_upper",
]
CONVENTIONAL_COLUMNS = [
    "reference", "subset", "axis", "n_subjects", "n_obs",
    "group_mean", "systematic", "random", "margin",
]
STATUS_COLUMNS = ["model", "reference", "subset", "axis", "formula", "status", "note"]


# ---------------------------------------------------------------------------
# Table builders
# ---------------------------------------------------------------------------


def variance_table(
    entries: dict[ModelSpec, BatchEntry],
    model: str = "intercept",
) -> pd.DataFrame:
    """Variance decomposition for every fitted entry of *model*.

    Standard deviations are in mm.  ``singular`` lists the group levels
    whose variance collapsed to zero.
    """
    rows: list[dict[str, Any]] = []
    for spec, entry in entries.items():
        if spec.name != model or entry.status != FITTED or entry.result is None:
            continue
        res = entry.result
        rows.append({
            **_spec_keys(spec),
            "n_obs": res.n_obs,
            "n_subjects": res.n_subjects,
            "n_nodes": res.n_nodes,
            **res.variance.as_dict(),
            "singular": ", ".join(res.singular_components),
            "converged": res.converged,
        })
    return pd.DataFrame(rows, columns=VARIANCE_COLUMNS)


def fixed_effects_table(
    entries: dict[ModelSpec, BatchEntry],
    model: str | None = None,
    include_intercept: bool = False,
) -> pd.DataFrame:
    """Fixed-effect estimates, tests and intervals per covariate model.

    Intercept-only models carry no covariate and are left out.
    """
    rows: list[dict[str, Any]] = []
    for spec, entry in entries.items():
        if spec.is_intercept_only:
            continue
        if model is not None and spec.name != model:
            continue
        if entry.status != FITTED or entry.result is None:
            continue
        for fe in entry.result.fixed_effects:
            if fe.term == "Intercept" and not include_intercept:
                continue
            rows.append({
                "model": spec.name,
                **_spec_keys(spec),
                "term": fe.term,
                "estimate": fe.estimate,
                "std_error": fe.std_error,
                "df": fe.df,
                "statistic": fe.statistic,
                "p_value": fe.p_value,
                "ci_lower": fe.ci_lower,
                "ci_upper": fe.ci_upper,
            })
    return pd.DataFrame(rows, columns=FIXED_EFFECT_COLUMNS)


def conventional_table(rows: Iterable[ConventionalErrors]) -> pd.DataFrame:
    """Group mean, Sigma, sigma and margin per reference, subset and axis."""
    out = [
        {
            "reference": r.response.reference,
            "subset": r.location or "all",
            "axis": r.response.axis,
            "n_subjects": r.n_subjects,
            "n_obs": r.n_obs,
            "group_mean": r.group_mean,
            "systematic": r.systematic,
            "random": r.random,
            "margin": r.margin,
        }
        for r in rows
    ]
    return pd.DataFrame(out, columns=CONVENTIONAL_COLUMNS)


def status_table(entries: dict[ModelSpec, BatchEntry]) -> pd.DataFrame:
    """One row per specification with its batch status and note."""
    rows = [
        {
            "model": spec.name,
            **_spec_keys(spec),
            "formula": spec.formula(),
            "status": entry.status,
            "note": entry.note,
        }
        for spec, entry in entries.items()
    ]
    return pd.DataFrame(rows, columns=STATUS_COLUMNS)


def fit_warnings(entries: dict[ModelSpec, BatchEntry]) -> list[str]:
    """Human-readable warning lines for the report, one per problem."""
    lines: list[str] = []
    for spec, entry in entries.items():
        if entry.status != FITTED:
            lines.append(f"{spec.label}: {entry.status} ({entry.note})")
            continue
        res = entry.result
        if res is None:
            continue
        if not res.converged:
            lines.append(f"{spec.label}: did not converge")
        if res.singular:
            lines.append(f"{spec.label}: singular fit ({', '.join(res.singular_components)})")
        for msg in res.warnings:
            lines.append(f"{spec.label}: {msg}")
    return lines


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def to_markdown(frame: pd.DataFrame, digits: int = 2) -> str:
    """Render a frame as a Markdown pipe table.

    Numeric columns are right-aligned; p-values use three significant
    digits and small values are shown as ``<0.001``.
    """
    if frame.empty:
        return "_No rows._"
    columns = list(frame.columns)
    numeric = [pd.api.types.is_numeric_dtype(frame[c]) and
               not pd.api.types.is_bool_dtype(frame[c]) for c in columns]
    lines = [
        "| " + " | ".join(str(c) for c in columns) + " |",
        "| " + " | ".join("---:" if n else ":---" for n in numeric) + " |",
    ]
    for _, row in frame.iterrows():
        cells = [_format_cell(col, row[col], digits) for col in columns]
        lines.append("| " + " | ".join(cells) + " |")
    return "\n".join(lines)


def write_table(frame: pd.DataFrame, path: str | Path) -> Path:
    """Write *frame* as CSV, creating parent directories."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(out, index=False)
    logger.info("Wrote table %s (%d rows)", out, len(frame))
    return out


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _spec_keys(spec: ModelSpec) -> dict[str, str]:
    return {
        "reference": spec.response.reference,
        "subset": spec.subset_label,
        "axis": spec.response.axis,
    }


def _format_cell(column: str, value: Any, digits: int) -> str:
    if isinstance(value, (bool, np.bool_)):
        return "yes" if value else "no"
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    if isinstance(value, (float, np.floating)):
        v = float(value)
        if math.isnan(v):
            return "N/A"
        if math.isinf(v):
            return "inf"
        if column == "p_value":
            return "<0.001" if v < 0.001 else f"{v:.3f}"
        return f"{v:.{digits}f}"
    text = "" if value is None else str(value)
    return text.replace("|", "\\|")
