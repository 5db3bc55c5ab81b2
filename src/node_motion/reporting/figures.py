"""Figures for the node motion report.

- shift box plots per node, grouped and coloured by subject, one panel per
  axis x location;
- bladder-volume scatter plots with a least-squares line per node;
- normal Q-Q plots of mixed-model residuals.

Every function writes one image file and closes its figure.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from statsmodels.graphics.gofplots import qqplot

from node_motion.data.loader import BLADDER_COLUMNS, LOCATION, NODE_KEY, SUBJECT, subset_for
from node_motion.domain.models import FITTED, AnalysisConfig, BatchEntry, FitResult, ModelSpec

logger = logging.getLogger(__name__)

_PANEL_SIZE = (4.5, 3.2)


# ---------------------------------------------------------------------------
# Individual figures
# ---------------------------------------------------------------------------


def plot_shift_boxplots(
    data: pd.DataFrame,
    reference: str,
    path: str | Path,
    config: AnalysisConfig | None = None,
) -> Path:
    """Box plots of the shifts of every node, one panel per axis x location.

    Boxes are ordered by subject and coloured with the subject colour map so
    nodes of one subject sit next to each other.
    """
    cfg = config or AnalysisConfig()
    locations = cfg.locations
    subjects = sorted(pd.unique(data[SUBJECT].astype(str)))
    cmap = plt.get_cmap(cfg.palette.subject_cmap, max(len(subjects), 1))
    colors = {s: cmap(i) for i, s in enumerate(subjects)}

    fig, axes = plt.subplots(
        len(cfg.axes), len(locations),
        figsize=(_PANEL_SIZE[0] * len(locations), _PANEL_SIZE[1] * len(cfg.axes)),
        squeeze=False, sharey="row",
    )
    for i, axis in enumerate(cfg.axes):
        column = f"{reference}_{axis}"
        for j, location in enumerate(locations):
            ax = axes[i, j]
            subset = subset_for(data, location)[[SUBJECT, NODE_KEY, column]].dropna()
            if i == 0:
                ax.set_title(location, color=cfg.palette.location_color(location))
            if j == 0:
                ax.set_ylabel(f"{cfg.axis_label(axis)} (mm)")
            if subset.empty:
                ax.text(0.5, 0.5, "no data", ha="center", va="center",
                        transform=ax.transAxes, color=cfg.palette.default)
                ax.set_xticks([])
                continue
            nodes = subset.sort_values([SUBJECT, NODE_KEY]).drop_duplicates(NODE_KEY)
            order = nodes[NODE_KEY]
            groups = [subset.loc[subset[NODE_KEY] == key, column].to_numpy() for key in order]
            box = ax.boxplot(groups, patch_artist=True, widths=0.6)
            for patch, subject in zip(box["boxes"], nodes[SUBJECT].astype(str)):
                patch.set_facecolor(colors[subject])
                patch.set_alpha(0.7)
            ax.set_xticks(range(1, len(order) + 1))
            ax.set_xticklabels(list(order), rotation=90, fontsize=6)
            ax.axhline(0.0, color="black", linewidth=0.5, linestyle="--")
    fig.suptitle(f"{reference.capitalize()}-referenced node shifts")
    return _save(fig, path, cfg)


def plot_bladder_scatter(
    data: pd.DataFrame,
    reference: str,
    bladder_column: str,
    path: str | Path,
    config: AnalysisConfig | None = None,
) -> Path:
    """Shift against bladder volume with a least-squares line per node.

    Points are coloured by location.  Nodes with fewer than two distinct
    bladder values get points but no line.
    """
    cfg = config or AnalysisConfig()
    fig, axes = plt.subplots(
        1, len(cfg.axes),
        figsize=(_PANEL_SIZE[0] * len(cfg.axes), _PANEL_SIZE[1] * 1.2),
        squeeze=False,
    )
    for j, axis in enumerate(cfg.axes):
        ax = axes[0, j]
        column = f"{reference}_{axis}"
        subset = data[[NODE_KEY, LOCATION, bladder_column, column]].dropna()
        for location in cfg.locations:
            part = subset[subset[LOCATION] == location]
            if part.empty:
                continue
            ax.scatter(part[bladder_column], part[column], s=12, alpha=0.6,
                       color=cfg.palette.location_color(location), label=location)
        for _, node in subset.groupby(NODE_KEY, observed=True):
            line = _node_line(node[bladder_column].to_numpy(dtype=np.float64),
                              node[column].to_numpy(dtype=np.float64))
            if line is None:
                continue
            xs, ys = line
            loc = str(node[LOCATION].iloc[0])
            ax.plot(xs, ys, color=cfg.palette.location_color(loc),
                    linewidth=0.8, alpha=0.8)
        ax.set_title(cfg.axis_label(axis))
        ax.set_xlabel(bladder_column.replace("_", " "))
        if j == 0:
            ax.set_ylabel(f"{reference} shift (mm)")
            ax.legend(fontsize=7)
    return _save(fig, path, cfg)


def plot_residual_qq(
    results: Sequence[FitResult],
    path: str | Path,
    config: AnalysisConfig | None = None,
    ncols: int = 3,
) -> Path:
    """Normal Q-Q plots of the residuals of each fit, one panel per fit."""
    cfg = config or AnalysisConfig()
    n = max(len(results), 1)
    nrows = int(np.ceil(n / ncols))
    fig, axes = plt.subplots(
        nrows, ncols,
        figsize=(_PANEL_SIZE[0] * ncols, _PANEL_SIZE[1] * nrows),
        squeeze=False,
    )
    flat = axes.ravel()
    for ax, res in zip(flat, results):
        resid = np.asarray(res.residuals, dtype=np.float64)
        resid = resid[np.isfinite(resid)]
        if resid.size < 3:
            ax.text(0.5, 0.5, "too few residuals", ha="center", va="center",
                    transform=ax.transAxes)
        else:
            qqplot(resid, line="s", ax=ax, alpha=0.6, markersize=3)
        ax.set_title(res.spec.label, fontsize=8)
    for ax in flat[len(results):]:
        ax.set_visible(False)
    return _save(fig, path, cfg)


# ---------------------------------------------------------------------------
# All figures
# ---------------------------------------------------------------------------


def render_figures(
    data: pd.DataFrame,
    entries: dict[ModelSpec, BatchEntry],
    output_dir: str | Path,
    config: AnalysisConfig | None = None,
    qq_model: str = "intercept",
) -> list[Path]:
    """Write the box, bladder and Q-Q figures for every reference.

    Returns the paths written, in report order.
    """
    cfg = config or AnalysisConfig()
    out = Path(output_dir)
    ext = cfg.figure_format
    paths: list[Path] = []
    for reference in cfg.references:
        paths.append(plot_shift_boxplots(
            data, reference, out / f"boxplot_{reference}.{ext}", cfg))
        for bladder in BLADDER_COLUMNS:
            if bladder not in data.columns:
                continue
            paths.append(plot_bladder_scatter(
                data, reference, bladder, out / f"scatter_{reference}_{bladder}.{ext}", cfg))
        results = [
            e.result for s, e in entries.items()
            if s.name == qq_model and s.response.reference == reference
            and e.status == FITTED and e.result is not None
        ]
        if results:
            paths.append(plot_residual_qq(results, out / f"qq_{reference}.{ext}", cfg))
    return paths


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _node_line(x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray] | None:
    if len(x) < 2 or np.ptp(x) == 0.0:
        return None
    slope, intercept = np.polyfit(x, y, 1)
    xs = np.array([x.min(), x.max()])
    return xs, slope * xs + intercept


def _save(fig: plt.Figure, path: str | Path, cfg: AnalysisConfig) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(out, dpi=cfg.figure_dpi, bbox_inches="tight")
    plt.close(fig)
    logger.info("Wrote figure %s", out)
    return out
