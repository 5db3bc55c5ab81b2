"""Reporting -- tables, figures and the Markdown report."""

from __future__ import annotations

from node_motion.reporting.figures import (
    plot_bladder_scatter,
    plot_residual_qq,
    plot_shift_boxplots,
    render_figures,
)
from node_motion.reporting.report import ReportArtifacts, configure_logging, run_report
from node_motion.reporting.tables import (
    conventional_table,
    fit_warnings,
    fixed_effects_table,
    status_table,
    to_markdown,
    variance_table,
    write_table,
)

__all__ = [
    "ReportArtifacts",
    "configure_logging",
    "conventional_table",
    "fit_warnings",
    "fixed_effects_table",
    "plot_bladder_scatter",
    "plot_residual_qq",
    "plot_shift_boxplots",
    "render_figures",
    "run_report",
    "status_table",
    "to_markdown",
    "variance_table",
    "write_table",
]
