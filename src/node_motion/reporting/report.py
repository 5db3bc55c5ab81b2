"""End-to-end report: load, fit, summarise, plot, write.

:func:`run_report` is the single entry point.  It reads the observation
table, fits the configured model catalogue, computes the conventional
error statistics, and writes CSV tables, figures and a ``report.md`` that
links them together with the fit warnings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

from node_motion.config import get_analysis_config
from node_motion.data.loader import load_observations, observation_counts, stratify_by_location
from node_motion.domain.models import AnalysisConfig, BatchEntry, ModelSpec
from node_motion.estimation.batch import fit_batch
from node_motion.estimation.conventional import conventional_error_table
from node_motion.estimation.specs import build_model_specs
from node_motion.reporting.figures import render_figures
from node_motion.reporting.tables import (
    conventional_table,
    fit_warnings,
    fixed_effects_table,
    status_table,
    to_markdown,
    variance_table,
    write_table,
)

logger = logging.getLogger(__name__)

REPORT_NAME = "report.md"


@dataclass
class ReportArtifacts:
    """Everything a report run produced, for programmatic use."""

    output_dir: Path
    report_path: Path
    entries: dict[ModelSpec, BatchEntry]
    tables: dict[str, pd.DataFrame] = field(default_factory=dict)
    table_paths: dict[str, Path] = field(default_factory=dict)
    figure_paths: list[Path] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def configure_logging(debug: bool = False) -> None:
    """Set up root logger.

    Parameters
    ----------
    debug:
        If True, set log level to DEBUG; otherwise INFO.
    """
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def run_report(
    data_path: str | Path,
    output_dir: str | Path,
    config: AnalysisConfig | None = None,
) -> ReportArtifacts:
    """Run the full analysis on *data_path* and write it to *output_dir*.

    Parameters
    ----------
    data_path:
        Delimited observation table.
    output_dir:
        Directory for tables, figures and ``report.md``; created if needed.
    config:
        Analysis configuration.  Defaults to :func:`get_analysis_config`.

    Returns
    -------
    ReportArtifacts
        Paths written plus the in-memory tables and batch entries.
    """
    cfg = config or get_analysis_config()
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    data = load_observations(data_path, cfg)
    strata = stratify_by_location(data, cfg.locations)

    specs = build_model_specs(cfg)
    logger.info("Fitting %d model specifications", len(specs))
    entries = fit_batch(data, specs, cfg.estimation)

    tables: dict[str, pd.DataFrame] = {
        "variance": variance_table(entries),
        "conventional": conventional_table(conventional_error_table(data, cfg)),
        "status": status_table(entries),
    }
    for template in cfg.models:
        if template.terms:
            tables[f"fixed_{template.name}"] = fixed_effects_table(entries, template.name)

    table_paths = {
        name: write_table(frame, out / "tables" / f"{name}.csv")
        for name, frame in tables.items()
    }
    figure_paths = render_figures(data, entries, out / "figures", cfg)
    warnings = fit_warnings(entries)

    counts = {"all": observation_counts(data)}
    counts.update({loc: observation_counts(s) for loc, s in strata.items()})

    report_path = out / REPORT_NAME
    report_path.write_text(
        _render_markdown(Path(data_path), counts, tables, figure_paths, warnings, out),
        encoding="utf-8",
    )
    logger.info("Wrote report %s (%d warnings)", report_path, len(warnings))

    return ReportArtifacts(
        output_dir=out,
        report_path=report_path,
        entries=entries,
        tables=tables,
        table_paths=table_paths,
        figure_paths=figure_paths,
        warnings=warnings,
    )


# ---------------------------------------------------------------------------
# Markdown
# ---------------------------------------------------------------------------

_TITLES = {
    "variance": "Variance decomposition (intercept-only models, SD in mm)",
    "conventional": "Conventional error components (mm)",
    "status": "Model fits",
}


def _render_markdown(
    data_path: Path,
    counts: dict[str, dict[str, int]],
    tables: dict[str, pd.DataFrame],
    figures: list[Path],
    warnings: list[str],
    root: Path,
) -> str:
    lines = [
        "# Lymph node motion analysis",
        "",
        f"Input: `{data_path.name}`",
        "",
        "## Observations",
        "",
        "| subset | n_obs | n_subjects | n_nodes |",
        "| :--- | ---: | ---: | ---: |",
    ]
    for subset, c in counts.items():
        lines.append(f"| {subset} | {c['n_obs']} | {c['n_subjects']} | {c['n_nodes']} |")

    for name, frame in tables.items():
        title = _TITLES.get(name, f"Fixed effects: {name.removeprefix('fixed_')}")
        lines += ["", f"## {title}", "", to_markdown(frame),
                  "", f"CSV: [tables/{name}.csv](tables/{name}.csv)"]

    lines += ["", "## Figures", ""]
    for path in figures:
        rel = path.relative_to(root).as_posix()
        lines.append(f"![{path.stem}]({rel})")
        lines.append("")

    lines += ["## Warnings", ""]
    if warnings:
        lines.extend(f"- {w}" for w in warnings)
    else:
        lines.append("None.")
    lines.append("")
    return "\n".join(lines)
