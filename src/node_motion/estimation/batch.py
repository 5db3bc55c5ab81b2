"""Batch fitting over a catalogue of model specifications.

Every specification is fitted independently against the shared, read-only
observation frame.  Problems with one specification are recorded on its
:class:`~node_motion.domain.models.BatchEntry` and never stop the others:

- empty subsets and degenerate covariates are ``skipped`` with a note;
- too few groups or numerical failures are ``failed`` with the message.

Data-shape errors propagate, since they affect every fit alike.
"""

from __future__ import annotations

import logging
from typing import Iterable

import pandas as pd

from node_motion.domain.errors import (
    DegenerateCovariateError,
    EmptySubsetError,
    ModelFitError,
)
from node_motion.domain.models import (
    FAILED,
    FITTED,
    SKIPPED,
    AnalysisConfig,
    BatchEntry,
    EstimationSettings,
    FitResult,
    ModelSpec,
)
from node_motion.estimation.mixed_model import fit_nested_model
from node_motion.estimation.specs import build_model_specs

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def fit_batch(
    data: pd.DataFrame,
    specs: Iterable[ModelSpec],
    settings: EstimationSettings | None = None,
) -> dict[ModelSpec, BatchEntry]:
    """Fit each specification and collect the outcomes.

    Parameters
    ----------
    data:
        Canonical observation frame.
    specs:
        Specifications to fit, in the order they should be reported.
    settings:
        Estimation settings shared by every fit.

    Returns
    -------
    dict[ModelSpec, BatchEntry]
        One entry per distinct specification, in input order.
    """
    entries: dict[ModelSpec, BatchEntry] = {}
    for spec in specs:
        if spec in entries:
            continue
        entries[spec] = fit_one(data, spec, settings)

    n_fitted = sum(1 for e in entries.values() if e.status == FITTED)
    n_skipped = sum(1 for e in entries.values() if e.status == SKIPPED)
    n_failed = sum(1 for e in entries.values() if e.status == FAILED)
    logger.info(
        "Batch complete: %d fitted, %d skipped, %d failed",
        n_fitted, n_skipped, n_failed,
    )
    return entries


def fit_one(
    data: pd.DataFrame,
    spec: ModelSpec,
    settings: EstimationSettings | None = None,
) -> BatchEntry:
    """Fit a single specification, converting fit problems to an entry."""
    try:
        result = fit_nested_model(data, spec, settings)
    except (EmptySubsetError, DegenerateCovariateError) as exc:
        logger.warning("Skipped %s: %s", spec.label, exc)
        return BatchEntry(spec=spec, status=SKIPPED, note=str(exc))
    except ModelFitError as exc:
        logger.warning("Failed %s: %s", spec.label, exc)
        return BatchEntry(spec=spec, status=FAILED, note=str(exc))

    notes = []
    if not result.converged:
        notes.append("did not converge")
    if result.singular:
        notes.append(f"singular ({', '.join(result.singular_components)})")
    return BatchEntry(spec=spec, status=FITTED, result=result, note="; ".join(notes))


def run_analysis(
    data: pd.DataFrame,
    config: AnalysisConfig | None = None,
) -> dict[ModelSpec, BatchEntry]:
    """Build the configured catalogue and fit it."""
    cfg = config or AnalysisConfig()
    return fit_batch(data, build_model_specs(cfg), cfg.estimation)


def fitted_results(entries: dict[ModelSpec, BatchEntry]) -> list[FitResult]:
    """Return the fit results of all successfully fitted entries, in order."""
    return [e.result for e in entries.values() if e.status == FITTED and e.result is not None]


def select_entries(
    entries: dict[ModelSpec, BatchEntry],
    model: str | None = None,
    reference: str | None = None,
    location: str | None = None,
    whole_cohort: bool | None = None,
) -> list[BatchEntry]:
    """Filter entries by model name, reference and subset.

    ``whole_cohort=True`` keeps only whole-cohort fits, ``False`` only
    stratified fits; *location* selects one stratum.
    """
    out: list[BatchEntry] = []
    for spec, entry in entries.items():
        if model is not None and spec.name != model:
            continue
        if reference is not None and spec.response.reference != reference:
            continue
        if location is not None and spec.location != location:
            continue
        if whole_cohort is not None and (spec.location is None) != whole_cohort:
            continue
        out.append(entry)
    return out
