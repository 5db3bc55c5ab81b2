"""Conventional radiotherapy error statistics.

Population error components computed from per-subject summaries, the way
set-up errors are usually reported next to mixed-model estimates:

- ``M``: mean of the subject means (group systematic error)
- ``Sigma``: SD of the subject means (population systematic error)
- ``sigma``: root mean square of the subject SDs (population random error)

The CTV-to-PTV margin recipe ``2.5 * Sigma + 0.7 * sigma`` is exposed on
the result.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from node_motion.data.loader import SUBJECT, subset_for
from node_motion.domain.errors import EmptySubsetError, InsufficientGroupsError
from node_motion.domain.models import AnalysisConfig, ConventionalErrors, ShiftResponse

logger = logging.getLogger(__name__)


def conventional_errors(
    data: pd.DataFrame,
    response: ShiftResponse,
    location: str | None = None,
) -> ConventionalErrors:
    """Compute ``M``, ``Sigma`` and ``sigma`` for one response and subset.

    Subjects with a single observation contribute to ``M`` and ``Sigma``
    but not to ``sigma``.

    Raises
    ------
    EmptySubsetError
        If the subset has no observations of *response*.
    InsufficientGroupsError
        If fewer than two subjects are present.
    """
    col = response.column
    subset = subset_for(data, location)[[SUBJECT, col]].dropna()
    if subset.empty:
        raise EmptySubsetError(f"{col}/{location or 'all'}: no observations")

    per_subject = subset.groupby(SUBJECT)[col].agg(["mean", "std", "count"])
    if len(per_subject) < 2:
        raise InsufficientGroupsError(
            f"{col}/{location or 'all'}: {len(per_subject)} subject(s), need at least 2"
        )

    sds = per_subject.loc[per_subject["count"] > 1, "std"].to_numpy(dtype=np.float64)
    random = float(np.sqrt(np.mean(sds ** 2))) if sds.size else float("nan")

    return ConventionalErrors(
        response=response,
        location=location,
        n_subjects=int(len(per_subject)),
        n_obs=int(len(subset)),
        group_mean=float(per_subject["mean"].mean()),
        systematic=float(per_subject["mean"].std(ddof=1)),
        random=random,
    )


def conventional_error_table(
    data: pd.DataFrame,
    config: AnalysisConfig | None = None,
) -> list[ConventionalErrors]:
    """Compute conventional errors for every reference, subset and axis.

    Subsets that cannot be summarised are logged and left out.
    """
    cfg = config or AnalysisConfig()
    subsets: list[str | None] = [None] if cfg.include_whole_cohort else []
    subsets.extend(cfg.locations)
    rows: list[ConventionalErrors] = []
    for reference in cfg.references:
        for location in subsets:
            for axis in cfg.axes:
                response = ShiftResponse(reference=reference, axis=axis)
                try:
                    rows.append(conventional_errors(data, response, location))
                except (EmptySubsetError, InsufficientGroupsError) as exc:
                    logger.warning("Conventional errors skipped: %s", exc)
    return rows
