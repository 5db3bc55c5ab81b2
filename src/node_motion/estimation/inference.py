"""Fixed-effect inference for nested random-intercept models.

Degrees of freedom follow the between-within rule used by ``nlme``: the
grouping levels are subject, node (within subject) and observation.  A
design column is charged to the outermost level whose groups it is constant
within; the intercept is charged to the subject level but tested with the
observation-level df.  Level df are ``N_level - N_parent - columns charged``.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

import numpy as np
import pandas as pd
from scipy import stats

from node_motion.domain.models import FixedEffect

logger = logging.getLogger(__name__)

BETWEEN_WITHIN = "between_within"
WALD = "wald"

INTERCEPT = "Intercept"

_LEVELS = ("subject", "node", "observation")


def between_within_df(
    exog: pd.DataFrame,
    subjects: Sequence[object],
    nodes: Sequence[object],
) -> dict[str, float]:
    """Assign denominator degrees of freedom to every design column.

    Parameters
    ----------
    exog:
        Fixed-effects design matrix, one column per coefficient.
    subjects:
        Outer grouping label per row.
    nodes:
        Inner grouping label per row, unique across subjects.

    Returns
    -------
    dict[str, float]
        Column name -> df (at least 1).
    """
    subjects = np.asarray(subjects)
    nodes = np.asarray(nodes)
    n_obs = len(exog)
    n_subjects = len(pd.unique(subjects))
    n_nodes = len(pd.unique(nodes))

    level_df = [n_subjects, n_nodes - n_subjects, n_obs - n_nodes]
    assigned: dict[str, int] = {}
    for col in exog.columns:
        values = exog[col].to_numpy(dtype=np.float64)
        if col == INTERCEPT:
            level_df[0] -= 1
            continue
        if _constant_within(values, subjects):
            level = 0
        elif _constant_within(values, nodes):
            level = 1
        else:
            level = 2
        assigned[col] = level
        level_df[level] -= 1

    dfs: dict[str, float] = {}
    for col in exog.columns:
        level = 2 if col == INTERCEPT else assigned[col]
        dfs[col] = float(max(level_df[level], 1))
    logger.debug(
        "Between-within df by level: %s",
        dict(zip(_LEVELS, level_df)),
    )
    return dfs


def coefficient_tests(
    estimates: pd.Series,
    std_errors: pd.Series,
    dfs: dict[str, float] | None = None,
    alpha: float = 0.05,
) -> tuple[FixedEffect, ...]:
    """Build :class:`FixedEffect` records with two-sided tests.

    Columns missing from *dfs* (or ``dfs=None``) are tested against the
    normal distribution.
    """
    dfs = dfs or {}
    out: list[FixedEffect] = []
    for name, estimate in estimates.items():
        se = float(std_errors[name])
        est = float(estimate)
        df = float(dfs.get(name, math.inf))
        if not np.isfinite(se) or se <= 0.0:
            stat, p, lo, hi = math.nan, math.nan, math.nan, math.nan
        else:
            stat = est / se
            if math.isinf(df):
                p = float(2.0 * stats.norm.sf(abs(stat)))
                crit = float(stats.norm.ppf(1.0 - alpha / 2.0))
            else:
                p = float(2.0 * stats.t.sf(abs(stat), df))
                crit = float(stats.t.ppf(1.0 - alpha / 2.0, df))
            lo, hi = est - crit * se, est + crit * se
        out.append(FixedEffect(
            term=str(name), estimate=est, std_error=se, df=df,
            statistic=stat, p_value=p, ci_lower=lo, ci_upper=hi,
        ))
    return tuple(out)


def _constant_within(values: np.ndarray, groups: np.ndarray) -> bool:
    """True when *values* never changes inside any group."""
    spread = pd.Series(values).groupby(groups).agg(lambda v: v.max() - v.min())
    scale = max(float(np.max(np.abs(values))) if len(values) else 0.0, 1.0)
    return bool((spread.abs() <= 1e-10 * scale).all())
