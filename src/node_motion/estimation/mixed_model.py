"""Nested random-intercept mixed models for node shifts.

Each fit is

    shift ~ fixed effects + (1 | subject) + (1 | subject:node) + residual

estimated by REML with ``statsmodels`` ``MixedLM``.  The subject intercept
is the group random effect and the node intercept a variance component
inside each subject, so node labels are only meaningful within their
subject.  Non-convergence and boundary (singular) estimates are attached
to the returned :class:`~node_motion.domain.models.FitResult`; they do not
raise.
"""

from __future__ import annotations

import logging
import math
import warnings

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf

from node_motion.data.loader import NODE, NODE_KEY, SUBJECT, subset_for
from node_motion.domain.errors import (
    DataShapeError,
    DegenerateCovariateError,
    EmptySubsetError,
    InsufficientGroupsError,
    ModelFitError,
)
from node_motion.domain.models import (
    EstimationSettings,
    FitResult,
    ModelSpec,
    VarianceComponents,
)
from node_motion.estimation.inference import (
    BETWEEN_WITHIN,
    WALD,
    between_within_df,
    coefficient_tests,
)

logger = logging.getLogger(__name__)

_NODE_VC = {"node": "0 + C(node)"}
_CONFOUNDED = "node variance not identifiable with one node per subject"
_BOUNDARY = "on the boundary of the parameter space"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def fit_nested_model(
    data: pd.DataFrame,
    spec: ModelSpec,
    settings: EstimationSettings | None = None,
) -> FitResult:
    """Fit one model specification to the observation frame.

    Parameters
    ----------
    data:
        Canonical observation frame (see :mod:`node_motion.data.loader`).
    spec:
        Response, fixed-effect terms and location subset.
    settings:
        Optimizer order, iteration cap, singular tolerance and p-value
        method.

    Returns
    -------
    FitResult
        Fixed effects, variance components and diagnostics.

    Raises
    ------
    EmptySubsetError
        If no complete observations remain in the subset.
    DegenerateCovariateError
        If a fixed-effect term does not vary in the subset.
    InsufficientGroupsError
        If the subset has fewer than ``settings.min_groups`` subjects or
        nodes.
    ModelFitError
        If the fitting library fails numerically.
    """
    cfg = settings or EstimationSettings()
    frame = model_frame(data, spec)
    n_subjects = int(frame[SUBJECT].nunique())
    n_nodes = int(frame[NODE_KEY].nunique())
    if n_subjects < cfg.min_groups:
        raise InsufficientGroupsError(
            f"{spec.label}: {n_subjects} subject(s), need at least {cfg.min_groups}"
        )
    if n_nodes < cfg.min_groups:
        raise InsufficientGroupsError(
            f"{spec.label}: {n_nodes} node(s), need at least {cfg.min_groups}"
        )
    # One node per subject: the node component is not identifiable.
    confounded = n_nodes == n_subjects
    if confounded:
        logger.warning(
            "%s: one node per subject, fitting the subject intercept only",
            spec.label,
        )

    model = smf.mixedlm(
        spec.formula(), frame, groups=frame[SUBJECT],
        re_formula="1", vc_formula=None if confounded else _NODE_VC,
    )

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            result = model.fit(
                reml=cfg.reml, method=list(cfg.methods), maxiter=cfg.maxiter,
            )
        except (np.linalg.LinAlgError, ValueError, OverflowError) as exc:
            raise ModelFitError(f"{spec.label}: {exc}") from exc

    messages = tuple(dict.fromkeys(
        str(w.message) for w in caught
        if issubclass(w.category, (UserWarning, RuntimeWarning))
    ))
    if confounded:
        messages = (_CONFOUNDED, *messages)
    converged = bool(getattr(result, "converged", False))

    variance = _variance_components(result)
    on_boundary = any(_BOUNDARY in m for m in messages)
    singular = _singular_components(
        variance, cfg.singular_tolerance, on_boundary,
        candidates=("subject",) if confounded else ("subject", "node"),
    )

    exog = pd.DataFrame(model.exog, columns=model.exog_names[: model.k_fe])
    if cfg.p_value_method == BETWEEN_WITHIN:
        dfs = between_within_df(exog, frame[SUBJECT], frame[NODE_KEY])
    elif cfg.p_value_method == WALD:
        dfs = None
    else:
        raise ValueError(f"Unknown p-value method: {cfg.p_value_method!r}")
    fixed = coefficient_tests(result.fe_params, result.bse_fe, dfs, alpha=cfg.alpha)

    if not converged:
        logger.warning("%s: optimizer did not converge (%s)", spec.label,
                       "; ".join(messages) or "no message")
    if singular:
        logger.warning("%s: singular fit, zero variance for %s",
                       spec.label, ", ".join(singular))
    logger.debug(
        "%s: n=%d subjects=%d nodes=%d sys=%.3f rand=%.3f",
        spec.label, len(frame), n_subjects, n_nodes,
        variance.systematic_sd, variance.random_sd,
    )

    return FitResult(
        spec=spec,
        n_obs=int(len(frame)),
        n_subjects=n_subjects,
        n_nodes=n_nodes,
        fixed_effects=fixed,
        variance=variance,
        log_likelihood=float(result.llf),
        method=str(getattr(result, "method", "REML" if cfg.reml else "ML")),
        converged=converged,
        singular_components=singular,
        warnings=messages,
        residuals=np.asarray(result.resid, dtype=np.float64),
        fitted_values=np.asarray(result.fittedvalues, dtype=np.float64),
    )


def model_frame(data: pd.DataFrame, spec: ModelSpec) -> pd.DataFrame:
    """Return the complete-case rows a specification is fitted on.

    Categorical terms lose unused levels and keep their reference level
    first, so treatment coding compares every level with the reference.
    """
    response = spec.response.column
    needed = [response, *spec.term_names, SUBJECT, NODE, NODE_KEY]
    for a, b in spec.interactions:
        needed.extend((a, b))
    needed = list(dict.fromkeys(needed))
    absent = [c for c in needed if c not in data.columns]
    if absent:
        raise DataShapeError(f"{spec.label}: missing columns {', '.join(absent)}")

    subset = subset_for(data, spec.location)
    if subset.empty:
        raise EmptySubsetError(f"{spec.label}: no observations in subset")
    frame = subset[needed].dropna().reset_index(drop=True)
    if frame.empty:
        raise EmptySubsetError(f"{spec.label}: no complete observations in subset")

    for term in spec.terms:
        column = frame[term.name]
        if term.is_categorical:
            present = [str(v) for v in pd.unique(column.astype(str))]
            if len(present) < 2:
                raise DegenerateCovariateError(
                    f"{spec.label}: {term.name} has a single level ({present[0]})"
                )
            ordered = _reference_first(column, present, term.reference)
            frame[term.name] = pd.Categorical(column.astype(str), categories=ordered)
        else:
            values = column.astype(np.float64)
            if float(values.max() - values.min()) == 0.0:
                raise DegenerateCovariateError(f"{spec.label}: {term.name} is constant")
            frame[term.name] = values
    return frame


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _reference_first(
    column: pd.Series, present: list[str], reference: str | None,
) -> list[str]:
    if isinstance(column.dtype, pd.CategoricalDtype):
        order = [str(c) for c in column.cat.categories if str(c) in present]
    else:
        order = sorted(present)
    if reference is not None and reference in order:
        order.remove(reference)
        order.insert(0, reference)
    elif reference is not None:
        logger.debug("Reference level %r absent, using %r", reference, order[0])
    return order


def _variance_components(result: object) -> VarianceComponents:
    cov_re = np.asarray(result.cov_re, dtype=np.float64)
    subject_var = float(cov_re[0, 0]) if cov_re.size else 0.0
    vcomp = np.asarray(result.vcomp, dtype=np.float64)
    node_var = float(vcomp[0]) if vcomp.size else 0.0
    residual_var = float(result.scale)
    return VarianceComponents(
        subject_sd=math.sqrt(max(subject_var, 0.0)),
        node_sd=math.sqrt(max(node_var, 0.0)),
        residual_sd=math.sqrt(max(residual_var, 0.0)),
    )


def _singular_components(
    variance: VarianceComponents,
    tolerance: float,
    on_boundary: bool = False,
    candidates: tuple[str, ...] = ("subject", "node"),
) -> tuple[str, ...]:
    """Group-level components estimated at (or next to) zero.

    The optimizer works on square roots and stops near zero rather than on
    it, so a statsmodels boundary warning also marks the component with the
    smallest share.
    """
    total = variance.total_variance
    if total <= 0.0:
        return candidates
    shares = {
        "subject": variance.subject_sd ** 2 / total,
        "node": variance.node_sd ** 2 / total,
    }
    shares = {name: shares[name] for name in candidates}
    singular = {name for name, share in shares.items() if share < tolerance}
    if on_boundary and not singular:
        singular.add(min(shares, key=shares.get))
    return tuple(name for name in candidates if name in singular)
