"""Estimation engine -- nested mixed models, inference, and batch fitting.

This package provides the computational core of the node motion analysis:

- **Specifications**: enumerated response x subset x fixed-effect models.
- **Mixed models**: REML fits with a subject random intercept and a node
  variance component nested within subject.
- **Inference**: between-within degrees of freedom and t-tests.
- **Batch**: independent fits keyed by specification.
- **Conventional errors**: M, Sigma, sigma and margin per response.
"""

from __future__ import annotations

from node_motion.estimation.batch import (
    fit_batch,
    fit_one,
    fitted_results,
    run_analysis,
    select_entries,
)
from node_motion.estimation.conventional import (
    conventional_error_table,
    conventional_errors,
)
from node_motion.estimation.inference import (
    between_within_df,
    coefficient_tests,
)
from node_motion.estimation.mixed_model import fit_nested_model, model_frame
from node_motion.estimation.specs import (
    build_model_specs,
    resolve_template,
    term_catalogue,
)

__all__ = [
    # Specifications
    "build_model_specs",
    "resolve_template",
    "term_catalogue",
    # Mixed models
    "fit_nested_model",
    "model_frame",
    # Inference
    "between_within_df",
    "coefficient_tests",
    # Batch
    "fit_batch",
    "fit_one",
    "fitted_results",
    "run_analysis",
    "select_entries",
    # Conventional errors
    "conventional_errors",
    "conventional_error_table",
]
