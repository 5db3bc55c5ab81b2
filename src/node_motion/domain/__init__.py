"""Domain layer -- model specifications, fit results, config, and errors.

Re-exports all public domain types for convenient access::

    from node_motion.domain import ModelSpec, FitResult, VarianceComponents
"""

from __future__ import annotations

from node_motion.domain.errors import (
    DataShapeError,
    DegenerateCovariateError,
    EmptySubsetError,
    InsufficientGroupsError,
    ModelFitError,
    NodeMotionError,
)
from node_motion.domain.models import (
    AXES,
    CATEGORICAL,
    CONTINUOUS,
    FAILED,
    FITTED,
    REFERENCES,
    SKIPPED,
    AnalysisConfig,
    AppConfig,
    BatchEntry,
    ConventionalErrors,
    EstimationSettings,
    FitResult,
    FixedEffect,
    ModelSpec,
    ModelTemplate,
    Palette,
    ShiftResponse,
    Term,
    VarianceComponents,
)

__all__ = [
    # Constants
    "AXES",
    "CATEGORICAL",
    "CONTINUOUS",
    "FAILED",
    "FITTED",
    "REFERENCES",
    "SKIPPED",
    # Models
    "AnalysisConfig",
    "AppConfig",
    "BatchEntry",
    "ConventionalErrors",
    "EstimationSettings",
    "FitResult",
    "FixedEffect",
    "ModelSpec",
    "ModelTemplate",
    "Palette",
    "ShiftResponse",
    "Term",
    "VarianceComponents",
    # Errors
    "DataShapeError",
    "DegenerateCovariateError",
    "EmptySubsetError",
    "InsufficientGroupsError",
    "ModelFitError",
    "NodeMotionError",
]
