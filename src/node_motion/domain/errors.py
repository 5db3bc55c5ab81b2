"""Exception hierarchy for the node motion analysis.

Data-shape problems fail fast.  Fitting problems are raised per model
specification so that batch callers can record them and keep going.
"""

from __future__ import annotations


class NodeMotionError(Exception):
    """Base class for all analysis errors."""


class DataShapeError(NodeMotionError, ValueError):
    """The input table is missing columns or carries unexpected values."""


class ModelFitError(NodeMotionError):
    """A mixed-model fit could not be completed."""


class InsufficientGroupsError(ModelFitError):
    """A grouping level has fewer than two distinct levels."""


class EmptySubsetError(NodeMotionError):
    """The requested subset contains no observations."""


class DegenerateCovariateError(NodeMotionError):
    """A fixed-effect term does not vary inside the requested subset."""
