"""Observation loading, validation, stratification, and synthetic cohorts.

Turns the delimited node-position table into the canonical frame used by
the estimators, and generates cohorts with known variance components for
testing.
"""

from node_motion.data.loader import (
    BLADDER_COLUMNS,
    LOCATION,
    NODE,
    NODE_KEY,
    PHASE,
    SUBJECT,
    load_observations,
    observation_counts,
    prepare_observations,
    stratify_by_location,
    subset_for,
)
from node_motion.data.synthetic import (
    CohortParameters,
    generate_observations,
    generate_raw_table,
    to_raw_table,
    write_raw_table,
)

__all__ = [
    "BLADDER_COLUMNS",
    "LOCATION",
    "NODE",
    "NODE_KEY",
    "PHASE",
    "SUBJECT",
    "CohortParameters",
    "generate_observations",
    "generate_raw_table",
    "load_observations",
    "observation_counts",
    "prepare_observations",
    "stratify_by_location",
    "subset_for",
    "to_raw_table",
    "write_raw_table",
]
