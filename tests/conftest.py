"""Shared pytest fixtures for the node motion test suite."""

from __future__ import annotations

import os

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from node_motion.config import get_config
from node_motion.data.synthetic import CohortParameters, generate_observations, write_raw_table
from node_motion.domain.models import AnalysisConfig, ModelSpec, ModelTemplate, ShiftResponse
from node_motion.estimation.specs import resolve_template, term_catalogue


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch):
    """Drop NMA_ overrides from the host environment and the config cache."""
    for key in list(os.environ):
        if key.startswith("NMA_"):
            monkeypatch.delenv(key, raising=False)
    get_config.cache_clear()
    yield
    get_config.cache_clear()


# ---------------------------------------------------------------------------
# Configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def config() -> AnalysisConfig:
    """Default analysis configuration."""
    return AnalysisConfig()


@pytest.fixture()
def small_config() -> AnalysisConfig:
    """Bone x only, intercept and phase models, for fast batch runs."""
    return AnalysisConfig(
        references=("bone",),
        axes=("x",),
        models=(
            ModelTemplate(name="intercept"),
            ModelTemplate(name="phase", terms=("phase",)),
        ),
    )


# ---------------------------------------------------------------------------
# Data fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def cohort_params() -> CohortParameters:
    """A modest cohort: 12 subjects x 3 nodes x 6 sessions."""
    return CohortParameters(
        n_subjects=12,
        nodes_per_subject=3,
        sessions_per_node=6,
        subject_sd=2.0,
        node_sd=1.5,
        residual_sd=1.0,
        seed=7,
    )


@pytest.fixture()
def cohort(cohort_params, config) -> pd.DataFrame:
    """Canonical synthetic observation frame."""
    return generate_observations(cohort_params, config)


@pytest.fixture()
def raw_csv(tmp_path, cohort, config):
    """The synthetic cohort written to disk in the raw layout."""
    return write_raw_table(cohort, tmp_path / "nodes.csv", config)


@pytest.fixture()
def intercept_spec(config) -> ModelSpec:
    """Whole-cohort intercept-only model for bone x."""
    return resolve_template(
        ModelTemplate(name="intercept"),
        ShiftResponse("bone", "x"),
        None,
        term_catalogue(config),
    )


@pytest.fixture()
def rng() -> np.random.Generator:
    return np.random.default_rng(seed=0)
