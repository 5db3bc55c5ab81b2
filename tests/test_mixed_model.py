"""Tests for the nested random-intercept mixed model."""

from __future__ import annotations

import numpy as np
import numpy.testing as npt
import pandas as pd
import pytest

from node_motion.data.loader import LOCATION, NODE, NODE_KEY, PHASE, SUBJECT
from node_motion.data.synthetic import CohortParameters, generate_observations
from node_motion.domain.errors import (
    DataShapeError,
    DegenerateCovariateError,
    EmptySubsetError,
    InsufficientGroupsError,
)
from node_motion.domain.models import (
    CATEGORICAL,
    FITTED,
    EstimationSettings,
    ModelSpec,
    ShiftResponse,
    Term,
    VarianceComponents,
)
from node_motion.estimation.batch import fit_batch, fit_one
from node_motion.estimation.mixed_model import (
    _singular_components,
    fit_nested_model,
    model_frame,
)
from node_motion.reporting.tables import fit_warnings

PHASE_TERM = Term("phase", CATEGORICAL, "before")
LOCATION_TERM = Term("location", CATEGORICAL, "mesorectal")


def _small_scenario(seed: int = 11) -> pd.DataFrame:
    """2 subjects x 2 nodes per location x 3 locations x 2 phases = 24 rows."""
    rng = np.random.default_rng(seed)
    rows = []
    for s in range(2):
        subject = f"S{s + 1}"
        subject_offset = rng.normal(0.0, 2.0)
        for li, location in enumerate(("mesorectal", "presacral", "lateral")):
            for n in range(2):
                node = f"N{li * 2 + n + 1}"
                node_offset = rng.normal(0.0, 1.5)
                for phase in ("before", "during"):
                    rows.append({
                        SUBJECT: subject,
                        NODE: node,
                        NODE_KEY: f"{subject}/{node}",
                        PHASE: phase,
                        LOCATION: location,
                        "bone_x": 1.0 + subject_offset + node_offset + rng.normal(0.0, 1.0),
                    })
    frame = pd.DataFrame(rows)
    frame[LOCATION] = pd.Categorical(
        frame[LOCATION], categories=["mesorectal", "presacral", "lateral"])
    frame[PHASE] = pd.Categorical(frame[PHASE], categories=["before", "during"])
    return frame


# =====================================================================
# Variance components
# =====================================================================


class TestVarianceRecovery:
    """Injected variance components are recovered from synthetic cohorts."""

    def test_recovers_injected_components(self):
        params = CohortParameters(
            n_subjects=40, nodes_per_subject=4, sessions_per_node=12,
            subject_sd=3.0, node_sd=2.0, residual_sd=1.5, seed=2024,
        )
        data = generate_observations(params)
        result = fit_nested_model(data, ModelSpec())
        vc = result.variance
        assert vc.subject_sd == pytest.approx(3.0, rel=0.4)
        assert vc.node_sd == pytest.approx(2.0, rel=0.25)
        assert vc.residual_sd == pytest.approx(1.5, rel=0.1)
        assert result.n_subjects == 40
        assert result.n_nodes == 160
        assert result.n_obs == 40 * 4 * 12

    def test_systematic_sd_is_sum_of_variances(self, cohort):
        vc = fit_nested_model(cohort, ModelSpec()).variance
        assert vc.systematic_sd ** 2 == pytest.approx(vc.subject_sd ** 2 + vc.node_sd ** 2)

    def test_refit_is_deterministic(self, cohort):
        a = fit_nested_model(cohort, ModelSpec()).variance
        b = fit_nested_model(cohort, ModelSpec()).variance
        assert a == b

    def test_small_scenario_fits(self):
        data = _small_scenario()
        result = fit_nested_model(data, ModelSpec())
        assert result.n_obs == 24
        assert result.n_subjects == 2
        assert result.n_nodes == 12
        vc = result.variance
        for sd in (vc.subject_sd, vc.node_sd, vc.residual_sd):
            assert np.isfinite(sd) and sd >= 0.0
        assert vc.residual_sd > 0.0
        # Balanced design: the GLS intercept is the grand mean.
        assert result.fixed_effect("Intercept").estimate == pytest.approx(
            data["bone_x"].mean(), abs=1e-6)

    def test_residuals_align_with_rows(self, cohort):
        result = fit_nested_model(cohort, ModelSpec())
        assert result.residuals.shape == (len(cohort),)
        npt.assert_allclose(
            result.residuals + result.fitted_values, cohort["bone_x"], atol=1e-8,
        )

    def test_one_node_per_subject(self, cohort):
        # Nodes cycle through locations, so each stratum has one node per subject.
        result = fit_nested_model(cohort, ModelSpec(location="presacral"))
        assert result.n_nodes == result.n_subjects
        assert result.variance.node_sd == 0.0
        assert any("not identifiable" in w for w in result.warnings)
        # Not estimated, so not a boundary estimate either.
        assert "node" not in result.singular_components


# =====================================================================
# Fixed effects
# =====================================================================


class TestContrastCoding:
    """Treatment coding against the configured reference level."""

    def test_phase_contrast(self, cohort):
        spec = ModelSpec(name="phase", terms=(PHASE_TERM,))
        result = fit_nested_model(cohort, spec)
        means = cohort.groupby(PHASE, observed=True)["bone_x"].mean()
        assert result.fixed_effect("Intercept").estimate == pytest.approx(
            means["before"], abs=1e-5)
        assert result.fixed_effect("phase[T.during]").estimate == pytest.approx(
            means["during"] - means["before"], abs=1e-5)

    def test_location_contrast(self, cohort):
        spec = ModelSpec(name="location", terms=(LOCATION_TERM,))
        result = fit_nested_model(cohort, spec)
        means = cohort.groupby(LOCATION, observed=True)["bone_x"].mean()
        intercept = result.fixed_effect("Intercept").estimate
        assert intercept == pytest.approx(means["mesorectal"], abs=1e-4)
        for level in ("presacral", "lateral"):
            coef = result.fixed_effect(f"location[T.{level}]").estimate
            assert coef == pytest.approx(means[level] - means["mesorectal"], abs=1e-4)

    def test_reference_level_respected(self, cohort):
        spec = ModelSpec(name="location", terms=(Term("location", CATEGORICAL, "lateral"),))
        result = fit_nested_model(cohort, spec)
        terms = [fe.term for fe in result.fixed_effects]
        assert "location[T.mesorectal]" in terms
        assert "location[T.lateral]" not in terms

    def test_phase_effect_detected(self):
        params = CohortParameters(n_subjects=15, phase_effect=3.0, seed=9)
        data = generate_observations(params)
        spec = ModelSpec(name="phase", terms=(PHASE_TERM,))
        fe = fit_nested_model(data, spec).fixed_effect("phase[T.during]")
        assert fe.estimate == pytest.approx(3.0, abs=0.5)
        assert fe.p_value < 0.001
        assert fe.ci_lower < 3.0 < fe.ci_upper

    def test_between_within_df_used(self, cohort, cohort_params):
        spec = ModelSpec(name="phase", terms=(PHASE_TERM,))
        result = fit_nested_model(cohort, spec)
        n_nodes = cohort_params.n_subjects * cohort_params.nodes_per_subject
        assert result.fixed_effect("phase[T.during]").df == len(cohort) - n_nodes - 1

    def test_wald_uses_normal(self, cohort):
        spec = ModelSpec(name="phase", terms=(PHASE_TERM,))
        result = fit_nested_model(
            cohort, spec, EstimationSettings(p_value_method="wald"))
        assert np.isinf(result.fixed_effect("phase[T.during]").df)

    def test_unknown_p_value_method(self, cohort):
        with pytest.raises(ValueError, match="p-value"):
            fit_nested_model(cohort, ModelSpec(), EstimationSettings(p_value_method="kr"))

    def test_interaction_term(self, cohort):
        spec = ModelSpec(
            name="multivariable",
            terms=(PHASE_TERM, Term("bladder_relative")),
            interactions=(("phase", "bladder_relative"),),
        )
        terms = [fe.term for fe in fit_nested_model(cohort, spec).fixed_effects]
        assert terms == [
            "Intercept", "phase[T.during]", "bladder_relative",
            "phase[T.during]:bladder_relative",
        ]


# =====================================================================
# Failure modes
# =====================================================================


class TestFailures:

    def test_single_subject_fails_fast(self, cohort):
        data = cohort[cohort[SUBJECT] == "P01"]
        with pytest.raises(InsufficientGroupsError):
            fit_nested_model(data, ModelSpec())

    def test_empty_subset(self, cohort):
        data = cohort[cohort[LOCATION] != "lateral"]
        with pytest.raises(EmptySubsetError):
            fit_nested_model(data, ModelSpec(location="lateral"))

    def test_degenerate_categorical(self, cohort):
        data = cohort[cohort[PHASE] == "before"]
        with pytest.raises(DegenerateCovariateError):
            fit_nested_model(data, ModelSpec(name="phase", terms=(PHASE_TERM,)))

    def test_degenerate_continuous(self, cohort):
        data = cohort.assign(bladder_baseline=0.5)
        spec = ModelSpec(name="bladder_baseline", terms=(Term("bladder_baseline"),))
        with pytest.raises(DegenerateCovariateError):
            fit_nested_model(data, spec)

    def test_missing_column(self, cohort):
        with pytest.raises(DataShapeError):
            fit_nested_model(cohort.drop(columns=["tumor_y"]),
                             ModelSpec(response=ShiftResponse("tumor", "y")))


class TestModelFrame:

    def test_complete_cases_only(self, cohort):
        data = cohort.copy()
        data.loc[data.index[:5], "bone_x"] = np.nan
        frame = model_frame(data, ModelSpec())
        assert len(frame) == len(cohort) - 5

    def test_unused_levels_dropped(self, cohort):
        data = cohort[cohort[LOCATION] != "lateral"]
        spec = ModelSpec(name="location", terms=(LOCATION_TERM,))
        frame = model_frame(data, spec)
        assert list(frame["location"].cat.categories) == ["mesorectal", "presacral"]

    def test_stratum_subset(self, cohort):
        frame = model_frame(cohort, ModelSpec(location="presacral"))
        assert set(frame[LOCATION].astype(str)) == {"presacral"}


# =====================================================================
# Diagnostics
# =====================================================================


class TestSingularFits:
    """Group-level variances that collapse to the boundary are reported."""

    def test_zero_node_variance_flagged_with_defaults(self):
        boundary_fits = 0
        for seed in range(40):
            params = CohortParameters(
                n_subjects=8, nodes_per_subject=3, sessions_per_node=4,
                node_sd=0.0, seed=seed,
            )
            result = fit_nested_model(generate_observations(params), ModelSpec())
            if any("boundary" in w for w in result.warnings):
                boundary_fits += 1
                assert "node" in result.singular_components, seed
        assert boundary_fits > 0

    def test_share_below_tolerance(self):
        vc = VarianceComponents(subject_sd=2.0, node_sd=1e-5, residual_sd=1.0)
        assert _singular_components(vc, 1e-6) == ("node",)

    def test_boundary_warning_marks_smallest_share(self):
        vc = VarianceComponents(subject_sd=2.0, node_sd=0.01, residual_sd=1.0)
        assert _singular_components(vc, 1e-6) == ()
        assert _singular_components(vc, 1e-6, on_boundary=True) == ("node",)

    def test_boundary_with_subject_only(self):
        vc = VarianceComponents(subject_sd=0.01, node_sd=0.0, residual_sd=1.0)
        assert _singular_components(
            vc, 1e-6, on_boundary=True, candidates=("subject",)) == ("subject",)

    def test_zero_total_variance(self):
        assert _singular_components(VarianceComponents(), 1e-6) == ("subject", "node")


class TestNonConvergence:
    """An optimizer stopped early is reported, not raised."""

    SETTINGS = EstimationSettings(methods=("nm",), maxiter=3)

    def test_fit_reports_non_convergence(self, cohort):
        result = fit_nested_model(cohort, ModelSpec(), self.SETTINGS)
        assert result.converged is False
        assert result.warnings

    def test_batch_note(self, cohort):
        entry = fit_one(cohort, ModelSpec(), self.SETTINGS)
        assert entry.status == FITTED
        assert entry.result is not None and entry.result.converged is False
        assert "did not converge" in entry.note

    def test_report_warning(self, cohort):
        spec = ModelSpec()
        entries = fit_batch(cohort, [spec], self.SETTINGS)
        assert f"{spec.label}: did not converge" in fit_warnings(entries)
