"""Tests for domain models, errors, and configuration."""

from __future__ import annotations

import dataclasses
import math

import numpy as np
import pytest
import yaml

from node_motion.domain.errors import (
    DataShapeError,
    DegenerateCovariateError,
    EmptySubsetError,
    InsufficientGroupsError,
    ModelFitError,
    NodeMotionError,
)
from node_motion.domain.models import (
    CATEGORICAL,
    DEFAULT_MODELS,
    AnalysisConfig,
    AppConfig,
    ConventionalErrors,
    FitResult,
    FixedEffect,
    ModelSpec,
    ShiftResponse,
    Term,
    VarianceComponents,
)


# =====================================================================
# Frozen dataclass instantiation
# =====================================================================


class TestFrozenDataclasses:
    """Verify defaults and immutability of the frozen dataclasses."""

    def test_shift_response_column(self):
        assert ShiftResponse("tumor", "z").column == "tumor_z"

    def test_term_kind(self):
        assert Term("phase", CATEGORICAL, "before").is_categorical
        assert not Term("bladder_relative").is_categorical

    def test_model_spec_immutable(self):
        spec = ModelSpec()
        with pytest.raises(dataclasses.FrozenInstanceError):
            spec.name = "other"  # type: ignore[misc]

    def test_model_spec_hashable(self):
        a = ModelSpec(name="phase", terms=(Term("phase", CATEGORICAL, "before"),))
        b = ModelSpec(name="phase", terms=(Term("phase", CATEGORICAL, "before"),))
        assert a == b
        assert len({a, b}) == 1

    def test_fit_result_defaults(self):
        r = FitResult()
        assert r.residuals.size == 0
        assert not r.singular
        assert math.isnan(r.log_likelihood)


# =====================================================================
# Model specifications
# =====================================================================


class TestModelSpec:
    """Formula rendering and labels."""

    def test_intercept_only_formula(self):
        spec = ModelSpec(response=ShiftResponse("bone", "y"))
        assert spec.is_intercept_only
        assert spec.formula() == "bone_y ~ 1"

    def test_formula_with_interaction(self):
        spec = ModelSpec(
            name="multivariable",
            terms=(Term("phase", CATEGORICAL, "before"), Term("bladder_relative")),
            interactions=(("phase", "bladder_relative"),),
        )
        assert spec.formula() == (
            "bone_x ~ phase + bladder_relative + phase:bladder_relative"
        )

    def test_label_whole_cohort(self):
        spec = ModelSpec(name="phase")
        assert spec.subset_label == "all"
        assert spec.label == "bone_x/all/phase"

    def test_label_stratum(self):
        spec = ModelSpec(location="presacral")
        assert spec.label == "bone_x/presacral/intercept"

    def test_default_models(self):
        names = [m.name for m in DEFAULT_MODELS]
        assert names == [
            "intercept", "location", "phase",
            "bladder_baseline", "bladder_relative", "multivariable",
        ]


# =====================================================================
# Variance components and results
# =====================================================================


class TestVarianceComponents:
    """Systematic SD combines the two group levels as variances."""

    def test_systematic_is_sum_of_variances(self):
        vc = VarianceComponents(subject_sd=3.0, node_sd=4.0, residual_sd=1.0)
        assert vc.systematic_sd == pytest.approx(5.0)
        assert vc.systematic_sd ** 2 == pytest.approx(
            vc.subject_sd ** 2 + vc.node_sd ** 2
        )
        assert vc.systematic_sd != pytest.approx(vc.subject_sd + vc.node_sd)

    def test_random_is_residual(self):
        vc = VarianceComponents(subject_sd=1.0, node_sd=1.0, residual_sd=2.5)
        assert vc.random_sd == 2.5

    def test_total_variance(self):
        vc = VarianceComponents(subject_sd=1.0, node_sd=2.0, residual_sd=2.0)
        assert vc.total_variance == pytest.approx(9.0)

    def test_as_dict_keys(self):
        d = VarianceComponents().as_dict()
        assert set(d) == {"subject_sd", "node_sd", "systematic_sd", "random_sd"}


class TestFitResult:

    def test_fixed_effect_lookup(self):
        fe = FixedEffect(term="Intercept", estimate=1.5)
        r = FitResult(fixed_effects=(fe,))
        assert r.fixed_effect("Intercept").estimate == 1.5

    def test_fixed_effect_missing(self):
        with pytest.raises(KeyError):
            FitResult().fixed_effect("phase[T.during]")

    def test_singular_flag(self):
        r = FitResult(singular_components=("node",), residuals=np.zeros(3))
        assert r.singular


class TestConventionalErrors:

    def test_margin_recipe(self):
        ce = ConventionalErrors(systematic=2.0, random=3.0)
        assert ce.margin == pytest.approx(2.5 * 2.0 + 0.7 * 3.0)


# =====================================================================
# Errors
# =====================================================================


class TestErrorHierarchy:

    def test_data_shape_is_value_error(self):
        assert issubclass(DataShapeError, ValueError)
        assert issubclass(DataShapeError, NodeMotionError)

    def test_insufficient_groups_is_fit_error(self):
        assert issubclass(InsufficientGroupsError, ModelFitError)

    def test_presentation_errors_not_fit_errors(self):
        assert not issubclass(EmptySubsetError, ModelFitError)
        assert not issubclass(DegenerateCovariateError, ModelFitError)


# =====================================================================
# AppConfig
# =====================================================================


class TestAppConfig:
    """Test configuration loading from YAML and environment variables."""

    def test_load_from_yaml(self, tmp_path):
        yaml_content = {
            "estimation": {"maxiter": 500, "reml": True},
            "input": {"delimiter": ";"},
        }
        config_file = tmp_path / "config.yaml"
        with open(config_file, "w") as fh:
            yaml.dump(yaml_content, fh)

        cfg = AppConfig.load(default_path=str(config_file))
        assert cfg.data["estimation"]["maxiter"] == 500
        assert cfg.data["input"]["delimiter"] == ";"

    def test_load_with_overlay(self, tmp_path):
        default_file = tmp_path / "default.yaml"
        overlay_file = tmp_path / "overlay.yaml"
        with open(default_file, "w") as fh:
            yaml.dump({"a": 1, "b": {"c": 2}}, fh)
        with open(overlay_file, "w") as fh:
            yaml.dump({"b": {"c": 99, "d": 3}}, fh)

        cfg = AppConfig.load(
            default_path=str(default_file),
            overlay_path=str(overlay_file),
        )
        assert cfg.data == {"a": 1, "b": {"c": 99, "d": 3}}

    def test_load_env_override(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.yaml"
        with open(config_file, "w") as fh:
            yaml.dump({"estimation": {"singular_tolerance": 1e-6}}, fh)

        monkeypatch.setenv("NMA_ESTIMATION__SINGULAR_TOLERANCE", "1e-5")
        cfg = AppConfig.load(default_path=str(config_file))
        assert cfg.data["estimation"]["singular_tolerance"] == pytest.approx(1e-5)

    def test_overlay_variable_not_merged(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NMA_CONFIG", str(tmp_path / "x.yaml"))
        cfg = AppConfig.load(default_path=str(tmp_path / "missing.yaml"))
        assert "config" not in cfg.data

    def test_load_nonexistent_file(self, tmp_path):
        cfg = AppConfig.load(
            default_path=str(tmp_path / "does_not_exist.yaml")
        )
        assert cfg.data == {}

    def test_analysis_view(self):
        cfg = AppConfig(data={"estimation": {"maxiter": 10, "reml": False}})
        est = cfg.analysis().estimation
        assert est.maxiter == 10
        assert est.reml is False


# =====================================================================
# AnalysisConfig
# =====================================================================


class TestAnalysisConfig:
    """Typed configuration built from a merged tree."""

    def test_defaults(self):
        cfg = AnalysisConfig()
        assert cfg.locations == ("mesorectal", "presacral", "lateral")
        assert cfg.phases == ("before", "during")
        assert cfg.shift_columns == (
            "bone_x", "bone_y", "bone_z", "tumor_x", "tumor_y", "tumor_z",
        )

    def test_from_empty_mapping_matches_defaults(self):
        assert AnalysisConfig.from_mapping({}) == AnalysisConfig()

    def test_from_mapping_overrides(self):
        cfg = AnalysisConfig.from_mapping({
            "input": {"delimiter": ";", "columns": {"subject": "PatientID"}},
            "units": {"shift_scale": 1.0},
            "analysis": {
                "axes": ["z"],
                "models": [{"name": "phase", "terms": ["phase"]}],
            },
            "estimation": {"p_value_method": "wald", "maxiter": 50},
        })
        assert cfg.delimiter == ";"
        assert cfg.columns["subject"] == "PatientID"
        assert cfg.columns["node"] == "Node"
        assert cfg.shift_scale == 1.0
        assert cfg.axes == ("z",)
        assert [m.name for m in cfg.models] == ["phase"]
        assert cfg.estimation.p_value_method == "wald"
        assert cfg.estimation.maxiter == 50

    def test_interactions_parsed_as_pairs(self):
        cfg = AnalysisConfig.from_mapping({
            "analysis": {"models": [{
                "name": "m", "terms": ["phase", "bladder_relative"],
                "interactions": [["phase", "bladder_relative"]],
            }]},
        })
        assert cfg.models[0].interactions == (("phase", "bladder_relative"),)

    def test_axis_label_fallback(self):
        cfg = AnalysisConfig()
        assert cfg.axis_label("z") == "Cranio-caudal"
        assert cfg.axis_label("w") == "w"

    def test_palette_fallback(self):
        cfg = AnalysisConfig()
        assert cfg.palette.location_color("unknown") == cfg.palette.default
