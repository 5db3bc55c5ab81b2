"""Domain models for the lymph-node motion analysis.

All models are frozen dataclasses to enforce immutability. Mutable default
values (e.g. numpy arrays, dicts) use ``field(default_factory=...)``.
Model specifications are hashable so they can key batch results.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import yaml


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _empty_array() -> np.ndarray:
    """Return an empty float64 array."""
    return np.empty(0, dtype=np.float64)


def _empty_dict() -> dict[str, Any]:
    """Return an empty dictionary."""
    return {}


AXES: tuple[str, ...] = ("x", "y", "z")
REFERENCES: tuple[str, ...] = ("bone", "tumor")

CATEGORICAL = "categorical"
CONTINUOUS = "continuous"


# ---------------------------------------------------------------------------
# Model specification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ShiftResponse:
    """One shift component: an axis measured against a registration reference."""

    reference: str = "bone"
    axis: str = "x"

    @property
    def column(self) -> str:
        """Name of the response column in the observation frame."""
        return f"{self.reference}_{self.axis}"


@dataclass(frozen=True)
class Term:
    """A fixed-effect covariate.

    Categorical terms carry the level used as the treatment-coding
    reference; continuous terms enter the design as-is.
    """

    name: str = ""
    kind: str = CONTINUOUS
    reference: str | None = None

    @property
    def is_categorical(self) -> bool:
        return self.kind == CATEGORICAL


@dataclass(frozen=True)
class ModelSpec:
    """A single requested fit: response, fixed effects, and location subset.

    ``location`` of ``None`` means the whole cohort.  ``interactions`` holds
    pairs of term names whose product enters the design in addition to the
    main effects.
    """

    name: str = "intercept"
    response: ShiftResponse = field(default_factory=ShiftResponse)
    terms: tuple[Term, ...] = ()
    interactions: tuple[tuple[str, str], ...] = ()
    location: str | None = None

    @property
    def subset_label(self) -> str:
        return self.location if self.location is not None else "all"

    @property
    def is_intercept_only(self) -> bool:
        return not self.terms and not self.interactions

    @property
    def term_names(self) -> tuple[str, ...]:
        return tuple(t.name for t in self.terms)

    @property
    def label(self) -> str:
        """Human-readable identifier, e.g. ``bone_x/all/phase``."""
        return f"{self.response.column}/{self.subset_label}/{self.name}"

    def formula(self) -> str:
        """Render the fixed-effects formula for the fitting library."""
        parts = [t.name for t in self.terms]
        parts.extend(f"{a}:{b}" for a, b in self.interactions)
        rhs = " + ".join(parts) if parts else "1"
        return f"{self.response.column} ~ {rhs}"


# ---------------------------------------------------------------------------
# Fit results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FixedEffect:
    """Estimate and significance of one fixed-effect coefficient."""

    term: str = ""
    estimate: float = 0.0
    std_error: float = 0.0
    df: float = math.inf
    statistic: float = 0.0
    p_value: float = 1.0
    ci_lower: float = 0.0
    ci_upper: float = 0.0


@dataclass(frozen=True)
class VarianceComponents:
    """Standard deviations of the nested random effects and the residual.

    The systematic SD combines the two group levels as a sum of variances,
    ``sqrt(subject_sd**2 + node_sd**2)``.
    """

    subject_sd: float = 0.0
    node_sd: float = 0.0
    residual_sd: float = 0.0

    @property
    def systematic_variance(self) -> float:
        return self.subject_sd ** 2 + self.node_sd ** 2

    @property
    def systematic_sd(self) -> float:
        return math.sqrt(self.systematic_variance)

    @property
    def random_sd(self) -> float:
        return self.residual_sd

    @property
    def total_variance(self) -> float:
        return self.systematic_variance + self.residual_sd ** 2

    def as_dict(self) -> dict[str, float]:
        return {
            "subject_sd": self.subject_sd,
            "node_sd": self.node_sd,
            "systematic_sd": self.systematic_sd,
            "random_sd": self.random_sd,
        }


@dataclass(frozen=True)
class FitResult:
    """Read-only summary of one fitted nested random-intercept model."""

    spec: ModelSpec = field(default_factory=ModelSpec)
    n_obs: int = 0
    n_subjects: int = 0
    n_nodes: int = 0
    fixed_effects: tuple[FixedEffect, ...] = ()
    variance: VarianceComponents = field(default_factory=VarianceComponents)
    log_likelihood: float = math.nan
    method: str = ""
    converged: bool = True
    singular_components: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    residuals: np.ndarray = field(default_factory=_empty_array)
    fitted_values: np.ndarray = field(default_factory=_empty_array)

    @property
    def singular(self) -> bool:
        return bool(self.singular_components)

    def fixed_effect(self, term: str) -> FixedEffect:
        """Return the coefficient named *term*.

        Raises
        ------
        KeyError
            If the model has no such coefficient.
        """
        for fe in self.fixed_effects:
            if fe.term == term:
                return fe
        raise KeyError(term)


FITTED = "fitted"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class BatchEntry:
    """Outcome of one specification in a batch run."""

    spec: ModelSpec = field(default_factory=ModelSpec)
    status: str = FITTED
    result: FitResult | None = None
    note: str = ""


@dataclass(frozen=True)
class ConventionalErrors:
    """Population error statistics from per-subject means and SDs.

    ``margin`` is the van Herk CTV-to-PTV recipe ``2.5 * Sigma + 0.7 * sigma``.
    """

    response: ShiftResponse = field(default_factory=ShiftResponse)
    location: str | None = None
    n_subjects: int = 0
    n_obs: int = 0
    group_mean: float = 0.0
    systematic: float = 0.0
    random: float = 0.0

    @property
    def margin(self) -> float:
        return 2.5 * self.systematic + 0.7 * self.random


# ---------------------------------------------------------------------------
# Typed analysis configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelTemplate:
    """A named fixed-effects structure, independent of axis and subset."""

    name: str = "intercept"
    terms: tuple[str, ...] = ()
    interactions: tuple[tuple[str, str], ...] = ()


DEFAULT_MODELS: tuple[ModelTemplate, ...] = (
    ModelTemplate("intercept"),
    ModelTemplate("location", ("location",)),
    ModelTemplate("phase", ("phase",)),
    ModelTemplate("bladder_baseline", ("bladder_baseline",)),
    ModelTemplate("bladder_relative", ("bladder_relative",)),
    ModelTemplate(
        "multivariable",
        ("location", "phase", "bladder_relative"),
        (("phase", "bladder_relative"),),
    ),
)

DEFAULT_COLUMNS: dict[str, str] = {
    "subject": "Patient",
    "node": "Node",
    "phase": "Phase",
    "location": "Location",
    "bone_x": "Bone_X",
    "bone_y": "Bone_Y",
    "bone_z": "Bone_Z",
    "tumor_x": "Tumor_X",
    "tumor_y": "Tumor_Y",
    "tumor_z": "Tumor_Z",
    "bladder_baseline": "BV_baseline",
    "bladder_relative": "BV_relative",
}


@dataclass(frozen=True)
class EstimationSettings:
    """Optimizer and inference settings for the mixed-model fits."""

    methods: tuple[str, ...] = ("lbfgs", "bfgs", "nm")
    maxiter: int = 2000
    reml: bool = True
    singular_tolerance: float = 1e-6
    p_value_method: str = "between_within"
    alpha: float = 0.05
    min_groups: int = 2


@dataclass(frozen=True)
class Palette:
    """Plot colours keyed by location and phase."""

    locations: dict[str, str] = field(default_factory=lambda: {
        "mesorectal": "#1b9e77",
        "presacral": "#d95f02",
        "lateral": "#7570b3",
    })
    phases: dict[str, str] = field(default_factory=lambda: {
        "before": "#4575b4",
        "during": "#d73027",
    })
    subject_cmap: str = "tab20"
    default: str = "#555555"

    def location_color(self, location: str) -> str:
        return self.locations.get(location, self.default)

    def phase_color(self, phase: str) -> str:
        return self.phases.get(phase, self.default)


@dataclass(frozen=True)
class AnalysisConfig:
    """Everything a batch run needs, resolved from the YAML configuration."""

    columns: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_COLUMNS))
    delimiter: str = ","
    decimal: str = "."
    node_pattern: str = r"^\s*(?P<node>[A-Za-z]*\d+)"
    shift_scale: float = 10.0
    bladder_scale: float = 0.01
    location_codes: dict[str, str] = field(default_factory=lambda: {
        "M": "mesorectal",
        "P": "presacral",
        "L": "lateral",
    })
    location_reference: str = "mesorectal"
    phase_aliases: dict[str, str] = field(default_factory=lambda: {
        "before": "before",
        "pre": "before",
        "during": "during",
        "rt": "during",
    })
    phase_reference: str = "before"
    references: tuple[str, ...] = REFERENCES
    axes: tuple[str, ...] = AXES
    axis_labels: dict[str, str] = field(default_factory=lambda: {
        "x": "Left-right",
        "y": "Anterior-posterior",
        "z": "Cranio-caudal",
    })
    include_whole_cohort: bool = True
    models: tuple[ModelTemplate, ...] = DEFAULT_MODELS
    estimation: EstimationSettings = field(default_factory=EstimationSettings)
    palette: Palette = field(default_factory=Palette)
    figure_dpi: int = 150
    figure_format: str = "png"

    @property
    def locations(self) -> tuple[str, ...]:
        """Location names in code order, without duplicates."""
        return tuple(dict.fromkeys(self.location_codes.values()))

    @property
    def phases(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(self.phase_aliases.values()))

    @property
    def shift_columns(self) -> tuple[str, ...]:
        return tuple(f"{r}_{a}" for r in self.references for a in self.axes)

    def axis_label(self, axis: str) -> str:
        return self.axis_labels.get(axis, axis)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> AnalysisConfig:
        """Build the typed config from a merged configuration tree.

        Missing sections fall back to the dataclass defaults.
        """
        base = cls()
        inp = data.get("input", {}) or {}
        units = data.get("units", {}) or {}
        levels = data.get("levels", {}) or {}
        loc = levels.get("location", {}) or {}
        phase = levels.get("phase", {}) or {}
        analysis = data.get("analysis", {}) or {}
        est = data.get("estimation", {}) or {}
        pal = data.get("palette", {}) or {}
        fig = data.get("figures", {}) or {}

        columns = dict(base.columns)
        columns.update(inp.get("columns", {}) or {})

        models = base.models
        if analysis.get("models"):
            models = tuple(
                ModelTemplate(
                    name=str(m["name"]),
                    terms=tuple(m.get("terms", ()) or ()),
                    interactions=tuple(
                        (str(a), str(b)) for a, b in (m.get("interactions", ()) or ())
                    ),
                )
                for m in analysis["models"]
            )

        estimation = EstimationSettings(
            methods=_as_tuple(est.get("methods", base.estimation.methods)),
            maxiter=int(est.get("maxiter", base.estimation.maxiter)),
            reml=bool(est.get("reml", base.estimation.reml)),
            singular_tolerance=float(
                est.get("singular_tolerance", base.estimation.singular_tolerance)
            ),
            p_value_method=str(est.get("p_value_method", base.estimation.p_value_method)),
            alpha=float(est.get("alpha", base.estimation.alpha)),
            min_groups=int(est.get("min_groups", base.estimation.min_groups)),
        )

        palette = Palette(
            locations=dict(pal.get("locations", base.palette.locations)),
            phases=dict(pal.get("phases", base.palette.phases)),
            subject_cmap=str(pal.get("subject_cmap", base.palette.subject_cmap)),
            default=str(pal.get("default", base.palette.default)),
        )

        return cls(
            columns=columns,
            delimiter=str(inp.get("delimiter", base.delimiter)),
            decimal=str(inp.get("decimal", base.decimal)),
            node_pattern=str(inp.get("node_pattern", base.node_pattern)),
            shift_scale=float(units.get("shift_scale", base.shift_scale)),
            bladder_scale=float(units.get("bladder_scale", base.bladder_scale)),
            location_codes={
                str(k): str(v)
                for k, v in (loc.get("codes", base.location_codes) or {}).items()
            },
            location_reference=str(loc.get("reference", base.location_reference)),
            phase_aliases={
                str(k).lower(): str(v)
                for k, v in (phase.get("aliases", base.phase_aliases) or {}).items()
            },
            phase_reference=str(phase.get("reference", base.phase_reference)),
            references=_as_tuple(analysis.get("references", base.references)),
            axes=_as_tuple(analysis.get("axes", base.axes)),
            axis_labels=dict(analysis.get("axis_labels", base.axis_labels)),
            include_whole_cohort=bool(
                analysis.get("include_whole_cohort", base.include_whole_cohort)
            ),
            models=models,
            estimation=estimation,
            palette=palette,
            figure_dpi=int(fig.get("dpi", base.figure_dpi)),
            figure_format=str(fig.get("format", base.figure_format)),
        )


@dataclass(frozen=True)
class AppConfig:
    """Application configuration loaded from YAML with environment overlays.

    Configuration is resolved in order:
      1. the packaged ``default.yaml``
      2. an optional overlay file
      3. environment variables prefixed with ``NMA_``
    """

    data: dict[str, Any] = field(default_factory=_empty_dict)

    # -- factory -----------------------------------------------------------

    @staticmethod
    def load(
        default_path: str | Path,
        overlay_path: str | Path | None = None,
        env_prefix: str = "NMA_",
    ) -> AppConfig:
        """Load configuration from YAML files and environment variables.

        Parameters
        ----------
        default_path:
            Path to the base configuration file.
        overlay_path:
            Optional path to a project-specific overlay.
        env_prefix:
            Prefix for environment variable overrides.  A variable named
            ``NMA_ESTIMATION__MAXITER`` maps to ``config["estimation"]["maxiter"]``.

        Returns
        -------
        AppConfig
            Frozen configuration object exposing the merged dictionary via
            ``data``.
        """
        merged: dict[str, Any] = {}

        # 1. Load default
        default = Path(default_path)
        if default.exists():
            with open(default, "r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            merged = _deep_merge(merged, raw)

        # 2. Load overlay
        if overlay_path is not None:
            overlay = Path(overlay_path)
            if overlay.exists():
                with open(overlay, "r", encoding="utf-8") as fh:
                    raw = yaml.safe_load(fh) or {}
                merged = _deep_merge(merged, raw)

        # 3. Apply environment variable overrides
        for key, value in os.environ.items():
            if key.startswith(env_prefix) and key != f"{env_prefix}CONFIG":
                parts = key[len(env_prefix):].lower().split("__")
                _set_nested(merged, parts, _coerce(value))

        return AppConfig(data=merged)

    # -- typed view ---------------------------------------------------------

    def analysis(self) -> AnalysisConfig:
        """Return the typed :class:`AnalysisConfig` view of this tree."""
        return AnalysisConfig.from_mapping(self.data)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *overlay* into *base* (non-destructive)."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _set_nested(d: dict[str, Any], parts: list[str], value: Any) -> None:
    """Set a value in a nested dict using a list of keys."""
    for part in parts[:-1]:
        d = d.setdefault(part, {})
    if parts:
        d[parts[-1]] = value


def _as_tuple(value: Any) -> tuple[str, ...]:
    """List-valued setting; env overrides arrive as ``"a,b"`` strings."""
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return tuple(str(v) for v in value)


def _coerce(value: str) -> Any:
    """Best-effort coercion from string to bool / int / float / str."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value
