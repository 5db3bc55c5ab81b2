"""Model specification catalogue.

Expands the configured model templates over registration references,
location subsets and shift axes into an ordered list of
:class:`~node_motion.domain.models.ModelSpec`.  Formulas are rendered from
these objects, never assembled by callers.
"""

from __future__ import annotations

import logging

from node_motion.domain.models import (
    AXES,
    CATEGORICAL,
    CONTINUOUS,
    REFERENCES,
    AnalysisConfig,
    ModelSpec,
    ModelTemplate,
    ShiftResponse,
    Term,
)

logger = logging.getLogger(__name__)

LOCATION_TERM = "location"


def term_catalogue(config: AnalysisConfig) -> dict[str, Term]:
    """Return the fixed-effect terms the observation frame supports."""
    return {
        "location": Term("location", CATEGORICAL, config.location_reference),
        "phase": Term("phase", CATEGORICAL, config.phase_reference),
        "bladder_baseline": Term("bladder_baseline", CONTINUOUS),
        "bladder_relative": Term("bladder_relative", CONTINUOUS),
    }


def resolve_template(
    template: ModelTemplate,
    response: ShiftResponse,
    location: str | None,
    catalogue: dict[str, Term],
) -> ModelSpec:
    """Bind a template to a response and subset.

    Inside a location stratum the location term is constant, so it is
    dropped together with any interaction that involves it.

    Raises
    ------
    ValueError
        If the template names a term missing from *catalogue*.
    """
    names = set(template.terms)
    for a, b in template.interactions:
        names.update((a, b))
    unknown = sorted(names - set(catalogue))
    if unknown:
        raise ValueError(
            f"Model {template.name!r} uses unknown terms: {', '.join(unknown)}"
        )

    terms = [catalogue[n] for n in template.terms]
    interactions = list(template.interactions)
    if location is not None:
        terms = [t for t in terms if t.name != LOCATION_TERM]
        interactions = [
            pair for pair in interactions if LOCATION_TERM not in pair
        ]

    return ModelSpec(
        name=template.name,
        response=response,
        terms=tuple(terms),
        interactions=tuple(interactions),
        location=location,
    )


def build_model_specs(config: AnalysisConfig | None = None) -> list[ModelSpec]:
    """Enumerate every reference x subset x axis x model combination.

    Subsets are the whole cohort (when enabled) followed by each location
    stratum.  A template that collapses onto a fixed-effects structure
    already requested for the same response and subset (e.g. the location
    model inside a stratum) is left out.

    Returns
    -------
    list[ModelSpec]
        Specifications in a stable order.
    """
    cfg = config or AnalysisConfig()
    for ref in cfg.references:
        if ref not in REFERENCES:
            raise ValueError(f"Unknown registration reference: {ref!r}")
    for axis in cfg.axes:
        if axis not in AXES:
            raise ValueError(f"Unknown shift axis: {axis!r}")

    catalogue = term_catalogue(cfg)
    subsets: list[str | None] = [None] if cfg.include_whole_cohort else []
    subsets.extend(cfg.locations)

    specs: list[ModelSpec] = []
    for reference in cfg.references:
        for location in subsets:
            for axis in cfg.axes:
                response = ShiftResponse(reference=reference, axis=axis)
                seen: set[tuple[tuple[Term, ...], tuple[tuple[str, str], ...]]] = set()
                for template in cfg.models:
                    spec = resolve_template(template, response, location, catalogue)
                    key = (spec.terms, spec.interactions)
                    if key in seen:
                        logger.debug("Skipping %s: duplicates an earlier model", spec.label)
                        continue
                    seen.add(key)
                    specs.append(spec)

    logger.info("Built %d model specifications", len(specs))
    return specs
