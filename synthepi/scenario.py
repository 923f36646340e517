"""Scenario assembly: the full generation pipeline.

blocks → residence tables → residences → population → clusters

The resulting Scenario is immutable by convention: only the dynamic
fields of ``population.agents`` (phase and schedule) change afterwards,
and only inside the evolution engine.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from synthepi.clusters import assign_cluster_memberships, build_cluster_layer
from synthepi.config import ClusterSection, ScenarioSection, fully_connected_config
from synthepi.population import age_pyramid_from, gen_population
from synthepi.residences import (
    check_residences,
    gen_pop_blocks,
    gen_res_blocks,
    gen_residences,
)
from synthepi.types import Scenario

logger = logging.getLogger(__name__)


def build_scenario(
    rng: np.random.Generator,
    scenario_cfg: ScenarioSection,
    cluster_cfgs: Sequence[ClusterSection] = (),
) -> Scenario:
    """Generate residences, population and clusters.

    Args:
        rng: Scenario random generator.
        scenario_cfg: Population/residence parameters.
        cluster_cfgs: One section per cluster category, generated in order.

    Returns:
        Scenario ready for evolution (everyone SUSCEPTIBLE).
    """
    pop_blocks = gen_pop_blocks(
        rng, scenario_cfg.num_population, tuple(scenario_cfg.region_size)
    )
    res_blocks = gen_res_blocks(rng, pop_blocks, scenario_cfg.residence_size_weights)
    residences = gen_residences(rng, res_blocks)
    check_residences(residences, pop_blocks)

    pyramid = age_pyramid_from(
        scenario_cfg.age_pyramid, scenario_cfg.age_max, scenario_cfg.pyramid_power
    )
    population = gen_population(
        rng,
        residences,
        scenario_cfg.gamma_susceptibility,
        scenario_cfg.gamma_infectivity,
        pyramid,
    )

    layers = {}
    for section in cluster_cfgs:
        layer = build_cluster_layer(rng, population, section)
        assign_cluster_memberships(population, layer)
        layers[layer.name] = layer

    logger.info(
        "scenario '%s': %d individuals, %d residences, %d cluster categories",
        scenario_cfg.name, len(population), len(residences), len(layers),
    )
    return Scenario(
        name=scenario_cfg.name,
        pop_blocks=pop_blocks,
        res_blocks=res_blocks,
        residences=residences,
        population=population,
        cluster_layers=layers,
    )


def build_fully_connected_scenario(
    rng: np.random.Generator,
    num_population: int = 1_000,
) -> Scenario:
    """Single block of single-person residences plus one complete cluster."""
    config = fully_connected_config(
        num_population=num_population,
        initial_exposed=min(2, num_population),
    )
    return build_scenario(rng, config.scenario, config.clusters)
