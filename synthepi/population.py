"""Population generation: static attributes of every individual.

Handles: residence assignment, positions around the residence centre,
ages from an age pyramid, and independent Gamma-distributed
susceptibility and infectivity factors. Dynamic state starts
SUSCEPTIBLE with an unscheduled transition.

Draw order (scenario stream): susceptibility ×N, infectivity ×N, ages ×N.
Positions are deterministic given the residences.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np

from synthepi.config import GammaParams, check_weights
from synthepi.residences import block_grid_num
from synthepi.types import Population, Residences, allocate_individuals

logger = logging.getLogger(__name__)

# Radius (block units) of the circle of co-residents in a block with one
# residence sub-grid cell per axis; scaled by 1 / block_grid_num.
BASE_RADIUS = 0.25


def pyramid_weights(age_max: int = 100, power: float = 2.0) -> np.ndarray:
    """Reference age pyramid over ages 0..age_max.

    w(a) = (a + 1) × (age_max − a)^power, normalized to sum 1.
    """
    ages = np.arange(age_max + 1, dtype=np.float64)
    w = (ages + 1.0) * (age_max - ages) ** power
    return w / w.sum()


def residence_positions(residences: Residences) -> np.ndarray:
    """Positions of all individuals, shape (N, 2).

    Member i (0-based) of a residence with k members sits at angle
    2πi/k around the residence centre. The radius shrinks with the
    number of residences in the block so neighbouring households stay
    apart.
    """
    n_total = residences.num_population
    res_of = np.repeat(np.arange(len(residences)), residences.num_residents)
    rank = np.arange(n_total) - residences.first_resident[res_of]
    k = residences.num_residents[res_of]
    theta = 2.0 * np.pi * rank / k

    block_counts = residences.block_res_counts.ravel()
    bgn = np.array([block_grid_num(r) for r in block_counts], dtype=np.float64)
    radius = np.zeros_like(bgn)
    occupied = bgn > 0
    radius[occupied] = BASE_RADIUS / bgn[occupied]
    r = radius[residences.block[res_of]]

    pos = np.empty((n_total, 2), dtype=np.float64)
    pos[:, 0] = residences.x[res_of] + r * np.cos(theta)
    pos[:, 1] = residences.y[res_of] + r * np.sin(theta)
    return pos


def gen_population(
    rng: np.random.Generator,
    residences: Residences,
    gamma_susceptibility: GammaParams,
    gamma_infectivity: GammaParams,
    age_pyramid: Sequence[float],
) -> Population:
    """Create every individual with its static attributes.

    Args:
        rng: Scenario random generator.
        residences: Generated residences (defines N and residence ids).
        gamma_susceptibility: Gamma(shape, scale) for susceptibility.
        gamma_infectivity: Gamma(shape, scale) for infectivity.
        age_pyramid: Weights for ages 0..len-1.

    Returns:
        Population with an empty cluster-membership map.
    """
    pyramid = check_weights(age_pyramid, "age_pyramid")
    n = residences.num_population

    susceptibility = rng.gamma(
        gamma_susceptibility.shape, gamma_susceptibility.scale, size=n
    )
    infectivity = rng.gamma(
        gamma_infectivity.shape, gamma_infectivity.scale, size=n
    )
    ages = rng.choice(len(pyramid), size=n, p=pyramid)

    agents = allocate_individuals(n)
    agents['residence'] = np.repeat(
        np.arange(len(residences)), residences.num_residents
    )
    pos = residence_positions(residences)
    agents['x'] = pos[:, 0]
    agents['y'] = pos[:, 1]
    agents['age'] = ages
    agents['susceptibility'] = susceptibility
    agents['infectivity'] = infectivity

    logger.info("generated %d individuals", n)
    return Population(agents=agents)


def age_pyramid_from(
    explicit: Optional[Sequence[float]],
    age_max: int,
    power: float,
) -> np.ndarray:
    """Explicit pyramid weights when given, else the reference pyramid."""
    if explicit is not None:
        return check_weights(explicit, "age_pyramid")
    return pyramid_weights(age_max, power)
