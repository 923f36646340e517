"""Clusters: secondary contact groups (schools, workplaces, ...).

A cluster category partitions an eligible subset of the population
(typically age-filtered) into groups. Random categories draw group
sizes r ∈ [1, max_size] with

    P(r) ∝ 1 / (1 + r^α)

so small groups dominate and large ones are rare. The final group may be
truncated when fewer indices remain than the drawn size.

Draw order (scenario stream): one permutation of the eligible subset,
then one weighted size draw per group.
"""

from __future__ import annotations

import logging
import warnings
from typing import List, Optional, Sequence

import numpy as np

from synthepi.config import ClusterSection, ConfigurationError
from synthepi.types import NO_CLUSTER, ClusterLayer, InvariantViolation, Population

logger = logging.getLogger(__name__)


def size_decay(r: np.ndarray, alpha: float) -> np.ndarray:
    """Unnormalized group-size weights 1 / (1 + r^α)."""
    return 1.0 / (1.0 + np.asarray(r, dtype=np.float64) ** alpha)


def gen_clusters(
    rng: np.random.Generator,
    eligible: Sequence[int],
    max_size: int,
    alpha: float,
) -> List[np.ndarray]:
    """Partition the eligible indices into groups of decaying size.

    Args:
        rng: Scenario random generator.
        eligible: Individual indices to partition.
        max_size: Largest group size that can be drawn.
        alpha: Decay exponent of the size distribution.

    Returns:
        List of int64 arrays; disjoint, and their union is `eligible`.
    """
    if max_size < 1:
        raise ConfigurationError(f"max_size must be >= 1, got {max_size}")
    eligible = np.asarray(eligible, dtype=np.int64)
    shuffled = rng.permutation(eligible)

    w = size_decay(np.arange(1, max_size + 1), alpha)
    w = w / w.sum()

    groups: List[np.ndarray] = []
    assigned = 0
    n = len(shuffled)
    while assigned < n:
        size = int(rng.choice(max_size, p=w)) + 1
        groups.append(shuffled[assigned:assigned + size])
        assigned += size
    return groups


def complete_cluster(eligible: Sequence[int]) -> List[np.ndarray]:
    """A single group holding every eligible individual (fully connected)."""
    eligible = np.asarray(eligible, dtype=np.int64)
    if len(eligible) == 0:
        return []
    return [eligible.copy()]


def eligible_individuals(
    ages: np.ndarray,
    min_age: Optional[int] = None,
    max_age: Optional[int] = None,
) -> np.ndarray:
    """Indices with min_age ≤ age ≤ max_age (missing bounds are open)."""
    mask = np.ones(len(ages), dtype=bool)
    if min_age is not None:
        mask &= ages >= min_age
    if max_age is not None:
        mask &= ages <= max_age
    return np.flatnonzero(mask)


def check_partition(groups: List[np.ndarray], eligible: np.ndarray) -> None:
    """Verify groups are disjoint and cover exactly the eligible subset."""
    members = (np.concatenate(groups) if groups
               else np.array([], dtype=np.int64))
    if len(np.unique(members)) != len(members):
        raise InvariantViolation("cluster groups overlap")
    if not np.array_equal(np.sort(members), np.sort(np.asarray(eligible))):
        raise InvariantViolation("cluster groups do not cover the eligible subset")


def build_cluster_layer(
    rng: np.random.Generator,
    population: Population,
    section: ClusterSection,
) -> ClusterLayer:
    """Generate one cluster category from its configuration section."""
    eligible = eligible_individuals(
        population.agents['age'], section.min_age, section.max_age
    )
    if len(eligible) == 0:
        warnings.warn(
            f"cluster category '{section.name}' has no eligible individuals",
            UserWarning,
            stacklevel=2,
        )
    if section.kind == 'complete':
        groups = complete_cluster(eligible)
    elif section.kind == 'random':
        groups = gen_clusters(rng, eligible, section.max_size, section.alpha)
    else:
        raise ConfigurationError(
            f"unknown cluster kind '{section.kind}' for '{section.name}'"
        )
    check_partition(groups, eligible)
    logger.info(
        "cluster category '%s': %d groups over %d individuals",
        section.name, len(groups), len(eligible),
    )
    return ClusterLayer(name=section.name, groups=groups)


def assign_cluster_memberships(population: Population, layer: ClusterLayer) -> None:
    """Record each member's group index for this category (in place)."""
    membership = np.full(len(population), NO_CLUSTER, dtype=np.int32)
    for i, group in enumerate(layer.groups):
        membership[group] = i
    population.clusters[layer.name] = membership
