"""Core data types for SynthEpi.

This module is the SINGLE SOURCE OF TRUTH for:
  - Phase enumeration (disease stages of an individual)
  - INDIVIDUAL_DTYPE: NumPy structured array dtype for individuals
  - Residences, ClusterLayer, Population, Scenario containers
  - Error types shared across the generation pipeline and the engine

All modules import these types from here. No other module defines
individual fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# ERRORS
# ═══════════════════════════════════════════════════════════════════════

class InvariantViolation(RuntimeError):
    """A structural invariant of the scenario or the evolution was broken.

    Raised for generation-time allocation mismatches and for per-step
    anomalies such as a negative or non-finite force of infection.
    Never retried: the computation is deterministic.
    """


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class Phase(IntEnum):
    """Disease phases of an individual.

    SUSCEPTIBLE  → EXPOSED       (hazard draw every step)
    EXPOSED      → ASYMPTOMATIC | INFECTED      (scheduled)
    ASYMPTOMATIC → RECOVERED                    (scheduled)
    INFECTED     → RECOVERED | DECEASED         (scheduled)
    RECOVERED, DECEASED: absorbing
    """
    SUSCEPTIBLE  = 0
    EXPOSED      = 1
    INFECTED     = 2
    ASYMPTOMATIC = 3
    RECOVERED    = 4
    DECEASED     = 5


N_PHASES = len(Phase)

INFECTIOUS_PHASES = (Phase.INFECTED, Phase.ASYMPTOMATIC)
TRANSIENT_PHASES = (Phase.EXPOSED, Phase.INFECTED, Phase.ASYMPTOMATIC)
TERMINAL_PHASES = (Phase.RECOVERED, Phase.DECEASED)

# Step index that is never reached (absorbing phases, unscheduled individuals)
NEVER = np.iinfo(np.int64).max

# Membership sentinel for individuals outside every group of a category
NO_CLUSTER = -1


# ═══════════════════════════════════════════════════════════════════════
# INDIVIDUAL_DTYPE — structured array for the whole population
# ═══════════════════════════════════════════════════════════════════════

INDIVIDUAL_DTYPE = np.dtype([
    # --- Dynamic state (written by disease.step_forward only) ---
    ('phase',          np.int8),      # Phase enum
    ('prev_step',      np.int64),     # step of the last transition
    ('next_step',      np.int64),     # step at which next_phase is applied
    ('next_phase',     np.int8),      # scheduled phase

    # --- Static attributes (written once by population.gen_population) ---
    ('residence',      np.int32),     # residence index
    ('x',              np.float64),   # position (block units)
    ('y',              np.float64),
    ('age',            np.int16),     # years
    ('susceptibility', np.float64),   # Gamma-distributed factor
    ('infectivity',    np.float64),   # Gamma-distributed factor
])


def allocate_individuals(n: int) -> np.ndarray:
    """Allocate an individual array in the fresh, unscheduled state.

    Every individual starts SUSCEPTIBLE with the placeholder schedule
    (prev_step=1, next_step=NEVER, next_phase=EXPOSED).

    Args:
        n: Number of individuals.

    Returns:
        Structured array of shape (n,) with INDIVIDUAL_DTYPE.
    """
    agents = np.zeros(n, dtype=INDIVIDUAL_DTYPE)
    agents['phase'] = Phase.SUSCEPTIBLE
    agents['prev_step'] = 1
    agents['next_step'] = NEVER
    agents['next_phase'] = Phase.EXPOSED
    return agents


# ═══════════════════════════════════════════════════════════════════════
# CONTAINERS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Residences:
    """Residences as parallel arrays (one entry per residence).

    Members of a residence occupy a contiguous index range starting at
    ``first_resident``; see :meth:`residents`.
    """
    block: np.ndarray            # (R,) int64, owning block id (row * cols + col)
    x: np.ndarray                # (R,) float64
    y: np.ndarray                # (R,) float64
    num_residents: np.ndarray    # (R,) int64
    first_resident: np.ndarray   # (R,) int64
    block_res_counts: np.ndarray  # (rows, cols) int64, residences per block

    def __len__(self) -> int:
        return len(self.block)

    @property
    def num_population(self) -> int:
        return int(self.num_residents.sum())

    def residents(self, m: int) -> np.ndarray:
        """Ordered member indices of residence *m*."""
        start = int(self.first_resident[m])
        return np.arange(start, start + int(self.num_residents[m]))

    def __getitem__(self, m: int):
        return (
            int(self.block[m]),
            (float(self.x[m]), float(self.y[m])),
            int(self.num_residents[m]),
            self.residents(m),
        )


@dataclass
class ClusterLayer:
    """One cluster category: a partition of its eligible individuals."""
    name: str
    groups: List[np.ndarray] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.groups)

    @property
    def sizes(self) -> np.ndarray:
        return np.array([len(g) for g in self.groups], dtype=np.int64)

    @property
    def members(self) -> np.ndarray:
        """All member indices (concatenated in group order)."""
        if not self.groups:
            return np.array([], dtype=np.int64)
        return np.concatenate(self.groups)


@dataclass
class Population:
    """Individuals plus their cluster memberships.

    ``clusters[name][n]`` is the group index of individual n in category
    ``name``, or NO_CLUSTER.
    """
    agents: np.ndarray
    clusters: Dict[str, np.ndarray] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.agents)

    @property
    def phase(self) -> np.ndarray:
        return self.agents['phase']

    def memberships(self, n: int) -> Dict[str, int]:
        """Category → group index map for individual n."""
        return {
            name: int(idx[n]) for name, idx in self.clusters.items()
            if idx[n] != NO_CLUSTER
        }


@dataclass
class Scenario:
    """Static generated structure prior to evolution."""
    name: str
    pop_blocks: np.ndarray        # (rows, cols) int64
    res_blocks: np.ndarray        # (rows, cols, J) int64 residence counts per size
    residences: Residences
    population: Population
    cluster_layers: Dict[str, ClusterLayer] = field(default_factory=dict)

    @property
    def num_population(self) -> int:
        return len(self.population)
