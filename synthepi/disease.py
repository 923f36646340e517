"""Disease dynamics: force of infection and the phase transition machine.

Implements:
  - Force of infection per susceptible individual n:
        λ_n = Σ_layers τ_layer × (Σ infectivity of infectious co-members)
                               / (number of co-members)
    over the individual's residence and each cluster it belongs to.
    Infectious = INFECTED or ASYMPTOMATIC. Non-susceptibles get λ = 0.
  - Group threshold policy (fixed):
        residences contribute with ≥ 1 co-resident,
        clusters contribute with ≥ 2 co-members.
  - Stochastic S → E each step with p = 1 − exp(−λ_n × susceptibility_n)
  - Scheduled look-ahead for every other transition: on entering a phase,
    the exit (next_phase, next_step) is drawn at once and applied when the
    step counter reaches next_step. Absorbing phases get next_step = NEVER.

Two equivalent λ computations are provided:
  - force_of_infection       push: one sparse product per layer,
                             O(N + memberships) per step
  - force_of_infection_pull  per-individual scan, reference implementation

Draw order per step (evolution stream), fixed for reproducibility:
  1. one uniform per individual (infection test), vectorised;
  2. schedules of the newly exposed (batch_transition_rules);
  3. schedules of the individuals whose scheduled transition fired.
Within batch_transition_rules: branch uniforms for EXPOSED entries, then
for INFECTED entries, then dwell draws per table in the order
E→A, E→I, A→R, I→R, I→D. Entries are taken in array order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np
from scipy.sparse import csr_matrix

from synthepi.config import ConfigurationError, TransitionSection, check_weights
from synthepi.types import (
    INFECTIOUS_PHASES,
    NEVER,
    NO_CLUSTER,
    TERMINAL_PHASES,
    TRANSIENT_PHASES,
    InvariantViolation,
    Phase,
    Scenario,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

MIN_RESIDENCE_COMEMBERS = 1
MIN_CLUSTER_COMEMBERS = 2

RESIDENCE_LAYER = 'residences'

_INFECTIOUS = np.array([int(p) for p in INFECTIOUS_PHASES], dtype=np.int8)
_TRANSIENT = np.array([int(p) for p in TRANSIENT_PHASES], dtype=np.int8)
_RULE_PHASES = np.array(
    [int(p) for p in TRANSIENT_PHASES + TERMINAL_PHASES], dtype=np.int8
)


class TransitionRuleError(ValueError):
    """Transition rules invoked for a phase that has no rule."""


# ═══════════════════════════════════════════════════════════════════════
# CONTACT LAYERS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ContactLayer:
    """Groups of one layer as a sparse incidence matrix.

    ``incidence[g, n] = 1`` when individual n belongs to group g.
    ``weight[g]`` is τ / co-members for groups above the threshold,
    otherwise 0.
    """
    name: str
    rate: float
    incidence: csr_matrix       # (n_groups, N)
    weight: np.ndarray          # (n_groups,) float64

    @property
    def n_groups(self) -> int:
        return self.incidence.shape[0]


def _make_layer(
    name: str,
    rate: float,
    groups_flat: np.ndarray,
    sizes: np.ndarray,
    num_population: int,
    min_comembers: int,
) -> ContactLayer:
    sizes = np.asarray(sizes, dtype=np.int64)
    indptr = np.zeros(len(sizes) + 1, dtype=np.int64)
    np.cumsum(sizes, out=indptr[1:])
    data = np.ones(len(groups_flat), dtype=np.float64)
    incidence = csr_matrix(
        (data, np.asarray(groups_flat, dtype=np.int64), indptr),
        shape=(len(sizes), num_population),
    )
    co_members = sizes - 1
    weight = np.zeros(len(sizes), dtype=np.float64)
    active = co_members >= min_comembers
    weight[active] = rate / co_members[active]
    return ContactLayer(name=name, rate=rate, incidence=incidence, weight=weight)


def build_contact_layers(
    scenario: Scenario,
    contact_rates: Dict[str, float],
) -> List[ContactLayer]:
    """Build the residence layer and one layer per cluster category.

    Raises:
        ConfigurationError: If a layer has no contact rate.
    """
    if RESIDENCE_LAYER not in contact_rates:
        raise ConfigurationError("contact_rates must include a 'residences' entry")
    n = scenario.num_population
    res = scenario.residences
    layers = [
        _make_layer(
            RESIDENCE_LAYER,
            float(contact_rates[RESIDENCE_LAYER]),
            np.arange(n, dtype=np.int64),
            res.num_residents,
            n,
            MIN_RESIDENCE_COMEMBERS,
        )
    ]
    for name, layer in scenario.cluster_layers.items():
        if name not in contact_rates:
            raise ConfigurationError(
                f"contact_rates has no entry for cluster category '{name}'"
            )
        layers.append(
            _make_layer(
                name,
                float(contact_rates[name]),
                layer.members,
                layer.sizes,
                n,
                MIN_CLUSTER_COMEMBERS,
            )
        )
    return layers


# ═══════════════════════════════════════════════════════════════════════
# FORCE OF INFECTION
# ═══════════════════════════════════════════════════════════════════════

def check_hazard(lam: np.ndarray) -> None:
    """λ must be finite and non-negative everywhere."""
    if not np.all(np.isfinite(lam)):
        raise InvariantViolation("non-finite force of infection")
    if np.any(lam < 0):
        raise InvariantViolation(
            f"negative force of infection (min {float(lam.min())})"
        )


def force_of_infection(
    agents: np.ndarray,
    layers: Sequence[ContactLayer],
) -> np.ndarray:
    """Per-individual hazard from the pre-step phases (push strategy).

    Per layer: infectious sums per group (M·v), weighted by τ / co-members,
    scattered back to every member (Mᵀ·w). A susceptible individual is not
    infectious, so its own infectivity never enters its hazard.

    Args:
        agents: Individual array (read only).
        layers: Layers from build_contact_layers().

    Returns:
        λ, shape (N,), zero for every non-susceptible individual.
    """
    phase = agents['phase']
    infectious = np.isin(phase, _INFECTIOUS)
    v = np.where(infectious, agents['infectivity'], 0.0)

    lam = np.zeros(len(agents), dtype=np.float64)
    if infectious.any():
        for layer in layers:
            if layer.rate == 0.0 or layer.n_groups == 0:
                continue
            group_sum = layer.incidence @ v
            lam += layer.incidence.T @ (group_sum * layer.weight)
    lam[phase != Phase.SUSCEPTIBLE] = 0.0
    check_hazard(lam)
    return lam


def force_of_infection_pull(
    scenario: Scenario,
    contact_rates: Dict[str, float],
) -> np.ndarray:
    """Per-individual hazard by scanning each individual's own groups.

    Equivalent to force_of_infection(); kept as the readable reference.
    """
    agents = scenario.population.agents
    phase = agents['phase']
    infectivity = agents['infectivity']
    infectious = np.isin(phase, _INFECTIOUS)
    residences = scenario.residences
    memberships = scenario.population.clusters

    lam = np.zeros(len(agents), dtype=np.float64)
    for n in range(len(agents)):
        if phase[n] != Phase.SUSCEPTIBLE:
            continue
        total = 0.0
        res = agents['residence'][n]
        co_residents = int(residences.num_residents[res]) - 1
        if co_residents >= MIN_RESIDENCE_COMEMBERS:
            members = residences.residents(res)
            s = infectivity[members][infectious[members]].sum()
            total += contact_rates[RESIDENCE_LAYER] * s / co_residents
        for name, group_of in memberships.items():
            g = group_of[n]
            if g == NO_CLUSTER:
                continue
            members = scenario.cluster_layers[name].groups[g]
            co_members = len(members) - 1
            if co_members >= MIN_CLUSTER_COMEMBERS:
                s = infectivity[members][infectious[members]].sum()
                total += contact_rates[name] * s / co_members
        lam[n] = total
    check_hazard(lam)
    return lam


def infection_probability(lam, susceptibility=1.0):
    """Convert hazard to the probability of exposure in one step.

    p = 1 − exp(−λ × susceptibility)
    """
    return 1.0 - np.exp(-np.asarray(lam) * susceptibility)


# ═══════════════════════════════════════════════════════════════════════
# TRANSITION RULES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class TransitionRules:
    """Branch probabilities and normalized dwell tables (days 1..len)."""
    p_asymp: float
    p_decease: float
    dwell_exposed_asymptomatic: np.ndarray
    dwell_exposed_infected: np.ndarray
    dwell_asymptomatic_recovered: np.ndarray
    dwell_infected_recovered: np.ndarray
    dwell_infected_deceased: np.ndarray

    @classmethod
    def from_config(cls, cfg: TransitionSection) -> 'TransitionRules':
        return cls(
            p_asymp=cfg.p_asymp,
            p_decease=cfg.p_decease,
            dwell_exposed_asymptomatic=check_weights(
                cfg.dwell_exposed_asymptomatic, "dwell_exposed_asymptomatic"),
            dwell_exposed_infected=check_weights(
                cfg.dwell_exposed_infected, "dwell_exposed_infected"),
            dwell_asymptomatic_recovered=check_weights(
                cfg.dwell_asymptomatic_recovered, "dwell_asymptomatic_recovered"),
            dwell_infected_recovered=check_weights(
                cfg.dwell_infected_recovered, "dwell_infected_recovered"),
            dwell_infected_deceased=check_weights(
                cfg.dwell_infected_deceased, "dwell_infected_deceased"),
        )


def sample_dwell(
    rng: np.random.Generator,
    table: np.ndarray,
    size: int,
) -> np.ndarray:
    """Dwell times in steps (1..len(table)) drawn from a discrete table."""
    return rng.choice(len(table), size=size, p=table).astype(np.int64) + 1


def _phase_name(value: int) -> str:
    try:
        return Phase(value).name
    except ValueError:
        return f"undefined phase {value}"


def transition_rules(
    rng: np.random.Generator,
    phase: int,
    k: int,
    rules: TransitionRules,
) -> Tuple[Phase, int]:
    """Exit of `phase` entered at step k: (next_phase, next_step).

    Raises:
        TransitionRuleError: For SUSCEPTIBLE (driven by the hazard, not a
            schedule) and for values outside the Phase enumeration.
    """
    if phase == Phase.EXPOSED:
        if rng.random() < rules.p_asymp:
            return Phase.ASYMPTOMATIC, k + int(
                sample_dwell(rng, rules.dwell_exposed_asymptomatic, 1)[0])
        return Phase.INFECTED, k + int(
            sample_dwell(rng, rules.dwell_exposed_infected, 1)[0])
    if phase == Phase.ASYMPTOMATIC:
        return Phase.RECOVERED, k + int(
            sample_dwell(rng, rules.dwell_asymptomatic_recovered, 1)[0])
    if phase == Phase.INFECTED:
        if rng.random() < rules.p_decease:
            return Phase.DECEASED, k + int(
                sample_dwell(rng, rules.dwell_infected_deceased, 1)[0])
        return Phase.RECOVERED, k + int(
            sample_dwell(rng, rules.dwell_infected_recovered, 1)[0])
    if phase in TERMINAL_PHASES:
        return Phase(phase), int(NEVER)
    raise TransitionRuleError(
        f"Evolution rule not implemented for {_phase_name(int(phase))}"
    )


def batch_transition_rules(
    rng: np.random.Generator,
    phases: np.ndarray,
    k: int,
    rules: TransitionRules,
) -> Tuple[np.ndarray, np.ndarray]:
    """Vectorised transition_rules for individuals entering `phases` at step k.

    Returns:
        (next_phase int8, next_step int64), both aligned with `phases`.
    """
    phases = np.asarray(phases, dtype=np.int8)
    known = np.isin(phases, _RULE_PHASES)
    if not known.all():
        bad = int(phases[~known][0])
        raise TransitionRuleError(
            f"Evolution rule not implemented for {_phase_name(bad)}"
        )

    next_phase = phases.copy()
    next_step = np.full(len(phases), NEVER, dtype=np.int64)

    exposed = np.flatnonzero(phases == Phase.EXPOSED)
    infected = np.flatnonzero(phases == Phase.INFECTED)
    asymptomatic = np.flatnonzero(phases == Phase.ASYMPTOMATIC)

    u_exposed = rng.random(len(exposed))
    u_infected = rng.random(len(infected))
    to_asymp = exposed[u_exposed < rules.p_asymp]
    to_infected = exposed[u_exposed >= rules.p_asymp]
    to_deceased = infected[u_infected < rules.p_decease]
    to_recovered = infected[u_infected >= rules.p_decease]

    next_phase[to_asymp] = Phase.ASYMPTOMATIC
    next_phase[to_infected] = Phase.INFECTED
    next_phase[asymptomatic] = Phase.RECOVERED
    next_phase[to_recovered] = Phase.RECOVERED
    next_phase[to_deceased] = Phase.DECEASED

    for idx, table in (
        (to_asymp, rules.dwell_exposed_asymptomatic),
        (to_infected, rules.dwell_exposed_infected),
        (asymptomatic, rules.dwell_asymptomatic_recovered),
        (to_recovered, rules.dwell_infected_recovered),
        (to_deceased, rules.dwell_infected_deceased),
    ):
        if len(idx) > 0:
            next_step[idx] = k + sample_dwell(rng, table, len(idx))

    return next_phase, next_step


# ═══════════════════════════════════════════════════════════════════════
# SINGLE STEP
# ═══════════════════════════════════════════════════════════════════════

def schedule(
    rng: np.random.Generator,
    agents: np.ndarray,
    idx: np.ndarray,
    k: int,
    rules: TransitionRules,
) -> None:
    """Record step k as the last transition of `idx` and draw their exits."""
    agents['prev_step'][idx] = k
    nxt_phase, nxt_step = batch_transition_rules(rng, agents['phase'][idx], k, rules)
    agents['next_phase'][idx] = nxt_phase
    agents['next_step'][idx] = nxt_step


def step_forward(
    rng: np.random.Generator,
    agents: np.ndarray,
    lam: np.ndarray,
    k: int,
    rules: TransitionRules,
) -> Tuple[int, int]:
    """Advance every individual to step k (in place).

    Both candidate sets are taken from the pre-step phases, so an
    individual exposed at step k cannot also fire a scheduled transition
    at step k (its next_step is at least k + 1).

    Args:
        rng: Evolution random generator.
        agents: Individual array (phase and schedule are mutated).
        lam: Force of infection from the pre-step phases.
        k: Current step.
        rules: Transition rules.

    Returns:
        (number newly exposed, number of scheduled transitions applied).
    """
    phase = agents['phase']
    chances = rng.random(len(agents))
    p_inf = infection_probability(lam, agents['susceptibility'])

    new_exposed = np.flatnonzero((phase == Phase.SUSCEPTIBLE) & (chances < p_inf))
    due = np.flatnonzero(np.isin(phase, _TRANSIENT) & (agents['next_step'] <= k))

    if len(new_exposed) > 0:
        phase[new_exposed] = Phase.EXPOSED
        schedule(rng, agents, new_exposed, k, rules)

    if len(due) > 0:
        phase[due] = agents['next_phase'][due]
        schedule(rng, agents, due, k, rules)

    return len(new_exposed), len(due)
