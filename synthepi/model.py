"""Time evolution of the epidemic over a generated scenario.

Per step k = 2..num_steps:
  1. λ from the pre-step phases (disease.force_of_infection)
  2. disease.step_forward mutates phase/schedule in place
  3. the phase vector is recorded as column k of the history

The history is a dense (N, num_steps) int8 matrix; column k−1 holds the
phases at step k, so reconstruction is the identity. There is no early
exit: the loop always runs the configured number of steps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple, Union

import numpy as np

from synthepi.config import (
    ConfigurationError,
    SimulationConfig,
    default_config,
    validate_config,
)
from synthepi.disease import (
    ContactLayer,
    TransitionRules,
    build_contact_layers,
    force_of_infection,
    schedule,
    step_forward,
)
from synthepi.rng import create_rng_streams
from synthepi.scenario import build_scenario
from synthepi.types import N_PHASES, InvariantViolation, Phase, Population, Scenario

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# INITIAL EXPOSURES
# ═══════════════════════════════════════════════════════════════════════

def seed_exposed(
    rng: np.random.Generator,
    population: Population,
    exposed: Union[int, Sequence[int]],
    rules: TransitionRules,
    k: int = 1,
) -> np.ndarray:
    """Expose the initial individuals at step k and draw their schedules.

    Args:
        rng: Evolution random generator.
        population: Population (all selected individuals must be SUSCEPTIBLE).
        exposed: Either a count, sampled without replacement, or explicit
            individual indices.
        rules: Transition rules.
        k: Step of exposure.

    Returns:
        Indices of the exposed individuals.
    """
    agents = population.agents
    n = len(agents)
    if isinstance(exposed, (int, np.integer)):
        if not 0 <= exposed <= n:
            raise ConfigurationError(
                f"cannot expose {exposed} individuals out of {n}"
            )
        idx = rng.choice(n, size=int(exposed), replace=False).astype(np.int64)
    else:
        idx = np.asarray(exposed, dtype=np.int64)
        if len(np.unique(idx)) != len(idx):
            raise ConfigurationError("initial exposed indices contain duplicates")
        if len(idx) > 0 and (idx.min() < 0 or idx.max() >= n):
            raise ConfigurationError(
                f"initial exposed indices must lie in [0, {n - 1}]"
            )

    if np.any(agents['phase'][idx] != Phase.SUSCEPTIBLE):
        raise ConfigurationError("only susceptible individuals can be exposed")

    if len(idx) > 0:
        agents['phase'][idx] = Phase.EXPOSED
        schedule(rng, agents, idx, k, rules)
    logger.info("exposed %d individuals at step %d", len(idx), k)
    return idx


# ═══════════════════════════════════════════════════════════════════════
# EVOLUTION
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class EvolutionResult:
    """Phase history and per-step incidence of one evolution."""
    phase_history: np.ndarray       # (N, num_steps) int8
    new_exposures: np.ndarray       # (num_steps,) int64, S → E per step
    time_step: float = 1.0
    scenario: Optional[Scenario] = None
    seed: Optional[int] = None

    @property
    def num_population(self) -> int:
        return self.phase_history.shape[0]

    @property
    def num_steps(self) -> int:
        return self.phase_history.shape[1]

    @property
    def days(self) -> np.ndarray:
        """Time (days) of each recorded step."""
        return np.arange(1, self.num_steps + 1) * self.time_step

    @property
    def summary(self) -> np.ndarray:
        return get_summary(self.phase_history)

    def phases_at(self, k: int) -> np.ndarray:
        """Phase of every individual at step k (1-based)."""
        return self.phase_history[:, k - 1]


def evolve(
    rng: np.random.Generator,
    population: Population,
    layers: Sequence[ContactLayer],
    rules: TransitionRules,
    num_steps: int,
    time_step: float = 1.0,
    progress_interval: int = 0,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> EvolutionResult:
    """Run the epidemic for num_steps steps (step 1 = current state).

    Args:
        rng: Evolution random generator.
        population: Population; phases and schedules are mutated in place.
        layers: Contact layers from disease.build_contact_layers().
        rules: Transition rules.
        num_steps: Total recorded steps, including the initial one.
        time_step: Days per step, used for reporting.
        progress_interval: Report every this many steps (0 = never).
        progress_callback: Optional callable(step, num_steps), invoked at
            each progress report.

    Returns:
        EvolutionResult with the dense phase history.
    """
    if num_steps < 1:
        raise ConfigurationError(f"num_steps must be >= 1, got {num_steps}")
    agents = population.agents
    n = len(agents)

    phase_history = np.zeros((n, num_steps), dtype=np.int8)
    phase_history[:, 0] = agents['phase']
    new_exposures = np.zeros(num_steps, dtype=np.int64)

    for k in range(2, num_steps + 1):
        lam = force_of_infection(agents, layers)
        n_exposed, n_transitions = step_forward(rng, agents, lam, k, rules)
        phase_history[:, k - 1] = agents['phase']
        new_exposures[k - 1] = n_exposed
        logger.debug(
            "step %d: %d new exposures, %d scheduled transitions",
            k, n_exposed, n_transitions,
        )
        if progress_interval and k % progress_interval == 0:
            logger.info("Done time step %d (day %g)", k, k * time_step)
            if progress_callback is not None:
                progress_callback(k, num_steps)

    return EvolutionResult(
        phase_history=phase_history,
        new_exposures=new_exposures,
        time_step=time_step,
    )


def run_simulation(
    config: Optional[SimulationConfig] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> EvolutionResult:
    """Generate the scenario and evolve it as configured.

    The scenario and evolution use independent streams derived from
    ``config.simulation.seed``, so identical configurations reproduce
    identical scenarios and identical histories.
    """
    if config is None:
        config = default_config()
    else:
        validate_config(config)
    sim = config.simulation

    rngs = create_rng_streams(sim.seed)
    scenario = build_scenario(rngs['scenario'], config.scenario, config.clusters)
    layers = build_contact_layers(scenario, config.contact_rates)
    rules = TransitionRules.from_config(config.transitions)

    exposed = (sim.initial_exposed_indices
               if sim.initial_exposed_indices is not None
               else sim.initial_exposed)
    seed_exposed(rngs['evolution'], scenario.population, exposed, rules)

    result = evolve(
        rngs['evolution'],
        scenario.population,
        layers,
        rules,
        num_steps=sim.num_steps,
        time_step=sim.time_step,
        progress_interval=sim.progress_interval,
        progress_callback=progress_callback,
    )
    result.scenario = scenario
    result.seed = sim.seed
    return result


# ═══════════════════════════════════════════════════════════════════════
# SUMMARY
# ═══════════════════════════════════════════════════════════════════════

def get_summary(phase_history: np.ndarray) -> np.ndarray:
    """Number of individuals in each phase at each step.

    Args:
        phase_history: (N, num_steps) phase matrix.

    Returns:
        (num_steps, N_PHASES) int64 counts, columns in Phase order.
    """
    phase_history = np.asarray(phase_history)
    if phase_history.size and (phase_history.min() < 0
                               or phase_history.max() >= N_PHASES):
        raise InvariantViolation("phase history contains undefined phases")
    num_steps = phase_history.shape[1]
    summary = np.zeros((num_steps, N_PHASES), dtype=np.int64)
    for p in Phase:
        summary[:, p] = (phase_history == p).sum(axis=0)
    return summary


def cumulative_cases(summary: np.ndarray) -> np.ndarray:
    """Individuals ever exposed by each step (everyone not SUSCEPTIBLE)."""
    return summary.sum(axis=1) - summary[:, Phase.SUSCEPTIBLE]


def epidemic_peak(summary: np.ndarray) -> Tuple[int, int]:
    """(step, count) of the maximum number of infectious individuals.

    Step is 1-based; ties resolve to the earliest step.
    """
    infectious = summary[:, Phase.INFECTED] + summary[:, Phase.ASYMPTOMATIC]
    i = int(np.argmax(infectious))
    return i + 1, int(infectious[i])
