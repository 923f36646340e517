"""Configuration system for SynthEpi.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → overrides dict

Sections map 1:1 to YAML top-level keys:
  simulation, scenario, contact_rates, clusters, transitions

Every fault found here is a ConfigurationError raised before any
scenario is generated or any step simulated.
"""

from __future__ import annotations

import dataclasses
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import yaml


class ConfigurationError(ValueError):
    """Malformed or unsatisfiable configuration."""


# ═══════════════════════════════════════════════════════════════════════
# REFERENCE VALUES
# ═══════════════════════════════════════════════════════════════════════

# Residence size weights for sizes 1..8
REFERENCE_RESIDENCE_WEIGHTS = [10.0, 22.0, 33.0, 22.0, 5.0, 5.0, 2.0, 1.0]

# Dwell-time tables (days 1..len)
DWELL_EXPOSED_TO_ASYMPTOMATIC = [0.04, 0.08, 0.16, 0.31, 0.28, 0.08, 0.04, 0.01]
DWELL_EXPOSED_TO_INFECTED = [0.03, 0.07, 0.14, 0.28, 0.30, 0.10, 0.06, 0.02]
DWELL_RESOLUTION = [
    0.01, 0.02, 0.03, 0.04, 0.08, 0.06, 0.15, 0.16,
    0.15, 0.14, 0.06, 0.04, 0.02, 0.02, 0.01, 0.01,
]

VALID_CLUSTER_KINDS = {'random', 'complete'}


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Run control: seed, horizon, seeding of the epidemic, progress."""
    seed: int = 123
    num_steps: int = 360
    time_step: float = 1.0               # days per step (reporting only)
    initial_exposed: int = 20            # sampled without replacement
    initial_exposed_indices: Optional[List[int]] = None  # overrides the count
    progress_interval: int = 10          # 0 = silent


@dataclass
class GammaParams:
    """Gamma distribution (mean = shape × scale)."""
    shape: float = 1.0
    scale: float = 1.0


@dataclass
class ScenarioSection:
    """Synthetic population generation parameters."""
    name: str = "random"
    num_population: int = 10_000
    region_size: Tuple[int, int] = (6, 12)
    residence_size_weights: List[float] = field(
        default_factory=lambda: list(REFERENCE_RESIDENCE_WEIGHTS)
    )
    age_pyramid: Optional[List[float]] = None   # explicit weights for ages 0..len-1
    age_max: int = 100                          # used when age_pyramid is None
    pyramid_power: float = 2.0
    gamma_susceptibility: GammaParams = field(
        default_factory=lambda: GammaParams(shape=2.0, scale=0.5)
    )
    gamma_infectivity: GammaParams = field(
        default_factory=lambda: GammaParams(shape=4.0, scale=0.25)
    )


@dataclass
class ClusterSection:
    """One cluster category (schools, workplaces, ...).

    kind: "random":   partition eligible individuals with decaying sizes
          "complete": a single group holding every eligible individual
    """
    name: str = "work_places"
    kind: str = "random"
    min_age: Optional[int] = None
    max_age: Optional[int] = None
    max_size: int = 100
    alpha: float = 1.8


@dataclass
class TransitionSection:
    """Branch probabilities and dwell-time tables of the phase machine."""
    p_asymp: float = 0.6
    p_decease: float = 0.03
    dwell_exposed_asymptomatic: List[float] = field(
        default_factory=lambda: list(DWELL_EXPOSED_TO_ASYMPTOMATIC)
    )
    dwell_exposed_infected: List[float] = field(
        default_factory=lambda: list(DWELL_EXPOSED_TO_INFECTED)
    )
    dwell_asymptomatic_recovered: List[float] = field(
        default_factory=lambda: list(DWELL_RESOLUTION)
    )
    dwell_infected_recovered: List[float] = field(
        default_factory=lambda: list(DWELL_RESOLUTION)
    )
    dwell_infected_deceased: List[float] = field(
        default_factory=lambda: list(DWELL_RESOLUTION)
    )


def _default_clusters() -> List[ClusterSection]:
    return [
        ClusterSection(name="work_places", min_age=18, max_size=100, alpha=1.8),
        ClusterSection(name="school_places", max_age=19, max_size=100, alpha=1.8),
    ]


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    scenario: ScenarioSection = field(default_factory=ScenarioSection)
    contact_rates: Dict[str, float] = field(
        default_factory=lambda: {
            'residences': 0.3,
            'work_places': 0.1,
            'school_places': 0.2,
        }
    )
    clusters: List[ClusterSection] = field(default_factory=_default_clusters)
    transitions: TransitionSection = field(default_factory=TransitionSection)


# ═══════════════════════════════════════════════════════════════════════
# WEIGHT VECTORS
# ═══════════════════════════════════════════════════════════════════════

def check_weights(weights: Sequence[float], name: str) -> np.ndarray:
    """Validate a weight vector and return it normalized to sum 1.

    Entries must be finite and non-negative with a positive total.
    Zero entries are allowed and mean "never drawn".

    Raises:
        ConfigurationError: On empty, negative, non-finite or all-zero input.
    """
    w = np.asarray(weights, dtype=np.float64)
    if w.ndim != 1 or w.size == 0:
        raise ConfigurationError(f"{name} must be a non-empty 1-D weight vector")
    if not np.all(np.isfinite(w)):
        raise ConfigurationError(f"{name} contains non-finite entries: {list(w)}")
    if np.any(w < 0):
        raise ConfigurationError(f"{name} contains negative entries: {list(w)}")
    total = w.sum()
    if total <= 0:
        raise ConfigurationError(f"{name} must have a positive sum")
    return w / total


def check_residence_weights(weights: Sequence[float]) -> np.ndarray:
    """Residence-size weights: as check_weights, plus size 1 must be drawable.

    The exact-sum rounding loop may end with one resident left to place;
    that is only possible when single-person residences have positive weight.
    """
    w = check_weights(weights, "residence_size_weights")
    if w[0] <= 0:
        raise ConfigurationError(
            "residence_size_weights[0] (size 1) must be positive, otherwise "
            "some block populations cannot be split exactly into residences"
        )
    return w


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values (including lists) are replaced
    - Keys in override but not base are added
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _scenario_from_dict(data: Dict) -> ScenarioSection:
    data = dict(data)  # don't mutate original
    for key in ('gamma_susceptibility', 'gamma_infectivity'):
        if isinstance(data.get(key), dict):
            data[key] = _dict_to_section(GammaParams, data[key])
    if isinstance(data.get('region_size'), list):
        data['region_size'] = tuple(data['region_size'])
    return _dict_to_section(ScenarioSection, data)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    sections: Dict[str, Any] = {}

    if isinstance(data.get('simulation'), dict):
        sections['simulation'] = _dict_to_section(SimulationSection, data['simulation'])
    if isinstance(data.get('scenario'), dict):
        sections['scenario'] = _scenario_from_dict(data['scenario'])
    if isinstance(data.get('transitions'), dict):
        sections['transitions'] = _dict_to_section(TransitionSection, data['transitions'])
    if isinstance(data.get('contact_rates'), dict):
        sections['contact_rates'] = {
            str(k): float(v) for k, v in data['contact_rates'].items()
        }
    if isinstance(data.get('clusters'), list):
        sections['clusters'] = [
            _dict_to_section(ClusterSection, c)
            for c in data['clusters'] if isinstance(c, dict)
        ]

    return SimulationConfig(**sections)


def _check_probability(value: float, name: str) -> None:
    if not (0.0 <= value <= 1.0):
        raise ConfigurationError(f"{name} must be in [0, 1], got {value}")


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ConfigurationError on failure.

    Checks:
      - Run control (steps, time step, seed, initial exposures)
      - Population size, region size, weight vectors, Gamma parameters
      - Cluster categories and their contact rates
      - Transition probabilities and dwell tables
    """
    sim = config.simulation
    if sim.seed < 0:
        raise ConfigurationError("simulation.seed must be non-negative")
    if sim.num_steps < 1:
        raise ConfigurationError(
            f"simulation.num_steps must be >= 1, got {sim.num_steps}"
        )
    if sim.time_step <= 0:
        raise ConfigurationError("simulation.time_step must be positive")
    if sim.progress_interval < 0:
        raise ConfigurationError("simulation.progress_interval must be >= 0")

    sc = config.scenario
    if sc.num_population < 1:
        raise ConfigurationError(
            f"scenario.num_population must be >= 1, got {sc.num_population}"
        )
    if len(sc.region_size) != 2 or min(sc.region_size) < 1:
        raise ConfigurationError(
            f"scenario.region_size must be two positive integers, got {sc.region_size}"
        )
    check_residence_weights(sc.residence_size_weights)
    if sc.age_pyramid is not None:
        check_weights(sc.age_pyramid, "scenario.age_pyramid")
    elif sc.age_max < 1:
        raise ConfigurationError("scenario.age_max must be >= 1")
    for key in ('gamma_susceptibility', 'gamma_infectivity'):
        g = getattr(sc, key)
        if g.shape <= 0 or g.scale <= 0:
            raise ConfigurationError(
                f"scenario.{key} shape and scale must be positive, "
                f"got shape={g.shape}, scale={g.scale}"
            )

    # Initial exposures
    if sim.initial_exposed_indices is not None:
        idx = list(sim.initial_exposed_indices)
        if len(set(idx)) != len(idx):
            raise ConfigurationError("simulation.initial_exposed_indices has duplicates")
        if any(i < 0 or i >= sc.num_population for i in idx):
            raise ConfigurationError(
                "simulation.initial_exposed_indices must lie in "
                f"[0, {sc.num_population - 1}]"
            )
    elif not (0 <= sim.initial_exposed <= sc.num_population):
        raise ConfigurationError(
            f"simulation.initial_exposed must be in [0, {sc.num_population}], "
            f"got {sim.initial_exposed}"
        )

    # Contact layers
    rates = config.contact_rates
    if 'residences' not in rates:
        raise ConfigurationError("contact_rates must include a 'residences' entry")
    for name, rate in rates.items():
        if not np.isfinite(rate) or rate < 0:
            raise ConfigurationError(
                f"contact_rates['{name}'] must be finite and >= 0, got {rate}"
            )
    seen = set()
    for c in config.clusters:
        if c.name == 'residences':
            raise ConfigurationError("'residences' is reserved and cannot name a cluster")
        if c.name in seen:
            raise ConfigurationError(f"duplicate cluster category '{c.name}'")
        seen.add(c.name)
        if c.kind not in VALID_CLUSTER_KINDS:
            raise ConfigurationError(
                f"clusters['{c.name}'].kind must be one of {VALID_CLUSTER_KINDS}, "
                f"got '{c.kind}'"
            )
        if c.name not in rates:
            raise ConfigurationError(
                f"contact_rates has no entry for cluster category '{c.name}'"
            )
        if c.kind == 'random':
            if c.max_size < 1:
                raise ConfigurationError(
                    f"clusters['{c.name}'].max_size must be >= 1, got {c.max_size}"
                )
            if not np.isfinite(c.alpha):
                raise ConfigurationError(f"clusters['{c.name}'].alpha must be finite")
        if (c.min_age is not None and c.max_age is not None
                and c.min_age > c.max_age):
            raise ConfigurationError(
                f"clusters['{c.name}']: min_age ({c.min_age}) > max_age ({c.max_age})"
            )
    unused = set(rates) - seen - {'residences'}
    if unused:
        warnings.warn(
            f"contact_rates entries without a cluster category: {sorted(unused)}",
            UserWarning,
            stacklevel=2,
        )

    # Transitions
    tr = config.transitions
    _check_probability(tr.p_asymp, "transitions.p_asymp")
    _check_probability(tr.p_decease, "transitions.p_decease")
    for key in (
        'dwell_exposed_asymptomatic',
        'dwell_exposed_infected',
        'dwell_asymptomatic_recovered',
        'dwell_infected_recovered',
        'dwell_infected_deceased',
    ):
        check_weights(getattr(tr, key), f"transitions.{key}")


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → overrides.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        overrides: Optional dict of parameter overrides.

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ConfigurationError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config


def fully_connected_config(
    num_population: int = 1_000,
    initial_exposed: int = 2,
    num_steps: int = 90,
    seed: int = 123,
) -> SimulationConfig:
    """Single block, single-person residences, one all-inclusive cluster."""
    config = SimulationConfig(
        simulation=SimulationSection(
            seed=seed,
            num_steps=num_steps,
            initial_exposed=initial_exposed,
        ),
        scenario=ScenarioSection(
            name="fully_connected",
            num_population=num_population,
            region_size=(1, 1),
            residence_size_weights=[1.0],
        ),
        contact_rates={'residences': 0.0, 'complete': 1.0},
        clusters=[ClusterSection(name='complete', kind='complete')],
    )
    validate_config(config)
    return config
