"""End-to-end tests: configuration → scenario → evolution → summary."""

from pathlib import Path

import numpy as np
import pytest

from synthepi.config import (
    ClusterSection,
    ScenarioSection,
    SimulationConfig,
    SimulationSection,
    fully_connected_config,
    load_config,
)
from synthepi.model import cumulative_cases, epidemic_peak, run_simulation
from synthepi.scenario import build_fully_connected_scenario
from synthepi.types import Phase

CONFIG_DIR = Path(__file__).resolve().parent.parent / 'configs'


def _small_config(seed=123, **sim):
    return SimulationConfig(
        simulation=SimulationSection(seed=seed, num_steps=60, initial_exposed=10,
                                     progress_interval=0, **sim),
        scenario=ScenarioSection(num_population=1500, region_size=(3, 3)),
        clusters=[
            ClusterSection(name='work_places', min_age=18, max_size=50),
            ClusterSection(name='school_places', max_age=19, max_size=50),
        ],
    )


@pytest.fixture(scope='module')
def fully_connected_runs():
    return run_simulation(fully_connected_config()), run_simulation(fully_connected_config())


# ── Fully connected scenario ──────────────────────────────────────────

class TestFullyConnected:
    def test_scenario_structure(self):
        scenario = build_fully_connected_scenario(np.random.default_rng(0), 50)
        assert scenario.num_population == 50
        assert scenario.pop_blocks.shape == (1, 1)
        assert np.all(scenario.residences.num_residents == 1)
        layer = scenario.cluster_layers['complete']
        assert len(layer) == 1
        np.testing.assert_array_equal(np.sort(layer.groups[0]), np.arange(50))

    def test_summary_rows_sum_to_population(self, fully_connected_runs):
        result, _ = fully_connected_runs
        summary = result.summary
        assert summary.shape == (90, 6)
        np.testing.assert_array_equal(summary.sum(axis=1), 1000)

    def test_two_initial_exposures(self, fully_connected_runs):
        result, _ = fully_connected_runs
        assert result.summary[0, Phase.EXPOSED] == 2
        assert result.summary[0, Phase.SUSCEPTIBLE] == 998

    def test_cumulative_cases_non_decreasing(self, fully_connected_runs):
        result, _ = fully_connected_runs
        cases = cumulative_cases(result.summary)
        assert np.all(np.diff(cases) >= 0)
        assert cases[-1] == 2 + result.new_exposures.sum()

    def test_reproducible(self, fully_connected_runs):
        a, b = fully_connected_runs
        np.testing.assert_array_equal(a.phase_history, b.phase_history)
        final_a = a.summary[-1, Phase.RECOVERED] + a.summary[-1, Phase.DECEASED]
        final_b = b.summary[-1, Phase.RECOVERED] + b.summary[-1, Phase.DECEASED]
        assert final_a == final_b

    def test_yaml_matches_builder(self, fully_connected_runs):
        result, _ = fully_connected_runs
        from_yaml = run_simulation(load_config(CONFIG_DIR / 'fully_connected.yaml'))
        np.testing.assert_array_equal(from_yaml.phase_history, result.phase_history)

    def test_result_metadata(self, fully_connected_runs):
        result, _ = fully_connected_runs
        assert result.seed == 123
        assert result.scenario.name == 'fully_connected'
        assert result.days[-1] == pytest.approx(90.0)


# ── Random scenario ───────────────────────────────────────────────────

class TestRandomScenario:
    def test_reproducible(self):
        a = run_simulation(_small_config())
        b = run_simulation(_small_config())
        np.testing.assert_array_equal(a.phase_history, b.phase_history)
        for name in a.scenario.population.agents.dtype.names:
            if name in ('phase', 'prev_step', 'next_step', 'next_phase'):
                continue
            np.testing.assert_array_equal(a.scenario.population.agents[name],
                                          b.scenario.population.agents[name])

    def test_seed_changes_outcome(self):
        a = run_simulation(_small_config(seed=1))
        b = run_simulation(_small_config(seed=2))
        assert not np.array_equal(a.phase_history, b.phase_history)

    def test_scenario_independent_of_transitions(self):
        cfg_a = _small_config()
        cfg_b = _small_config()
        cfg_b.transitions.p_asymp = 0.1
        a = run_simulation(cfg_a)
        b = run_simulation(cfg_b)
        np.testing.assert_array_equal(a.scenario.pop_blocks, b.scenario.pop_blocks)
        np.testing.assert_array_equal(
            a.scenario.population.agents['age'], b.scenario.population.agents['age']
        )

    def test_explicit_initial_exposures(self):
        result = run_simulation(_small_config(initial_exposed_indices=[0, 100, 1499]))
        exposed = np.flatnonzero(result.phases_at(1) == Phase.EXPOSED)
        np.testing.assert_array_equal(exposed, [0, 100, 1499])

    def test_invariants(self):
        result = run_simulation(_small_config())
        summary = result.summary
        np.testing.assert_array_equal(summary.sum(axis=1), 1500)
        assert np.all(np.diff(cumulative_cases(summary)) >= 0)
        step, peak = epidemic_peak(summary)
        assert 1 <= step <= 60
        assert peak >= 0
        dead_or_recovered = summary[:, Phase.RECOVERED] + summary[:, Phase.DECEASED]
        assert np.all(np.diff(dead_or_recovered) >= 0)

    def test_progress_callback(self):
        cfg = _small_config()
        cfg.simulation.progress_interval = 20
        calls = []
        run_simulation(cfg, progress_callback=lambda k, n: calls.append(k))
        assert calls == [20, 40, 60]
