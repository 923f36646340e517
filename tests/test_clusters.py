"""Tests for synthepi.clusters — secondary contact groups."""

import numpy as np
import pytest

from synthepi.clusters import (
    assign_cluster_memberships,
    build_cluster_layer,
    check_partition,
    complete_cluster,
    eligible_individuals,
    gen_clusters,
    size_decay,
)
from synthepi.config import ClusterSection, ConfigurationError
from synthepi.types import (
    NO_CLUSTER,
    ClusterLayer,
    InvariantViolation,
    Population,
    allocate_individuals,
)


@pytest.fixture
def rng():
    return np.random.default_rng(11)


def _population(ages):
    agents = allocate_individuals(len(ages))
    agents['age'] = ages
    return Population(agents=agents)


# ── Group sizes ───────────────────────────────────────────────────────

class TestSizeDecay:
    def test_values(self):
        np.testing.assert_allclose(size_decay([1, 2], 1.0), [0.5, 1.0 / 3.0])

    def test_decreasing(self):
        w = size_decay(np.arange(1, 101), 1.8)
        assert np.all(np.diff(w) < 0)


# ── gen_clusters ──────────────────────────────────────────────────────

class TestGenClusters:
    def test_partition(self, rng):
        eligible = np.arange(0, 3000, 3)
        groups = gen_clusters(rng, eligible, max_size=100, alpha=1.8)
        check_partition(groups, eligible)
        members = np.concatenate(groups)
        assert len(members) == len(eligible)
        np.testing.assert_array_equal(np.sort(members), eligible)

    def test_sizes_bounded(self, rng):
        groups = gen_clusters(rng, np.arange(5000), max_size=20, alpha=1.8)
        sizes = np.array([len(g) for g in groups])
        assert sizes.min() >= 1
        assert sizes.max() <= 20

    def test_only_last_group_may_be_truncated(self):
        # Replaying the draws shows every group but the last has its drawn size
        eligible = np.arange(137)
        groups = gen_clusters(np.random.default_rng(4), eligible, 10, 1.0)
        replay = np.random.default_rng(4)
        replay.permutation(eligible)
        w = size_decay(np.arange(1, 11), 1.0)
        w = w / w.sum()
        for g in groups[:-1]:
            assert len(g) == int(replay.choice(10, p=w)) + 1
        assert len(groups[-1]) <= int(replay.choice(10, p=w)) + 1

    def test_small_groups_dominate(self, rng):
        groups = gen_clusters(rng, np.arange(20_000), max_size=100, alpha=1.8)
        sizes = np.array([len(g) for g in groups])
        assert np.mean(sizes == 1) > np.mean(sizes == 2) > np.mean(sizes == 5)

    def test_max_size_one(self, rng):
        groups = gen_clusters(rng, np.arange(10), max_size=1, alpha=1.8)
        assert len(groups) == 10
        assert all(len(g) == 1 for g in groups)

    def test_empty_eligible(self, rng):
        assert gen_clusters(rng, [], max_size=10, alpha=1.8) == []

    def test_bad_max_size(self, rng):
        with pytest.raises(ConfigurationError):
            gen_clusters(rng, np.arange(5), max_size=0, alpha=1.8)


class TestCompleteCluster:
    def test_single_group(self):
        groups = complete_cluster(np.arange(7))
        assert len(groups) == 1
        np.testing.assert_array_equal(groups[0], np.arange(7))

    def test_empty(self):
        assert complete_cluster([]) == []


class TestEligibility:
    def test_bounds_inclusive(self):
        ages = np.array([5, 18, 19, 20, 64, 90])
        np.testing.assert_array_equal(eligible_individuals(ages, 18, None), [1, 2, 3, 4, 5])
        np.testing.assert_array_equal(eligible_individuals(ages, None, 19), [0, 1, 2])
        np.testing.assert_array_equal(eligible_individuals(ages, 19, 64), [2, 3, 4])

    def test_open_bounds(self):
        ages = np.array([0, 50, 100])
        np.testing.assert_array_equal(eligible_individuals(ages), [0, 1, 2])


class TestCheckPartition:
    def test_overlap(self):
        with pytest.raises(InvariantViolation, match="overlap"):
            check_partition([np.array([0, 1]), np.array([1])], np.array([0, 1]))

    def test_missing(self):
        with pytest.raises(InvariantViolation, match="cover"):
            check_partition([np.array([0])], np.array([0, 1]))


# ── Cluster layers ────────────────────────────────────────────────────

class TestBuildLayer:
    def test_random_layer_respects_age(self, rng):
        ages = np.tile(np.arange(100), 20)
        pop = _population(ages)
        layer = build_cluster_layer(rng, pop, ClusterSection(name='work_places', min_age=18))
        assert layer.name == 'work_places'
        assert np.all(ages[layer.members] >= 18)
        assert len(layer.members) == int(np.sum(ages >= 18))

    def test_complete_layer(self, rng):
        pop = _population(np.full(50, 30))
        layer = build_cluster_layer(rng, pop, ClusterSection(name='all', kind='complete'))
        assert len(layer) == 1
        np.testing.assert_array_equal(layer.groups[0], np.arange(50))

    def test_no_eligible_warns(self, rng):
        pop = _population(np.full(10, 5))
        with pytest.warns(UserWarning, match="no eligible"):
            layer = build_cluster_layer(
                rng, pop, ClusterSection(name='work_places', min_age=18)
            )
        assert len(layer) == 0

    def test_unknown_kind(self, rng):
        pop = _population(np.full(10, 30))
        with pytest.raises(ConfigurationError, match="unknown cluster kind"):
            build_cluster_layer(rng, pop, ClusterSection(name='x', kind='ring'))


class TestMemberships:
    def test_assign(self):
        pop = _population(np.zeros(6, dtype=int))
        layer = ClusterLayer(name='school', groups=[np.array([4, 0]), np.array([2])])
        assign_cluster_memberships(pop, layer)
        np.testing.assert_array_equal(
            pop.clusters['school'], [0, NO_CLUSTER, 1, NO_CLUSTER, 0, NO_CLUSTER]
        )
        assert pop.memberships(4) == {'school': 0}
        assert pop.memberships(1) == {}
