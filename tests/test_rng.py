"""Tests for synthepi.rng — seeded stream hierarchy and checkpointing."""

import numpy as np
import pytest

from synthepi.rng import (
    STREAM_NAMES,
    create_rng_streams,
    restore_rng_state,
    rng_state_snapshot,
)


class TestCreateStreams:
    def test_stream_names(self):
        rngs = create_rng_streams(42)
        assert set(rngs) == set(STREAM_NAMES) == {'scenario', 'evolution'}

    def test_generator_type(self):
        for rng in create_rng_streams(42).values():
            assert isinstance(rng, np.random.Generator)
            assert isinstance(rng.bit_generator, np.random.PCG64)

    def test_reproducible(self):
        a = create_rng_streams(123)
        b = create_rng_streams(123)
        for name in STREAM_NAMES:
            np.testing.assert_array_equal(a[name].random(50), b[name].random(50))

    def test_different_seeds_differ(self):
        a = create_rng_streams(1)['scenario'].random(20)
        b = create_rng_streams(2)['scenario'].random(20)
        assert not np.array_equal(a, b)

    def test_streams_are_independent(self):
        rngs = create_rng_streams(7)
        s = rngs['scenario'].random(20)
        e = rngs['evolution'].random(20)
        assert not np.array_equal(s, e)

    def test_consuming_one_stream_leaves_other_unchanged(self):
        a = create_rng_streams(99)
        b = create_rng_streams(99)
        a['scenario'].random(1000)
        np.testing.assert_array_equal(
            a['evolution'].random(10), b['evolution'].random(10)
        )

    def test_negative_seed_raises(self):
        with pytest.raises(ValueError, match="non-negative"):
            create_rng_streams(-1)


class TestCheckpointing:
    def test_snapshot_and_restore(self):
        rngs = create_rng_streams(42)
        for rng in rngs.values():
            rng.random(10)
        snapshot = rng_state_snapshot(rngs)
        expected = {name: rng.random(20) for name, rng in rngs.items()}

        restore_rng_state(rngs, snapshot)
        for name, rng in rngs.items():
            np.testing.assert_array_equal(rng.random(20), expected[name])

    def test_snapshot_keys(self):
        rngs = create_rng_streams(42)
        assert set(rng_state_snapshot(rngs)) == set(rngs)

    def test_restore_unknown_stream_raises(self):
        rngs = create_rng_streams(42)
        with pytest.raises(KeyError, match="nonexistent_stream"):
            restore_rng_state(rngs, {'nonexistent_stream': {}})
