"""
Unit tests for sampling: argmax, multinomial, nucleus and the xorshift rng.
"""

import numpy as np
import pytest

import sampler as sampler_module
from errors import InvalidInput
from sampler import Sampler, make_sampler, sample_argmax, sample_mult, sample_topp


class TestArgmax:

    def test_greedy_sampler_first_max_wins(self):
        sampler = Sampler(4, temperature=0.0, top_p=0.9, rng_seed=42)
        assert sampler.sample(np.array([0.1, 0.9, 0.9, 0.2], dtype=np.float32)) == 1

    def test_greedy_does_not_touch_logits(self):
        logits = np.array([3.0, -1.0, 2.0], dtype=np.float32)
        sampler = Sampler(3, temperature=0.0, top_p=0.9, rng_seed=42)
        assert sampler.sample(logits) == 0
        assert np.array_equal(logits, [3.0, -1.0, 2.0])

    def test_plain_list(self):
        assert sample_argmax([0.0, -2.0, 5.0, 5.0]) == 2


class TestXorshift:

    def test_reference_sequence(self):
        sampler = Sampler(1, temperature=1.0, top_p=0.9, rng_seed=1)
        assert sampler.random_u32() == 1206177355
        assert sampler.rng_seed == 33554433
        assert sampler.random_u32() == 2882512552
        assert sampler.rng_seed == 1126174793148417

    def test_first_float(self):
        sampler = Sampler(1, temperature=1.0, top_p=0.9, rng_seed=1)
        assert sampler.random_f32() == pytest.approx(4711630 / 16777216)

    def test_float_range(self):
        sampler = Sampler(1, temperature=1.0, top_p=0.9, rng_seed=1234)
        draws = [sampler.random_f32() for _ in range(2000)]
        assert min(draws) >= 0.0
        assert max(draws) < 1.0

    def test_state_stays_unsigned_64_bit(self):
        sampler = Sampler(1, temperature=1.0, top_p=0.9, rng_seed=(1 << 64) - 1)
        for _ in range(100):
            sampler.random_u32()
            assert 0 < sampler.rng_seed < (1 << 64)

    def test_zero_seed_rejected(self):
        with pytest.raises(InvalidInput):
            Sampler(4, temperature=1.0, top_p=0.9, rng_seed=0)

    def test_same_seed_same_tokens(self):
        logits = np.linspace(-1.0, 1.0, 16).astype(np.float32)
        a = Sampler(16, temperature=0.8, top_p=0.95, rng_seed=7)
        b = Sampler(16, temperature=0.8, top_p=0.95, rng_seed=7)
        assert [a.sample(logits.copy()) for _ in range(50)] == [b.sample(logits.copy()) for _ in range(50)]


class TestMultinomial:

    @pytest.mark.parametrize("coin,expected", [(0.0, 0), (0.1, 0), (0.25, 1), (0.6, 2), (0.9999999, 2)])
    def test_cdf_lookup(self, coin, expected):
        assert sample_mult(np.array([0.2, 0.3, 0.5]), coin) == expected

    def test_rounding_falls_back_to_last(self):
        assert sample_mult(np.array([0.3, 0.3, 0.3]), 0.95) == 2

    def test_empirical_distribution(self):
        probs = np.array([0.1, 0.2, 0.7])
        sampler = Sampler(3, temperature=1.0, top_p=1.0, rng_seed=2024)
        counts = np.zeros(3)
        for _ in range(5000):
            counts[sampler.sample(np.log(probs).astype(np.float32))] += 1
        assert np.allclose(counts / counts.sum(), probs, atol=0.03)

    def test_logits_become_probabilities(self):
        logits = np.array([1.0, 2.0, 3.0], dtype=np.float32)
        Sampler(3, temperature=1.0, top_p=0.0, rng_seed=5).sample(logits)
        assert np.isclose(logits.sum(), 1.0)
        assert np.all(np.diff(logits) > 0)


class TestTopP:

    def test_single_token(self):
        indices = np.zeros(1, dtype=np.int64)
        assert sample_topp(np.array([1.0]), 0.9, indices, 0.7) == 0

    @pytest.mark.parametrize("coin,expected", [(0.0, 0), (0.45, 0), (0.55, 1), (0.99, 2)])
    def test_walks_sorted_candidates(self, coin, expected):
        indices = np.zeros(3, dtype=np.int64)
        probs = np.array([0.5, 0.3, 0.2])
        assert sample_topp(probs, 0.9, indices, coin) == expected

    def test_dominant_token_always_wins(self):
        # exp(10) / (exp(10) + 3) > 0.99 > top_p
        sampler = Sampler(4, temperature=1.0, top_p=0.5, rng_seed=99)
        logits = np.array([0.0, 10.0, 0.0, 0.0], dtype=np.float32)
        assert all(sampler.sample(logits.copy()) == 1 for _ in range(200))

    def test_tail_is_never_sampled(self):
        sampler = Sampler(5, temperature=1.0, top_p=0.6, rng_seed=3)
        probs = np.array([0.4, 0.35, 0.1, 0.1, 0.05])
        seen = {sampler.sample(np.log(probs).astype(np.float32)) for _ in range(500)}
        assert seen == {0, 1}

    def test_cropped_indices_go_to_the_tail(self):
        indices = np.full(4, -1, dtype=np.int64)
        probs = np.array([0.001, 0.6, 0.001, 0.398])
        sample_topp(probs, 0.9, indices, 0.5)
        assert sorted(indices[:2]) == [1, 3]
        assert list(indices[2:]) == [2, 0]

    def test_empty_candidate_set_takes_last_candidate(self):
        indices = np.zeros(4, dtype=np.int64)
        assert sample_topp(np.full(4, 0.25), 0.0, indices, 0.5) == 3

    def test_empty_candidate_set_ignores_coin(self):
        indices = np.zeros(2, dtype=np.int64)
        probs = np.array([0.5, 0.5], dtype=np.float32)
        assert sample_topp(probs, 0.1, indices, 0.3) == 1
        assert sample_topp(probs, 0.1, indices, 0.9) == 1


class TestMakeSampler:

    def test_positive_seed_is_kept(self):
        assert make_sampler(8, 1.0, 0.9, 17).rng_seed == 17

    def test_zero_seed_uses_wall_clock(self, monkeypatch):
        monkeypatch.setattr(sampler_module.time, "time", lambda: 1234.5)
        sampler = make_sampler(8, 1.0, 0.9, 0)
        assert sampler.rng_seed == 1234500
