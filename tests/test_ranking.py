import math
from types import SimpleNamespace

import numpy as np
import pytest

from bsp_cf.config import ConfigurationError, RankingConfig
from bsp_cf.engine import ComputeContext, Vertex
from bsp_cf.ids import CfId
from bsp_cf.io import build_vertices
from bsp_cf.messages import FactorRequest
from bsp_cf.ranking import (
    PHASE_BROADCAST, RankingCycle, RankingMasterCompute, RankingPhase, SamplingError,
    phase_for_superstep, sigmoid
)
from bsp_cf.ranking_methods import BPRRankingComputation, RandomRankingComputation
from bsp_cf.runner import InMemoryGraphRunner
from bsp_cf.utils import random_factors, vertex_rng


class AlwaysLow:
    """Stands in for a Generator whose draws always hit the lowest id."""

    def integers(self, low, high):
        return low


def ranking_config(**kwargs) -> RankingConfig:
    kwargs.setdefault("min_item_id", 1)
    kwargs.setdefault("max_item_id", 10)
    return RankingConfig(**kwargs)


def run_ranking(df, method=BPRRankingComputation, **config_kwargs):
    config = ranking_config(**config_kwargs)
    master = RankingMasterCompute(config, method(config))
    result = InMemoryGraphRunner(build_vertices(df), master=master).run()
    return master, result


class TestPhases:
    def test_phase_order(self):
        expected = [RankingPhase.SAMPLE, RankingPhase.RESPOND, RankingPhase.UPDATE, RankingPhase.PROPAGATE] * 2
        expected += [RankingPhase.FLUSH, RankingPhase.DONE, None]
        assert [phase_for_superstep(s, 2) for s in range(len(expected))] == expected

    def test_cycle_stays_finished(self):
        cycle = RankingCycle(1)
        phases = [cycle.advance() for _ in range(8)]
        assert phases[:6] == [RankingPhase.SAMPLE, RankingPhase.RESPOND, RankingPhase.UPDATE,
                              RankingPhase.PROPAGATE, RankingPhase.FLUSH, RankingPhase.DONE]
        assert phases[6:] == [None, None]
        assert cycle.finished

    def test_sigmoid(self):
        assert sigmoid(0.0) == pytest.approx(0.5)
        assert sigmoid(1000.0) == pytest.approx(1.0)
        assert sigmoid(-1000.0) == pytest.approx(0.0)


class TestNegativeSampling:
    def test_disjoint_distinct_and_sized(self):
        computation = BPRRankingComputation(ranking_config())
        relevant = {CfId.item(1), CfId.item(2), CfId.item(5)}
        for seed in range(20):
            sampled = computation.sample_irrelevant_items(relevant, 4, np.random.default_rng(seed))
            assert len(sampled) == 4
            assert len(set(sampled)) == 4
            assert not set(sampled) & relevant
            assert all(item.is_item() and 1 <= item.id <= 10 for item in sampled)

    def test_takes_the_whole_pool_when_needed(self):
        computation = BPRRankingComputation(ranking_config(max_item_id=4))
        sampled = computation.sample_irrelevant_items({CfId.item(1), CfId.item(2)}, 2, np.random.default_rng(0))
        assert set(sampled) == {CfId.item(3), CfId.item(4)}

    def test_zero_budget(self):
        computation = RandomRankingComputation(ranking_config())
        assert computation.sample_irrelevant_items({CfId.item(1)}, 0, np.random.default_rng(0)) == []

    def test_pool_too_small(self):
        computation = BPRRankingComputation(ranking_config(max_item_id=3))
        with pytest.raises(SamplingError):
            computation.sample_irrelevant_items({CfId.item(1), CfId.item(2)}, 2, np.random.default_rng(0))

    def test_item_range_must_be_known(self):
        unchecked = SimpleNamespace(min_item_id=None, max_item_id=None, max_sampling_attempts=10)
        computation = BPRRankingComputation(unchecked)  # pyright: ignore[reportArgumentType]
        with pytest.raises(ConfigurationError):
            computation.sample_irrelevant_items({CfId.item(1)}, 1, np.random.default_rng(0))

    def test_rejection_bound(self):
        computation = BPRRankingComputation(ranking_config(max_sampling_attempts=3))
        with pytest.raises(SamplingError):
            computation.sample_irrelevant_items({CfId.item(1)}, 1, AlwaysLow())


class TestProtocolSteps:
    def test_respond_without_requests_sends_nothing(self):
        computation = BPRRankingComputation(ranking_config(dim=3))
        vertex = Vertex(CfId.item(4))
        ctx = ComputeContext(superstep=1, broadcasts={PHASE_BROADCAST: RankingPhase.RESPOND})
        computation.compute(vertex, [], ctx)
        computation.compute(vertex, [], ctx)
        assert ctx.num_sent_messages() == 0
        assert vertex.halted

    def test_respond_keeps_relevance(self):
        computation = BPRRankingComputation(ranking_config(dim=3))
        vertex = Vertex(CfId.item(4), value=np.array([1.0, 2.0, 3.0], dtype=np.float32))
        ctx = ComputeContext(superstep=1, broadcasts={PHASE_BROADCAST: RankingPhase.RESPOND})
        computation.compute(vertex, [FactorRequest(CfId.user(1), True), FactorRequest(CfId.user(2), False)], ctx)
        (to_1,), (to_2,) = ctx.outbox[CfId.user(1)], ctx.outbox[CfId.user(2)]
        assert to_1.relevant and not to_2.relevant
        np.testing.assert_array_equal(to_1.factors, [1.0, 2.0, 3.0])

    def test_needs_the_ranking_master(self):
        computation = BPRRankingComputation(ranking_config())
        with pytest.raises(RuntimeError):
            computation.compute(Vertex(CfId.user(1)), [], ComputeContext(superstep=0))


class TestBprGradient:
    def test_step_moves_positive_above_negative(self):
        computation = BPRRankingComputation(ranking_config(dim=2, learn_rate=0.1, reg=0.00011))
        pu = np.array([0.5, 0.5], dtype=np.float32)
        qi = np.array([1.0, 0.0], dtype=np.float32)
        qj = np.array([0.0, 1.0], dtype=np.float32)
        step = computation.gradient_update(
            pu, [(CfId.item(1), qi)], [(CfId.item(2), qj)], np.random.default_rng(0))

        assert step.num_pairs == 1
        assert step.loss == pytest.approx(-math.log(0.5 + 1e-10))
        # positive item moves toward the user, negative item away
        assert float(np.dot(step.item_deltas[CfId.item(1)], pu)) > 0
        assert float(np.dot(step.item_deltas[CfId.item(2)], pu)) < 0
        np.testing.assert_allclose(step.user_delta, 0.1 * (0.5 * (qi - qj) - 0.00011 * pu), atol=1e-6)

        new_pu = pu + step.user_delta
        new_qi = qi + step.item_deltas[CfId.item(1)]
        new_qj = qj + step.item_deltas[CfId.item(2)]
        assert np.dot(new_pu, new_qi - new_qj) > np.dot(pu, qi - qj)

    def test_buffer_sizes(self):
        assert BPRRankingComputation(ranking_config()).buffer_size(3) == 3
        assert RandomRankingComputation(ranking_config()).buffer_size(3) == 0


class TestRankingEndToEnd:
    def test_bpr_run(self, implicit_ratings):
        master, result = run_ranking(implicit_ratings, dim=4, iterations=2, learn_rate=0.05, seed=7)
        # 4 supersteps per iteration, then FLUSH and DONE, after which nothing is left to do
        assert result.supersteps == 10
        assert not result.halted_by_master
        assert sorted(master.loss_history) == [0, 1]
        assert all(loss > 0 for loss in master.loss_history.values())
        for item in range(1, 5):
            value = result.vertices[CfId.item(item)].value
            assert value is not None and value.shape == (4,)
        assert all(v.halted for v in result.vertices.values())
        assert result.counters.get("Ranking Counters", "iteration") == 2

    def test_bpr_is_deterministic_with_seed(self, implicit_ratings):
        _, first = run_ranking(implicit_ratings, dim=4, iterations=2, seed=7)
        _, second = run_ranking(implicit_ratings, dim=4, iterations=2, seed=7)
        assert first.vertices.keys() == second.vertices.keys()
        for vid, vertex in first.vertices.items():
            np.testing.assert_array_equal(vertex.value, second.vertices[vid].value)

    def test_random_method_keeps_initial_factors(self, implicit_ratings):
        master, result = run_ranking(implicit_ratings, RandomRankingComputation, dim=3, iterations=2, seed=9)
        assert master.loss_history == {}
        for vid in (CfId.user(1), CfId.item(3)):
            expected = random_factors(vertex_rng(9, vid, 0), 3)
            np.testing.assert_array_equal(result.vertices[vid].value, expected)

    def test_sampling_failure_stops_the_run(self, implicit_ratings):
        with pytest.raises(SamplingError):
            run_ranking(implicit_ratings, max_item_id=3, iterations=1, seed=1)
