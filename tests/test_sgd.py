import math

import numpy as np
import pytest

from bsp_cf.config import SgdConfig
from bsp_cf.engine import ComputeContext, SumAggregator, Vertex
from bsp_cf.ids import CfId
from bsp_cf.io import build_vertices
from bsp_cf.messages import FactorBroadcast
from bsp_cf.runner import InMemoryGraphRunner
from bsp_cf.sgd import (
    RMSE_AGGREGATOR, RMSE_COUNTER_GROUP, SgdComputation, SgdMasterCompute, clamp, rmse, update_value
)


def run_sgd(vertices, **config_kwargs):
    master = SgdMasterCompute(SgdConfig(**config_kwargs))
    result = InMemoryGraphRunner(vertices, master=master).run()
    return master, result


class TestUpdateRule:
    def test_worked_example(self):
        v = np.array([0.1, 0.2, 0.3], dtype=np.float32)
        u = np.array([0.2, 0.1, 0.4], dtype=np.float32)
        updated = update_value(v, u, 1.0, 0.0, 5.0, lambda_=0.01, gamma=0.005)
        np.testing.assert_allclose(updated, [0.100835, 0.20041, 0.301665], atol=1e-6)
        # input untouched
        np.testing.assert_array_equal(v, np.array([0.1, 0.2, 0.3], dtype=np.float32))

    def test_prediction_is_clamped(self):
        v = np.array([3.0, 3.0], dtype=np.float32)
        u = np.array([1.0, 1.0], dtype=np.float32)
        # dot is 6 but clamps to 5, so the error is 0 and only the regularizer acts
        updated = update_value(v, u, 5.0, 0.0, 5.0, lambda_=0.1, gamma=0.5)
        np.testing.assert_allclose(updated, v - 0.5 * 0.1 * v, atol=1e-6)

    def test_clamp(self):
        assert clamp(7.0, 0.0, 5.0) == 5.0
        assert clamp(-1.0, 0.0, 5.0) == 0.0
        assert clamp(2.5, 0.0, 5.0) == 2.5


class TestRmse:
    def test_formula(self):
        assert rmse(8.0, 2) == pytest.approx(2.0)
        assert rmse(0.25 + 1.0 + 4.0, 3) == pytest.approx(math.sqrt(5.25 / 3))

    def test_no_ratings(self):
        assert rmse(1.0, 0) is None


class TestSgdComputation:
    def test_fits_sequentially_and_aggregates_updated_error(self):
        config = SgdConfig(dim=2, gamma=0.1, lambda_=0.0)
        vertex = Vertex(CfId.item(1), value=np.array([0.5, 0.5], dtype=np.float32),
                        edges=[(CfId.user(1), 2.0), (CfId.user(2), 1.0)])
        u1 = np.array([1.0, 0.0], dtype=np.float32)
        u2 = np.array([0.0, 1.0], dtype=np.float32)
        ctx = ComputeContext(superstep=2, aggregators={RMSE_AGGREGATOR: SumAggregator})

        SgdComputation(config).compute(
            vertex, [FactorBroadcast(CfId.user(1), u1), FactorBroadcast(CfId.user(2), u2)], ctx)

        expected = update_value(np.array([0.5, 0.5], dtype=np.float32), u1, 2.0, 0.0, 5.0, 0.0, 0.1)
        expected = update_value(expected, u2, 1.0, 0.0, 5.0, 0.0, 0.1)
        np.testing.assert_allclose(vertex.value, expected, atol=1e-6)

        squared = (float(np.dot(expected, u1)) - 2.0) ** 2 + (float(np.dot(expected, u2)) - 1.0) ** 2
        assert ctx.partial_aggregates[RMSE_AGGREGATOR] == pytest.approx(squared, abs=1e-6)
        assert set(ctx.outbox) == {CfId.user(1), CfId.user(2)}
        assert vertex.halted

    def test_sender_without_edge_is_skipped(self):
        config = SgdConfig(dim=2)
        start = np.array([0.5, 0.5], dtype=np.float32)
        vertex = Vertex(CfId.item(1), value=start.copy(), edges=[(CfId.user(1), 2.0)])
        ctx = ComputeContext(superstep=2, aggregators={RMSE_AGGREGATOR: SumAggregator})
        SgdComputation(config).compute(vertex, [FactorBroadcast(CfId.user(9), np.ones(2))], ctx)
        np.testing.assert_array_equal(vertex.value, start)
        assert ctx.partial_aggregates[RMSE_AGGREGATOR] == 0.0

    def test_tolerance_suppresses_small_moves(self):
        config = SgdConfig(dim=2, gamma=0.0001, lambda_=0.0, tolerance=1.0)
        vertex = Vertex(CfId.item(1), value=np.array([0.5, 0.5], dtype=np.float32),
                        edges=[(CfId.user(1), 2.0)])
        ctx = ComputeContext(superstep=2, aggregators={RMSE_AGGREGATOR: SumAggregator})
        SgdComputation(config).compute(vertex, [FactorBroadcast(CfId.user(1), np.ones(2))], ctx)
        assert ctx.num_sent_messages() == 0

    def test_tolerance_lets_large_moves_through(self):
        config = SgdConfig(dim=2, gamma=0.5, lambda_=0.0, tolerance=0.01)
        vertex = Vertex(CfId.item(1), value=np.array([0.5, 0.5], dtype=np.float32),
                        edges=[(CfId.user(1), 5.0), (CfId.user(2), 4.0)])
        ctx = ComputeContext(superstep=2, aggregators={RMSE_AGGREGATOR: SumAggregator})
        SgdComputation(config).compute(vertex, [FactorBroadcast(CfId.user(1), np.ones(2))], ctx)
        # error -4 moves each component by 2, well past the tolerance
        np.testing.assert_allclose(vertex.value, [2.5, 2.5], atol=1e-6)
        assert set(ctx.outbox) == {CfId.user(1), CfId.user(2)}
        for msgs in ctx.outbox.values():
            np.testing.assert_allclose(msgs[0].factors, [2.5, 2.5], atol=1e-6)


class TestSgdEndToEnd:
    def test_halts_at_iteration_bound(self, toy_vertices):
        master, result = run_sgd(toy_vertices, dim=4, iterations=4, seed=11)
        assert result.halted_by_master
        # two init supersteps, then the master halts once superstep > iterations
        assert result.supersteps == 5
        assert all(v.value is not None and v.value.shape == (4,) for v in result.vertices.values())
        assert sorted(master.rmse_history) == [3, 4, 5]
        assert result.counters.get("SGD Counters", "# ratings") == 4
        assert result.counters.group(RMSE_COUNTER_GROUP)

    def test_items_get_reverse_edges(self, toy_vertices):
        _, result = run_sgd(toy_vertices, dim=4, iterations=2, seed=11)
        item = result.vertices[CfId.item(2)]
        assert item.get_edge_value(CfId.user(1)) == 3.0
        assert item.get_edge_value(CfId.user(2)) == 1.0

    def test_halts_early_on_rmse_target(self, toy_vertices):
        master, result = run_sgd(toy_vertices, dim=4, iterations=50, rmse_target=10.0, seed=11)
        assert result.halted_by_master
        assert result.supersteps == 3
        assert master.rmse_history[3] < 10.0

    def test_halts_once_training_reaches_the_target(self, toy_vertices):
        target = 1.5
        master, result = run_sgd(toy_vertices, dim=4, gamma=0.05, lambda_=0.0, iterations=200,
                                 rmse_target=target, seed=11)
        assert result.halted_by_master
        assert 3 < result.supersteps <= 200
        history = [master.rmse_history[s] for s in sorted(master.rmse_history)]
        assert history[-1] < target
        assert all(value >= target for value in history[:-1])
        assert max(master.rmse_history) == result.supersteps

    def test_deterministic_with_seed(self, toy_ratings):
        _, first = run_sgd(build_vertices(toy_ratings), dim=4, iterations=3, seed=5)
        _, second = run_sgd(build_vertices(toy_ratings), dim=4, iterations=3, seed=5)
        for vid, vertex in first.vertices.items():
            np.testing.assert_array_equal(vertex.value, second.vertices[vid].value)

    def test_learns_something(self, toy_vertices):
        master, _ = run_sgd(toy_vertices, dim=4, gamma=0.05, lambda_=0.0, iterations=40, seed=3)
        steps = sorted(master.rmse_history)
        assert master.rmse_history[steps[-1]] < master.rmse_history[steps[0]]

    def test_empty_graph_never_crashes(self):
        master, _ = run_sgd([Vertex(CfId.user(1))], dim=2, iterations=3, rmse_target=0.5)
        assert master.rmse_history == {}
