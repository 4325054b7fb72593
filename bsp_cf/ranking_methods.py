import math
from typing import Type

import numpy as np

from bsp_cf.ids import CfId
from bsp_cf.ranking import AbstractRankingComputation, GradientStep, sigmoid


class BPRRankingComputation(AbstractRankingComputation):
    """
    Bayesian Personalized Ranking.

    Samples one irrelevant item per relevant item, pairs them at random and
    for every pair (i+, j-) takes a gradient ascent step on
    log sigma(x_ui - x_uj) with L2 regularization. All pair gradients are
    computed with the user vector as it was before this superstep.
    """

    def buffer_size(self, num_relevant: int) -> int:
        return num_relevant

    def gradient_update(self,
                        user_factors: np.ndarray,
                        positives: list[tuple[CfId, np.ndarray]],
                        negatives: list[tuple[CfId, np.ndarray]],
                        rng: np.random.Generator) -> GradientStep:
        lr = self.config.learn_rate
        reg = self.config.reg
        pu = user_factors.astype(np.float64)

        pos_order = rng.permutation(len(positives))
        neg_order = rng.permutation(len(negatives))

        user_delta = np.zeros_like(pu)
        item_deltas: dict[CfId, np.ndarray] = {}
        loss = 0.0
        num_pairs = 0
        for p, n in zip(pos_order, neg_order):
            i_id, qi = positives[p]
            j_id, qj = negatives[n]
            qi = qi.astype(np.float64)
            qj = qj.astype(np.float64)

            x_uij = float(np.dot(pu, qi - qj))
            sigm = sigmoid(x_uij)
            grad = 1.0 - sigm  # = sigmoid(-x_uij)

            user_delta += lr * (grad * (qi - qj) - reg * pu)
            item_deltas[i_id] = item_deltas.get(i_id, 0.0) + lr * (grad * pu - reg * qi)
            item_deltas[j_id] = item_deltas.get(j_id, 0.0) + lr * (-grad * pu - reg * qj)

            loss += -math.log(sigm + 1e-10)
            num_pairs += 1

        return GradientStep(
            user_delta=user_delta.astype(np.float32),
            item_deltas={item_id: delta.astype(np.float32) for item_id, delta in item_deltas.items()},
            loss=loss,
            num_pairs=num_pairs,
        )


class RandomRankingComputation(AbstractRankingComputation):
    """Baseline: runs the protocol on relevant items only and never learns."""

    def buffer_size(self, num_relevant: int) -> int:
        return 0

    def gradient_update(self,
                        user_factors: np.ndarray,
                        positives: list[tuple[CfId, np.ndarray]],
                        negatives: list[tuple[CfId, np.ndarray]],
                        rng: np.random.Generator) -> GradientStep:
        return GradientStep(user_delta=np.zeros_like(user_factors))


RANKING_METHODS: dict[str, Type[AbstractRankingComputation]] = {
    "bpr": BPRRankingComputation,
    "random": RandomRankingComputation,
}
