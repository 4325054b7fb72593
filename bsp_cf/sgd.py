"""
Stochastic Gradient Descent (SGD) rating prediction.

Users and items both hold a latent factor vector. Every superstep each vertex
fits its vector to the vectors its neighbours sent, one rating at a time,
then sends the new vector back. The master runs two initialization
supersteps (users, then items) before the steady state and halts on an RMSE
target or an iteration bound.
"""
import logging
import math
from enum import Enum
from typing import Optional

import numpy as np

from bsp_cf.config import SgdConfig
from bsp_cf.engine import Computation, ComputeContext, MasterCompute, MasterContext, SumAggregator, Vertex
from bsp_cf.messages import FactorBroadcast, Message
from bsp_cf.utils import needs_init, random_factors, vertex_rng

logger = logging.getLogger(__name__)

# Aggregator used to compute the RMSE
RMSE_AGGREGATOR = "sgd.rmse.aggregator"

COUNTER_GROUP = "SGD Counters"
RMSE_COUNTER = "RMSE (x1000)"
NUM_RATINGS_COUNTER = "# ratings"
RMSE_COUNTER_GROUP = "RMSE Counters"

# initial factors are drawn from U[0, INIT_SCALE)
INIT_SCALE = 0.01


def clamp(value: float, min_rating: float, max_rating: float) -> float:
    return max(min(value, max_rating), min_rating)


def update_value(value: np.ndarray, update: np.ndarray, rating: float,
                 min_rating: float, max_rating: float,
                 lambda_: float, gamma: float) -> np.ndarray:
    """
    One SGD step for a single rating.

    v = v - gamma*(lambda*v + error*u)

    where error = clamp(v.u) - rating. Returns a new array, value is not
    modified.
    """
    predicted = clamp(float(np.dot(value, update)), min_rating, max_rating)
    err = predicted - rating
    return (value - gamma * (lambda_ * value + err * update)).astype(np.float32)


def rmse(squared_error_sum: float, num_ratings: int) -> Optional[float]:
    """sqrt(sum / count), or None when there is nothing to average over."""
    if num_ratings <= 0:
        return None
    return math.sqrt(squared_error_sum / num_ratings)


class SgdComputation(Computation):
    """Main SGD compute, run in every superstep after the two init supersteps."""

    def __init__(self, config: SgdConfig):
        self.config = config

    def compute(self, vertex: Vertex, messages: list[Message], ctx: ComputeContext) -> None:
        config = self.config
        if needs_init(vertex.value, config.dim):
            rng = vertex_rng(config.seed, vertex.id, ctx.superstep)
            vertex.value = random_factors(rng, config.dim, INIT_SCALE)
        old_value = vertex.value
        value = vertex.value

        # only factor broadcasts from rated neighbours carry something to fit
        rated: list[tuple[FactorBroadcast, float]] = []
        for msg in messages:
            if not isinstance(msg, FactorBroadcast):
                continue
            rating = vertex.get_edge_value(msg.sender)
            if rating is None:
                logger.warning(f"{vertex.id} got factors from {msg.sender} without an edge to it, skipping")
                continue
            rated.append((msg, rating))

        # iterate samples and update the vector one at a time
        for msg, rating in rated:
            value = update_value(value, msg.factors, rating,
                                 config.min_rating, config.max_rating, config.lambda_, config.gamma)
        vertex.value = value

        # error of the updated vector, for the RMSE
        rmse_partial_sum = 0.0
        for msg, rating in rated:
            predicted = clamp(float(np.dot(value, msg.factors)), config.min_rating, config.max_rating)
            err = predicted - rating
            rmse_partial_sum += err * err
        ctx.aggregate(RMSE_AGGREGATOR, rmse_partial_sum)

        if config.tolerance > 0:
            l2norm = float(np.sum((value - old_value) ** 2))
            if l2norm > config.tolerance:
                ctx.send_message_to_all_edges(vertex, FactorBroadcast(vertex.id, value))
        else:
            ctx.send_message_to_all_edges(vertex, FactorBroadcast(vertex.id, value))

        vertex.vote_to_halt()


class InitUsersComputation(Computation):
    """
    Initializes user factors in the very first superstep and sends them, with
    the rating, to every rated item.
    """

    def __init__(self, config: SgdConfig):
        self.config = config

    def compute(self, vertex: Vertex, messages: list[Message], ctx: ComputeContext) -> None:
        if vertex.id.is_user():
            rng = vertex_rng(self.config.seed, vertex.id, ctx.superstep)
            vertex.value = random_factors(rng, self.config.dim, INIT_SCALE)
            for target, rating in vertex.edges:
                ctx.send_message(target, FactorBroadcast(vertex.id, vertex.value, rating))
        vertex.vote_to_halt()


class InitItemsComputation(Computation):
    """
    Initializes item factors in the second superstep. Every item also creates
    the edges back to the users that rated it.
    """

    def __init__(self, config: SgdConfig):
        self.config = config

    def compute(self, vertex: Vertex, messages: list[Message], ctx: ComputeContext) -> None:
        rng = vertex_rng(self.config.seed, vertex.id, ctx.superstep)
        vertex.value = random_factors(rng, self.config.dim, INIT_SCALE)

        for msg in messages:
            if isinstance(msg, FactorBroadcast) and msg.rating is not None:
                vertex.add_edge(msg.sender, msg.rating)

        ctx.send_message_to_all_edges(vertex, FactorBroadcast(vertex.id, vertex.value))
        vertex.vote_to_halt()


class SgdState(Enum):
    INIT_USERS = "init_users"
    INIT_ITEMS = "init_items"
    STEADY_STATE = "steady_state"


SGD_TRANSITIONS: dict[SgdState, SgdState] = {
    SgdState.INIT_USERS: SgdState.INIT_ITEMS,
    SgdState.INIT_ITEMS: SgdState.STEADY_STATE,
    SgdState.STEADY_STATE: SgdState.STEADY_STATE,
}

# the first SGD aggregate is published at the superstep after the first SGD superstep
FIRST_RMSE_SUPERSTEP = 3


class SgdMasterCompute(MasterCompute):
    """Coordinates the execution of the algorithm."""

    def __init__(self, config: SgdConfig):
        self.config = config
        self.computations: dict[SgdState, Computation] = {
            SgdState.INIT_USERS: InitUsersComputation(config),
            SgdState.INIT_ITEMS: InitItemsComputation(config),
            SgdState.STEADY_STATE: SgdComputation(config),
        }
        self.state: Optional[SgdState] = None
        self.rmse_history: dict[int, float] = {}

    def initialize(self, ctx: MasterContext) -> None:
        ctx.register_aggregator(RMSE_AGGREGATOR, SumAggregator)

    def compute(self, ctx: MasterContext) -> None:
        superstep = ctx.superstep
        self.state = SgdState.INIT_USERS if self.state is None else SGD_TRANSITIONS[self.state]
        ctx.set_computation(self.computations[self.state])

        # items add the reverse edges during superstep 1
        if superstep <= 1:
            num_ratings = ctx.total_num_edges
        else:
            num_ratings = ctx.total_num_edges // 2

        current_rmse = None
        if superstep >= FIRST_RMSE_SUPERSTEP:
            current_rmse = rmse(ctx.get_aggregated_value(RMSE_AGGREGATOR), num_ratings)
            if current_rmse is None:
                logger.debug(f"Superstep {superstep}: no ratings, RMSE unavailable")

        if current_rmse is not None:
            self.rmse_history[superstep] = current_rmse
            ctx.counters.update_counter(RMSE_COUNTER_GROUP, f"Iteration {superstep - 2}",
                                        int(1000 * current_rmse), step=superstep)
            ctx.counters.update_counter(COUNTER_GROUP, RMSE_COUNTER, int(1000 * current_rmse), step=superstep)
            logger.info(f"Superstep {superstep} ({self.state.value}): RMSE={current_rmse:.6f} over {num_ratings} ratings")
        else:
            logger.info(f"Superstep {superstep} ({self.state.value}): {num_ratings} ratings")
        ctx.counters.update_counter(COUNTER_GROUP, NUM_RATINGS_COUNTER, num_ratings, step=superstep)

        if self.config.rmse_target > 0 and current_rmse is not None and current_rmse < self.config.rmse_target:
            logger.info(f"RMSE {current_rmse:.6f} below target {self.config.rmse_target}, halting")
            ctx.halt_computation()
        elif superstep > self.config.iterations:
            logger.info(f"Reached {self.config.iterations} iterations, halting")
            ctx.halt_computation()
