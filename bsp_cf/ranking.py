"""
Sampling based ranking methods (BPR and friends) on the user-item graph.

One training iteration takes four supersteps:

    SAMPLE     users pick their relevant items and sample irrelevant ones,
               and ask all of them for their factors
    RESPOND    items answer every request with their current factors
    UPDATE     users compute the method specific gradient step, update
               themselves and send the item deltas
    PROPAGATE  items apply the deltas and acknowledge, which keeps the users
               active for the next iteration

After the last iteration a FLUSH superstep lets items send their final
factors around, and DONE consumes those messages.

Concrete methods only decide how many irrelevant items to sample
(buffer_size) and how to turn the factors into updates (gradient_update).
"""
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from bsp_cf.config import ConfigurationError, RankingConfig
from bsp_cf.engine import Computation, ComputeContext, MasterCompute, MasterContext, SumAggregator, Vertex
from bsp_cf.ids import CfId
from bsp_cf.messages import Ack, FactorBroadcast, FactorDelta, FactorRequest, FactorResponse, Message
from bsp_cf.utils import needs_init, random_factors, vertex_rng

logger = logging.getLogger(__name__)

PHASE_BROADCAST = "ranking.phase"
ITERATION_BROADCAST = "ranking.iteration"
LOSS_AGGREGATOR = "ranking.loss.aggregator"
PAIRS_AGGREGATOR = "ranking.pairs.aggregator"

COUNTER_GROUP = "Ranking Counters"
LOSS_COUNTER_GROUP = "Ranking Loss Counters"


class SamplingError(RuntimeError):
    """Could not find enough irrelevant items for a user."""


class RankingPhase(Enum):
    SAMPLE = "sample"
    RESPOND = "respond"
    UPDATE = "update"
    PROPAGATE = "propagate"
    FLUSH = "flush"
    DONE = "done"


# PROPAGATE is resolved by RankingCycle: SAMPLE while iterations remain,
# FLUSH after the last one
RANKING_TRANSITIONS: dict[RankingPhase, Optional[RankingPhase]] = {
    RankingPhase.SAMPLE: RankingPhase.RESPOND,
    RankingPhase.RESPOND: RankingPhase.UPDATE,
    RankingPhase.UPDATE: RankingPhase.PROPAGATE,
    RankingPhase.FLUSH: RankingPhase.DONE,
    RankingPhase.DONE: None,
}


class RankingCycle:
    """Walks the phase table, one step per superstep."""

    def __init__(self, iterations: int):
        self.iterations = iterations
        self.iteration = 0
        self.phase: Optional[RankingPhase] = None
        self.finished = False

    def advance(self) -> Optional[RankingPhase]:
        if self.finished:
            return None
        if self.phase is None:
            self.phase = RankingPhase.SAMPLE
        elif self.phase is RankingPhase.PROPAGATE:
            self.iteration += 1
            self.phase = RankingPhase.SAMPLE if self.iteration < self.iterations else RankingPhase.FLUSH
        else:
            self.phase = RANKING_TRANSITIONS[self.phase]
        if self.phase is None:
            self.finished = True
        return self.phase


def phase_for_superstep(superstep: int, iterations: int) -> Optional[RankingPhase]:
    """Phase that runs in the given superstep, None once the cycle is over."""
    cycle = RankingCycle(iterations)
    phase = None
    for _ in range(superstep + 1):
        phase = cycle.advance()
        if phase is None:
            break
    return phase


def sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


@dataclass
class GradientStep:
    """What a ranking method wants changed after looking at one user's samples."""
    user_delta: np.ndarray
    item_deltas: dict[CfId, np.ndarray] = field(default_factory=dict)
    loss: float = 0.0
    num_pairs: int = 0


class AbstractRankingComputation(Computation):
    """
    Base class for all ranking methods.

    Needs RankingMasterCompute, which broadcasts the phase of every superstep
    and registers the loss aggregators.
    """

    def __init__(self, config: RankingConfig):
        self.config = config

    # ---- method hooks ----

    def buffer_size(self, num_relevant: int) -> int:
        """Number of irrelevant items to sample for a user with num_relevant items."""
        raise NotImplementedError

    def gradient_update(self,
                        user_factors: np.ndarray,
                        positives: list[tuple[CfId, np.ndarray]],
                        negatives: list[tuple[CfId, np.ndarray]],
                        rng: np.random.Generator) -> GradientStep:
        raise NotImplementedError

    # ---- protocol ----

    def compute(self, vertex: Vertex, messages: list[Message], ctx: ComputeContext) -> None:
        phase: Optional[RankingPhase] = ctx.get_broadcast(PHASE_BROADCAST)
        if phase is None:
            raise RuntimeError("Error: ranking computations must run under RankingMasterCompute")
        rng = vertex_rng(self.config.seed, vertex.id, ctx.superstep)
        self.init_factors_if_needed(vertex, rng)

        if phase is RankingPhase.SAMPLE:
            self.sample_relevant_and_irrelevant_items(vertex, ctx, rng)
        elif phase is RankingPhase.RESPOND:
            self.send_factors_to_users(vertex, messages, ctx)
        elif phase is RankingPhase.UPDATE:
            self.compute_model_updates(vertex, messages, ctx, rng)
        elif phase is RankingPhase.PROPAGATE:
            last = ctx.get_broadcast(ITERATION_BROADCAST) == self.config.iterations - 1
            self.apply_updates(vertex, messages, ctx, last)
        elif phase is RankingPhase.FLUSH:
            self.flush_item_factors(vertex, ctx)
        vertex.vote_to_halt()

    def init_factors_if_needed(self, vertex: Vertex, rng: np.random.Generator) -> None:
        if needs_init(vertex.value, self.config.dim):
            vertex.value = random_factors(rng, self.config.dim)

    def sample_relevant_and_irrelevant_items(self, vertex: Vertex, ctx: ComputeContext,
                                             rng: np.random.Generator) -> None:
        if not vertex.id.is_user():
            return
        relevant = list(dict.fromkeys(target for target, _ in vertex.edges if target.is_item()))
        negatives = self.sample_irrelevant_items(set(relevant), self.buffer_size(len(relevant)), rng)

        for item_id in relevant:
            ctx.send_message(item_id, FactorRequest(vertex.id, relevant=True))
        for item_id in negatives:
            ctx.send_message(item_id, FactorRequest(vertex.id, relevant=False))
        logger.debug(f"{vertex.id} asked {len(relevant)} relevant and {len(negatives)} irrelevant items")

    def sample_irrelevant_items(self, relevant: set[CfId], budget: int,
                                rng: np.random.Generator) -> list[CfId]:
        """
        Uniformly draws `budget` distinct item ids in [minItemId, maxItemId]
        that are not in `relevant`, rejecting collisions.
        """
        low, high = self.config.min_item_id, self.config.max_item_id
        if low is None or high is None:
            raise ConfigurationError("Error: minItemId and maxItemId are needed to sample irrelevant items")
        if budget <= 0:
            return []
        in_range = sum(1 for item in relevant if low <= item.id <= high)
        pool = (high - low + 1) - in_range
        if budget > pool:
            raise SamplingError(
                f"Error: need {budget} irrelevant items but only {pool} of the ids in "
                f"[{low}, {high}] are not relevant")

        sampled: dict[CfId, None] = {}
        rejected = 0
        while len(sampled) < budget:
            candidate = CfId.item(int(rng.integers(low, high + 1)))
            if candidate in relevant or candidate in sampled:
                rejected += 1
                if rejected > self.config.max_sampling_attempts:
                    raise SamplingError(
                        f"Error: can not sample a new irrelevant item after {rejected} rejected draws")
                continue
            sampled[candidate] = None
        return list(sampled)

    def send_factors_to_users(self, vertex: Vertex, messages: list[Message], ctx: ComputeContext) -> None:
        """Answer every request with our factors, keeping the relevance of the request."""
        if not vertex.id.is_item():
            return
        for msg in messages:
            if isinstance(msg, FactorRequest):
                ctx.send_message(msg.sender, FactorResponse(vertex.id, vertex.value, msg.relevant))

    def compute_model_updates(self, vertex: Vertex, messages: list[Message], ctx: ComputeContext,
                              rng: np.random.Generator) -> None:
        if not vertex.id.is_user():
            return
        positives: list[tuple[CfId, np.ndarray]] = []
        negatives: list[tuple[CfId, np.ndarray]] = []
        for msg in messages:
            if isinstance(msg, FactorResponse):
                (positives if msg.relevant else negatives).append((msg.sender, msg.factors))
        if not positives and not negatives:
            return

        step = self.gradient_update(vertex.value, positives, negatives, rng)
        vertex.value = (vertex.value + step.user_delta).astype(np.float32)
        ctx.aggregate(LOSS_AGGREGATOR, step.loss)
        ctx.aggregate(PAIRS_AGGREGATOR, step.num_pairs)

        # every item that answered gets a delta, possibly zero, so it acks back
        zeros = np.zeros(self.config.dim, dtype=np.float32)
        for item_id in dict.fromkeys(item_id for item_id, _ in positives + negatives):
            ctx.send_message(item_id, FactorDelta(vertex.id, step.item_deltas.get(item_id, zeros)))

    def apply_updates(self, vertex: Vertex, messages: list[Message], ctx: ComputeContext,
                      last_iteration: bool) -> None:
        if not vertex.id.is_item():
            return
        updated = False
        for msg in messages:
            if isinstance(msg, FactorDelta):
                vertex.value = (vertex.value + msg.delta).astype(np.float32)
                # just send something to the user, so it is active in the next iteration
                ctx.send_message(msg.sender, Ack(vertex.id))
                updated = True
        if last_iteration and updated:
            # stay active for the flush
            ctx.send_message(vertex.id, Ack(vertex.id))

    def flush_item_factors(self, vertex: Vertex, ctx: ComputeContext) -> None:
        """Final factors to ourselves and our neighbours so they show up in the output."""
        if not vertex.id.is_item():
            return
        msg = FactorBroadcast(vertex.id, vertex.value)
        ctx.send_message(vertex.id, msg)
        ctx.send_message_to_all_edges(vertex, msg)


class RankingMasterCompute(MasterCompute):
    def __init__(self, config: RankingConfig, computation: AbstractRankingComputation):
        self.config = config
        self.computation = computation
        self.cycle = RankingCycle(config.iterations)
        # iteration -> mean pairwise loss
        self.loss_history: dict[int, float] = {}

    def initialize(self, ctx: MasterContext) -> None:
        ctx.register_aggregator(LOSS_AGGREGATOR, SumAggregator)
        ctx.register_aggregator(PAIRS_AGGREGATOR, SumAggregator)

    def compute(self, ctx: MasterContext) -> None:
        phase = self.cycle.advance()
        if phase is None:
            logger.info(f"Ranking finished after {self.config.iterations} iterations, halting")
            ctx.halt_computation()
            return

        ctx.set_computation(self.computation)
        ctx.broadcast(PHASE_BROADCAST, phase)
        ctx.broadcast(ITERATION_BROADCAST, self.cycle.iteration)
        logger.debug(f"Superstep {ctx.superstep}: iteration {self.cycle.iteration}, phase {phase.value}")

        if phase is RankingPhase.SAMPLE:
            logger.info(f"Iteration {self.cycle.iteration + 1}/{self.config.iterations}")
            ctx.counters.update_counter(COUNTER_GROUP, "iteration", self.cycle.iteration + 1, step=ctx.superstep)
        elif phase is RankingPhase.PROPAGATE:
            # aggregated by the users during UPDATE
            num_pairs = int(ctx.get_aggregated_value(PAIRS_AGGREGATOR))
            if num_pairs > 0:
                avg_loss = ctx.get_aggregated_value(LOSS_AGGREGATOR) / num_pairs
                self.loss_history[self.cycle.iteration] = avg_loss
                ctx.counters.update_counter(LOSS_COUNTER_GROUP, f"Iteration {self.cycle.iteration + 1} (x1000)",
                                            int(1000 * avg_loss), step=ctx.superstep)
                logger.info(f"Iteration {self.cycle.iteration + 1}: avg loss={avg_loss:.6f} over {num_pairs} pairs")
