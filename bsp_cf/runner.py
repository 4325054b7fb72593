"""
A single-process BSP runner.

It plays the role of the distributed graph engine for tests and small data
sets: supersteps, message barriers, aggregators, master compute and vertex
halting work like in Pregel/Giraph, but every vertex lives in one dict and
runs in one thread.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Type

from tqdm.auto import tqdm

from bsp_cf.counters import Counters
from bsp_cf.engine import (
    Computation, ComputeContext, MasterCompute, MasterContext, SumAggregator, Vertex
)
from bsp_cf.ids import CfId
from bsp_cf.messages import Message

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    supersteps: int
    halted_by_master: bool
    vertices: dict[CfId, Vertex]
    counters: Counters
    # superstep -> messages sent during that superstep
    message_counts: list[int] = field(default_factory=list)


class InMemoryGraphRunner:
    def __init__(self,
                 vertices: Iterable[Vertex],
                 computation: Optional[Computation] = None,
                 master: Optional[MasterCompute] = None,
                 conf: Any = None,
                 max_supersteps: int = 100_000,
                 counters: Optional[Counters] = None,
                 show_progress: bool = False):
        if max_supersteps < 0:
            raise ValueError(f"Error: max_supersteps must be >= 0 but got {max_supersteps}")
        if computation is None and master is None:
            raise ValueError("Error: need a computation or a master that sets one")
        self.vertices: dict[CfId, Vertex] = {}
        for vertex in vertices:
            if vertex.id in self.vertices:
                raise KeyError(f"Error: vertex '{vertex.id}' was given twice")
            self.vertices[vertex.id] = vertex
        self.computation = computation
        self.master = master
        self.conf = conf
        self.max_supersteps = max_supersteps
        self.counters = counters if counters is not None else Counters()
        self.show_progress = show_progress

        self._aggregators: dict[str, Type[SumAggregator]] = {}
        self._aggregated_values: dict[str, float] = {}

    def _master_context(self, superstep: int) -> MasterContext:
        return MasterContext(
            superstep=superstep,
            total_num_vertices=len(self.vertices),
            total_num_edges=sum(v.num_edges() for v in self.vertices.values()),
            aggregators=self._aggregators,
            aggregated_values=self._aggregated_values,
            counters=self.counters,
            conf=self.conf,
        )

    def run(self) -> RunResult:
        if self.master is not None:
            self.master.initialize(self._master_context(0))

        inbox: dict[CfId, list[Message]] = {}
        message_counts: list[int] = []
        superstep = 0
        halted_by_master = False
        computation = self.computation

        with tqdm(total=self.max_supersteps, desc="supersteps", disable=not self.show_progress) as bar:
            while superstep < self.max_supersteps:
                broadcasts: dict[str, Any] = {}
                if self.master is not None:
                    master_ctx = self._master_context(superstep)
                    self.master.compute(master_ctx)
                    if master_ctx.halted:
                        halted_by_master = True
                        logger.info(f"Master halted the computation at superstep {superstep}")
                        break
                    if master_ctx.computation is not None:
                        computation = master_ctx.computation
                    broadcasts = master_ctx.broadcasts
                if computation is None:
                    raise RuntimeError(f"Error: no computation set for superstep {superstep}")

                # a message to an unknown vertex creates it
                for target in inbox:
                    if target not in self.vertices:
                        logger.debug(f"Creating vertex {target} on message")
                        self.vertices[target] = Vertex(target)

                ctx = ComputeContext(
                    superstep=superstep,
                    conf=self.conf,
                    aggregators=self._aggregators,
                    aggregated_values=self._aggregated_values,
                    broadcasts=broadcasts,
                )
                computation.pre_superstep(ctx)

                for vertex_id in sorted(self.vertices):
                    vertex = self.vertices[vertex_id]
                    messages = inbox.get(vertex_id, [])
                    if messages:
                        vertex.wake_up()
                    elif vertex.halted:
                        continue
                    computation.compute(vertex, messages, ctx)

                # barrier: messages and aggregates become visible next superstep
                inbox = dict(ctx.outbox)
                self._aggregated_values = dict(ctx.partial_aggregates)
                message_counts.append(ctx.num_sent_messages())
                logger.debug(f"superstep {superstep}: {message_counts[-1]} messages sent")
                superstep += 1
                bar.update(1)

                if not inbox and all(v.halted for v in self.vertices.values()):
                    logger.info(f"All vertices halted with no messages after superstep {superstep - 1}")
                    break
            else:
                logger.warning(f"Stopped after reaching max_supersteps={self.max_supersteps}")

        return RunResult(
            supersteps=superstep,
            halted_by_master=halted_by_master,
            vertices=self.vertices,
            counters=self.counters,
            message_counts=message_counts,
        )
