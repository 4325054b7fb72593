"""
The parts of a Pregel-style BSP engine that the CF computations talk to.

A computation only ever sees one vertex, the messages sent to it in the
previous superstep and a ComputeContext. The master sees a MasterContext once
per superstep, before any vertex runs.
"""
from collections import defaultdict
from typing import Any, Iterable, Optional, Type

from bsp_cf.counters import Counters
from bsp_cf.ids import CfId
from bsp_cf.messages import Message


class SumAggregator:
    """Commutative, associative sum; the only reducer the computations need."""

    @staticmethod
    def initial_value() -> float:
        return 0.0

    @staticmethod
    def combine(left: float, right: float) -> float:
        return left + right


class Vertex:
    def __init__(self, id: CfId, value=None, edges: Optional[Iterable[tuple[CfId, float]]] = None):
        self.id = id
        self.value = value
        # target -> edge value, insertion ordered
        self._edges: dict[CfId, float] = {}
        for target, weight in edges or ():
            self._edges[target] = float(weight)
        self.halted = False

    @property
    def edges(self) -> list[tuple[CfId, float]]:
        return list(self._edges.items())

    def num_edges(self) -> int:
        return len(self._edges)

    def get_edge_value(self, target: CfId) -> Optional[float]:
        return self._edges.get(target)

    def add_edge(self, target: CfId, weight: float) -> None:
        self._edges[target] = float(weight)

    def vote_to_halt(self) -> None:
        self.halted = True

    def wake_up(self) -> None:
        self.halted = False

    def __repr__(self) -> str:
        return f"Vertex(id={self.id!r}, edges={len(self._edges)}, halted={self.halted})"


class ComputeContext:
    """
    What a vertex computation may do during one superstep.

    Messages and aggregated values written here only become visible in the
    next superstep.
    """

    def __init__(self,
                 superstep: int,
                 conf: Any = None,
                 aggregators: Optional[dict[str, Type[SumAggregator]]] = None,
                 aggregated_values: Optional[dict[str, float]] = None,
                 broadcasts: Optional[dict[str, Any]] = None):
        self.superstep = superstep
        self.conf = conf
        self._aggregators = dict(aggregators or {})
        self._aggregated_values = dict(aggregated_values or {})
        self._broadcasts = dict(broadcasts or {})
        self._outbox: defaultdict[CfId, list[Message]] = defaultdict(list)
        self._partial_aggregates: dict[str, float] = {
            name: aggregator.initial_value() for name, aggregator in self._aggregators.items()
        }

    # ---- messaging ----

    def send_message(self, target: CfId, message: Message) -> None:
        self._outbox[target].append(message)

    def send_message_to_all_edges(self, vertex: Vertex, message: Message) -> None:
        for target, _ in vertex.edges:
            self.send_message(target, message)

    @property
    def outbox(self) -> dict[CfId, list[Message]]:
        return self._outbox

    def num_sent_messages(self) -> int:
        return sum(len(msgs) for msgs in self._outbox.values())

    # ---- aggregation ----

    def aggregate(self, name: str, value: float) -> None:
        if name not in self._aggregators:
            raise KeyError(f"Error: aggregator '{name}' was never registered by the master")
        aggregator = self._aggregators[name]
        self._partial_aggregates[name] = aggregator.combine(self._partial_aggregates[name], value)

    def get_aggregated_value(self, name: str) -> float:
        """Value aggregated during the previous superstep."""
        return self._aggregated_values[name]

    @property
    def partial_aggregates(self) -> dict[str, float]:
        return self._partial_aggregates

    def get_broadcast(self, name: str, default: Any = None) -> Any:
        return self._broadcasts.get(name, default)


class Computation:
    """Per-vertex logic run by the engine every superstep."""

    def pre_superstep(self, ctx: ComputeContext) -> None:
        pass

    def compute(self, vertex: Vertex, messages: list[Message], ctx: ComputeContext) -> None:
        raise NotImplementedError


class MasterContext:
    def __init__(self,
                 superstep: int,
                 total_num_vertices: int,
                 total_num_edges: int,
                 aggregators: dict[str, Type[SumAggregator]],
                 aggregated_values: dict[str, float],
                 counters: Counters,
                 conf: Any = None):
        self.superstep = superstep
        self.total_num_vertices = total_num_vertices
        self.total_num_edges = total_num_edges
        self.counters = counters
        self.conf = conf
        self._aggregators = aggregators
        self._aggregated_values = aggregated_values
        self.computation: Optional[Computation] = None
        self.broadcasts: dict[str, Any] = {}
        self.halted = False

    def register_aggregator(self, name: str, aggregator: Type[SumAggregator]) -> None:
        self._aggregators[name] = aggregator
        self._aggregated_values.setdefault(name, aggregator.initial_value())

    def get_aggregated_value(self, name: str) -> float:
        return self._aggregated_values[name]

    def set_computation(self, computation: Computation) -> None:
        self.computation = computation

    def broadcast(self, name: str, value: Any) -> None:
        self.broadcasts[name] = value

    def halt_computation(self) -> None:
        self.halted = True


class MasterCompute:
    """Global coordinator, called once per superstep before the vertices."""

    def initialize(self, ctx: MasterContext) -> None:
        pass

    def compute(self, ctx: MasterContext) -> None:
        raise NotImplementedError
