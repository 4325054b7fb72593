import datetime
import logging
from typing import Iterable, Optional

import networkx as nx
import numpy as np
from dateutil import tz

from bsp_cf.engine import Vertex
from bsp_cf.ids import CfId

logger = logging.getLogger(__name__)


def vertex_rng(seed: Optional[int], vertex_id: CfId, superstep: int) -> np.random.Generator:
    """
    Random stream for one vertex in one superstep.

    With a seed the stream only depends on (seed, vertex, superstep), so the
    order in which the engine evaluates vertices does not change the result.
    Without a seed the stream is fresh entropy.
    """
    if seed is None:
        return np.random.default_rng()
    return np.random.default_rng([seed, int(vertex_id.kind), vertex_id.id, superstep])


def random_factors(rng: np.random.Generator, dim: int, scale: float = 1.0) -> np.ndarray:
    return (scale * rng.random(dim)).astype(np.float32)


def needs_init(value, dim: int) -> bool:
    return value is None or getattr(value, "shape", None) != (dim,)


def to_networkx(vertices: Iterable[Vertex]) -> nx.DiGraph:
    graph = nx.DiGraph()
    for vertex in vertices:
        graph.add_node(vertex.id, kind=vertex.id.kind)
        for target, weight in vertex.edges:
            graph.add_edge(vertex.id, target, weight=weight)
    return graph


def graph_info(vertices: Iterable[Vertex]) -> dict[str, float]:
    """Logs and returns a short summary of the input graph."""
    graph = to_networkx(vertices)
    num_users = sum(1 for n in graph.nodes if n.is_user())
    num_items = graph.number_of_nodes() - num_users
    summary: dict[str, float] = {
        "vertices": graph.number_of_nodes(),
        "users": num_users,
        "items": num_items,
        "edges": graph.number_of_edges(),
    }
    if graph.number_of_nodes() > 0:
        degrees = [d for _, d in graph.to_undirected(as_view=True).degree()]
        summary["isolated"] = sum(1 for d in degrees if d == 0)
        summary["mean_degree"] = float(np.mean(degrees))
        summary["max_degree"] = float(max(degrees))
        summary["bipartite"] = float(nx.is_bipartite(graph))
    # density of the user x item rating matrix
    possible = num_users * num_items
    summary["density"] = graph.number_of_edges() / possible if possible else 0.0

    logger.info("Summary")
    logger.info("-" * 40)
    for key, value in summary.items():
        logger.info(f"{key}: {value:g}")
    logger.info("-" * 40)
    return summary


def generate_now_timestamp_str(time_zone_info: datetime.tzinfo | None = tz.gettz('America/Los_Angeles')) -> str:
    # readable string used in run names and output paths
    current_time = datetime.datetime.now(time_zone_info)
    date_string = f"{current_time.year}-{current_time.month}-{current_time.day}"
    time_string = f"{current_time.hour}-{current_time.minute}-{current_time.second}"
    return date_string + "_" + time_string
