"""
Text formats.

Input: one rating per line, "user item [rating]", whitespace separated. The
rating defaults to 1.0 so implicit feedback files work as is.

Output: one vertex per line, "<id> <kind>\t[f1; f2; ...]" with kind 0 for
users and 1 for items.
"""
import logging
from pathlib import Path
from typing import Iterable

import numpy as np
import pandas as pd

from bsp_cf.engine import Vertex
from bsp_cf.ids import CfId

logger = logging.getLogger(__name__)


def load_ratings(path: str | Path,
                 user_col: str = "user",
                 item_col: str = "item",
                 rating_col: str = "rating") -> pd.DataFrame:
    users: list[int] = []
    items: list[int] = []
    ratings: list[float] = []

    with open(path, "r") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            parts = line.split()
            if len(parts) not in (2, 3):
                raise ValueError(f"Error: {path}:{line_no} expected 'user item [rating]' but got '{line}'")
            users.append(int(parts[0]))
            items.append(int(parts[1]))
            ratings.append(float(parts[2]) if len(parts) == 3 else 1.0)

    df = pd.DataFrame({user_col: users, item_col: items, rating_col: ratings})
    before = len(df)
    # a later rating of the same item replaces the earlier one
    df = df.drop_duplicates(subset=[user_col, item_col], keep="last").reset_index(drop=True)
    if len(df) != before:
        logger.info(f"Dropped {before - len(df)} duplicate user-item ratings")
    logger.info(f"Loaded {len(df)} ratings from {path}")
    return df


def build_vertices(df: pd.DataFrame,
                   user_col: str = "user",
                   item_col: str = "item",
                   rating_col: str = "rating",
                   include_items: bool = True) -> list[Vertex]:
    """
    One vertex per user holding its user -> item edges. Items get an edgeless
    vertex too when include_items is set; otherwise the engine creates them
    when they are first messaged.
    """
    vertices: list[Vertex] = []
    for user, grp in df.groupby(user_col, sort=True):
        edges = [(CfId.item(i), float(r)) for i, r in zip(grp[item_col], grp[rating_col])]
        vertices.append(Vertex(CfId.user(int(user)), edges=edges))  # pyright: ignore[reportArgumentType]
    if include_items:
        for item in sorted(df[item_col].unique()):
            vertices.append(Vertex(CfId.item(int(item))))
    return vertices


def format_factors(factors: np.ndarray) -> str:
    return "[" + "; ".join(f"{x:f}" for x in factors) + "]"


def write_model(vertices: Iterable[Vertex], path: str | Path) -> int:
    """Writes every vertex that has factors, sorted by id. Returns the line count."""
    written = 0
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as f:
        for vertex in sorted(vertices, key=lambda v: v.id):
            if vertex.value is None:
                continue
            f.write(f"{vertex.id}\t{format_factors(vertex.value)}\n")
            written += 1
    logger.info(f"Saved {written} factor vectors to: {path}")
    return written


def read_model(path: str | Path) -> dict[CfId, np.ndarray]:
    model: dict[CfId, np.ndarray] = {}
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            id_part, _, factors_part = line.partition("\t")
            factors_part = factors_part.strip()
            if not (factors_part.startswith("[") and factors_part.endswith("]")):
                raise ValueError(f"Error: malformed factors in line '{line}'")
            body = factors_part[1:-1].strip()
            values = [float(x) for x in body.split(";")] if body else []
            model[CfId.parse(id_part)] = np.array(values, dtype=np.float32)
    return model
