"""
Evaluation of a trained factor model against held out ratings.
"""
import math
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from bsp_cf.ids import CfId


def ndcg_at_k(
    recommended: Sequence[int] | np.ndarray,
    ground_truth: Iterable[int],
    k: int = 20,
) -> float:
    """
    Binary relevance NDCG@k for one user, given the ranked item ids (plain
    ids, as returned by recommend_top_k) and the held out item ids.
    """
    gt = {int(i) for i in ground_truth}
    if not gt or k <= 0:
        return 0.0
    top = np.asarray(recommended, dtype=np.int64)[:k]
    # discount of rank r (1-based) is 1/log2(r + 1)
    discounts = 1.0 / np.log2(np.arange(2, k + 2))
    hits = np.fromiter((int(i) in gt for i in top), dtype=bool, count=top.size)
    dcg = float(discounts[:top.size][hits].sum())
    idcg = float(discounts[:min(k, len(gt))].sum())
    return dcg / idcg


def predict(model: dict[CfId, np.ndarray], user: int, item: int,
            min_rating: Optional[float] = None, max_rating: Optional[float] = None) -> Optional[float]:
    """Dot product of the two factor vectors, clamped when bounds are given. None for unknown ids."""
    pu = model.get(CfId.user(user))
    qi = model.get(CfId.item(item))
    if pu is None or qi is None:
        return None
    score = float(np.dot(pu, qi))
    if max_rating is not None:
        score = min(score, max_rating)
    if min_rating is not None:
        score = max(score, min_rating)
    return score


def rmse_on(model: dict[CfId, np.ndarray], ratings: pd.DataFrame,
            min_rating: float, max_rating: float,
            user_col: str = "user", item_col: str = "item", rating_col: str = "rating") -> Optional[float]:
    """RMSE over the ratings whose user and item are both in the model, None if there are none."""
    squared = 0.0
    count = 0
    for u, i, r in zip(ratings[user_col], ratings[item_col], ratings[rating_col]):
        predicted = predict(model, int(u), int(i), min_rating, max_rating)
        if predicted is None:
            continue
        squared += (predicted - float(r)) ** 2
        count += 1
    return math.sqrt(squared / count) if count else None


def recommend_top_k(model: dict[CfId, np.ndarray], user: int, k: int = 20,
                    exclude: Iterable[int] = ()) -> list[int]:
    """
    Top-k item ids for a user by dot product score, skipping `exclude`.
    Unknown users get an empty list.
    """
    pu = model.get(CfId.user(user))
    if pu is None:
        return []
    excluded = set(exclude)
    item_ids = np.array([vid.id for vid in model if vid.is_item() and vid.id not in excluded], dtype=np.int64)
    if item_ids.size == 0:
        return []
    item_factors = np.stack([model[CfId.item(int(i))] for i in item_ids])
    scores = item_factors @ pu
    if k >= scores.size:
        top_idx = np.argsort(-scores, kind="stable")[:k]
    else:
        top_idx = np.argpartition(-scores, k)[:k]
        top_idx = top_idx[np.argsort(-scores[top_idx], kind="stable")]
    return [int(item_ids[i]) for i in top_idx]


def evaluate_ndcg(model: dict[CfId, np.ndarray], eval_df: pd.DataFrame,
                  seen: Optional[pd.DataFrame] = None, k: int = 20,
                  user_col: str = "user", item_col: str = "item") -> float:
    """
    Mean NDCG@k over users in eval_df. Items in `seen` (usually the training
    ratings) are never recommended.
    """
    seen_items: dict[int, list[int]] = {}
    if seen is not None:
        seen_items = {int(u): list(items) for u, items in seen.groupby(user_col)[item_col]}
    per_user_gt = eval_df.groupby(user_col)[item_col].apply(list)
    scores: list[float] = []
    for u, gt_items in per_user_gt.items():
        recs = recommend_top_k(model, int(u), k=k, exclude=seen_items.get(int(u), ()))  # pyright: ignore[reportArgumentType]
        scores.append(ndcg_at_k(recs, gt_items, k))
    return float(np.mean(scores)) if scores else 0.0
