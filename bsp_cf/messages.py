"""
Messages exchanged between vertices.

Each protocol step has its own message type instead of a single message whose
score sign says whether the request was for a relevant or irrelevant item.
"""
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np

from bsp_cf.ids import CfId


def _frozen_copy(factors) -> np.ndarray:
    # the receiver must never see later updates of the sender's vector
    arr = np.array(factors, dtype=np.float32, copy=True).reshape(-1)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class FactorRequest:
    """User -> item: send me your factors."""
    sender: CfId
    relevant: bool


@dataclass(frozen=True, eq=False)
class FactorResponse:
    """Item -> user: my factors, answering a request with the same relevance."""
    sender: CfId
    factors: np.ndarray = field(repr=False)
    relevant: bool

    def __post_init__(self):
        object.__setattr__(self, "factors", _frozen_copy(self.factors))


@dataclass(frozen=True, eq=False)
class FactorDelta:
    """User -> item: add this delta to your factors."""
    sender: CfId
    delta: np.ndarray = field(repr=False)

    def __post_init__(self):
        object.__setattr__(self, "delta", _frozen_copy(self.delta))


@dataclass(frozen=True)
class Ack:
    """Empty message; keeps the receiver active for the next superstep."""
    sender: CfId


@dataclass(frozen=True, eq=False)
class FactorBroadcast:
    """
    A vertex's current factors sent to its neighbours.

    rating is only set when a user first contacts an item, so that the item
    can create the reverse edge with the same weight.
    """
    sender: CfId
    factors: np.ndarray = field(repr=False)
    rating: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "factors", _frozen_copy(self.factors))


Message = Union[FactorRequest, FactorResponse, FactorDelta, Ack, FactorBroadcast]
