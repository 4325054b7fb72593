import pandas as pd
import pytest

from bsp_cf.io import build_vertices


@pytest.fixture
def toy_ratings() -> pd.DataFrame:
    """2 users x 2 items, every user rated every item."""
    return pd.DataFrame({
        "user": [1, 1, 2, 2],
        "item": [1, 2, 1, 2],
        "rating": [5.0, 3.0, 4.0, 1.0],
    })


@pytest.fixture
def toy_vertices(toy_ratings):
    return build_vertices(toy_ratings)


@pytest.fixture
def implicit_ratings() -> pd.DataFrame:
    """Implicit feedback over items 1..4; ids up to 10 are valid negatives."""
    return pd.DataFrame({
        "user": [1, 1, 2, 2, 3],
        "item": [1, 2, 2, 3, 4],
        "rating": [1.0] * 5,
    })
