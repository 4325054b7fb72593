"""
Hyperparameters of the CF computations.

Every tunable value is a dataclass field whose metadata declares the key used
on the command line, a description and the valid range. Configs validate
themselves on construction so a bad value fails the run before superstep 0.
"""
import logging
import math
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class HyperParameter:
    key: str
    description: str
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    required: bool = False


def hyper_parameter(key: str, description: str, default: Any = None,
                    minimum: Optional[float] = None, maximum: Optional[float] = None,
                    required: bool = False):
    return field(
        default=default,
        metadata={"hyper": HyperParameter(key, description, minimum, maximum, required)},
    )


def _parse(raw: Any, to_type: type, key: str):
    # plain integers are parsed exactly, float() would round large ids and seeds
    if to_type is int and isinstance(raw, (int, str)) and str(raw).strip().lstrip("+-").isdigit():
        return int(raw)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Error: parameter '{key}' must be numeric but got {raw!r}") from None
    if math.isnan(value):
        raise ConfigurationError(f"Error: parameter '{key}' is NaN")
    if to_type is int:
        if not value.is_integer():
            raise ConfigurationError(f"Error: parameter '{key}' must be an integer but got {raw!r}")
        return int(value)
    return value


class _ValidatedConfig:
    # subclasses map field name -> python type of the parsed value
    _types: dict[str, type] = {}

    def __post_init__(self):
        for f in fields(self):  # pyright: ignore[reportArgumentType]
            hp: Optional[HyperParameter] = f.metadata.get("hyper")
            if hp is None:
                continue
            value = getattr(self, f.name)
            if value is None:
                if hp.required:
                    raise ConfigurationError(f"Error: required parameter '{hp.key}' ({hp.description}) is missing")
                continue
            value = _parse(value, self._types.get(f.name, float), hp.key)
            if hp.minimum is not None and value < hp.minimum:
                raise ConfigurationError(
                    f"Error: parameter '{hp.key}'={value} is below its minimum {hp.minimum}")
            if hp.maximum is not None and value > hp.maximum:
                raise ConfigurationError(
                    f"Error: parameter '{hp.key}'={value} is above its maximum {hp.maximum}")
            object.__setattr__(self, f.name, value)
        self._check()

    def _check(self) -> None:
        pass

    @classmethod
    def parameters(cls) -> dict[str, HyperParameter]:
        """key used in custom arguments -> declaration"""
        return {f.metadata["hyper"].key: f.metadata["hyper"] for f in fields(cls) if "hyper" in f.metadata}  # pyright: ignore[reportArgumentType]

    @classmethod
    def from_custom_arguments(cls, custom_arguments: dict[str, str]):
        """
        Build a config from "key=value" style arguments, e.g. {"dim": "10"}.

        Missing keys take their defaults, unknown keys are logged and ignored.
        """
        key_to_field = {f.metadata["hyper"].key: f.name for f in fields(cls) if "hyper" in f.metadata}  # pyright: ignore[reportArgumentType]
        kwargs = {}
        for key, raw in custom_arguments.items():
            if key not in key_to_field:
                logger.warning(f"Ignoring unknown parameter '{key}' for {cls.__name__}")
                continue
            kwargs[key_to_field[key]] = raw
        config = cls(**kwargs)
        for key, name in key_to_field.items():
            logger.info(f"{key}={getattr(config, name)}")
        return config

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)  # pyright: ignore[reportArgumentType]


@dataclass(frozen=True)
class SgdConfig(_ValidatedConfig):
    dim: int = hyper_parameter("dim", "latent vector size", 50, 1, 1000)
    gamma: float = hyper_parameter("gamma", "learning rate", 0.005, 0.0, 10.0)
    lambda_: float = hyper_parameter("lambda", "regularization", 0.01, 0.0, 10.0)
    iterations: int = hyper_parameter("iterations", "maximum number of supersteps", 10, 1, 100000)
    min_rating: float = hyper_parameter("min.rating", "minimum rating", 0.0)
    max_rating: float = hyper_parameter("max.rating", "maximum rating", 5.0)
    # <= 0 disables the RMSE target / the convergence tolerance
    rmse_target: float = hyper_parameter("rmse", "halt once the RMSE drops below this", -1.0)
    tolerance: float = hyper_parameter("tolerance", "only broadcast when the vector moved more than this", -1.0)
    seed: Optional[int] = hyper_parameter("seed", "seed for factor initialization", None, 0)

    _types = {"dim": int, "iterations": int, "seed": int}

    def _check(self) -> None:
        if self.min_rating > self.max_rating:
            raise ConfigurationError(
                f"Error: min.rating={self.min_rating} is greater than max.rating={self.max_rating}")


@dataclass(frozen=True)
class RankingConfig(_ValidatedConfig):
    dim: int = hyper_parameter("dim", "dimensionality of the model", 10, 1, 1000)
    learn_rate: float = hyper_parameter("learnRate", "learning rate", 0.001, 0.0001, 10)
    iterations: int = hyper_parameter("iter", "number of iterations", 10, 1, 1000)
    reg: float = hyper_parameter("reg", "regularizer", 0.01, 0.00011, 2)
    min_item_id: Optional[int] = hyper_parameter("minItemId", "minimum item id, used to sample negatives", required=True)
    max_item_id: Optional[int] = hyper_parameter("maxItemId", "maximum item id, used to sample negatives", required=True)
    seed: Optional[int] = hyper_parameter("seed", "seed for sampling and initialization", None, 0)
    max_sampling_attempts: int = hyper_parameter(
        "maxSamplingAttempts", "rejected negative draws tolerated per user", 1_000_000, 1, 1_000_000_000)

    _types = {"dim": int, "iterations": int, "min_item_id": int, "max_item_id": int,
              "seed": int, "max_sampling_attempts": int}

    def _check(self) -> None:
        if self.min_item_id is None or self.max_item_id is None:
            raise ConfigurationError("Error: minItemId and maxItemId are both required")
        if self.min_item_id > self.max_item_id:
            raise ConfigurationError(
                f"Error: minItemId={self.min_item_id} is greater than maxItemId={self.max_item_id}")
