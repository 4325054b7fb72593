r"""
Train a collaborative filtering model on the in-memory BSP runner.

- loads "user item [rating]" lines
- builds the user/item vertices
- runs SGD (rating prediction) or a ranking method (bpr, random)
- writes "<id> <kind>\t[factors]" lines
- optionally tracks params/counters in mlflow and plots the training curve
- optionally scores the written model on held out ratings (RMSE for sgd,
  NDCG@k for the ranking methods)

Example:
  python bsp_recommender.py --algorithm sgd --input ratings.txt --output model.txt \
      --ca dim=10 --ca iterations=20 --ca rmse=0.9
  python bsp_recommender.py --algorithm bpr --input train.txt --output model.txt \
      --ca minItemId=1 --ca maxItemId=5000 --eval-input test.txt --k 20
"""
import argparse
import logging
import os
import sys
from typing import Optional

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import mlflow
import pandas as pd

from bsp_cf.config import ConfigurationError, RankingConfig, SgdConfig
from bsp_cf.counters import Counters
from bsp_cf.evaluation import evaluate_ndcg, rmse_on
from bsp_cf.io import build_vertices, load_ratings, read_model, write_model
from bsp_cf.ranking import RankingMasterCompute, SamplingError
from bsp_cf.ranking_methods import RANKING_METHODS
from bsp_cf.runner import InMemoryGraphRunner, RunResult
from bsp_cf.sgd import SgdMasterCompute
from bsp_cf.utils import generate_now_timestamp_str, graph_info

logger = logging.getLogger("bsp_recommender")


def parse_custom_arguments(pairs: list[str]) -> dict[str, str]:
    """["dim=10", "gamma=0.01"] -> {"dim": "10", "gamma": "0.01"}"""
    custom_arguments: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"Error: custom argument must look like key=value but got '{pair}'")
        custom_arguments[key.strip()] = value.strip()
    return custom_arguments


def plot_history(history: dict[int, float], xlabel: str, ylabel: str, title: str, out_path: str) -> None:
    """Training curve, one point per superstep/iteration."""
    if not history:
        logger.warning("No history to plot.")
        return
    xs = sorted(history)
    ys = [history[x] for x in xs]

    plt.figure()
    plt.plot(xs, ys, marker="o")
    plt.xlabel(xlabel)
    plt.ylabel(ylabel)
    plt.title(title)
    plt.grid(True)
    plt.tight_layout()

    out_dir = os.path.dirname(out_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    plt.savefig(out_path)
    plt.close()
    logger.info(f"Saved training curve to: {out_path}")


def evaluate_model(model_path: str, eval_path: str, train_df: pd.DataFrame,
                   sgd_config: Optional[SgdConfig] = None, k: int = 20) -> dict[str, float]:
    """
    Scores a written model on held out ratings. With an SGD config the
    clamped RMSE is reported, otherwise NDCG@k with the training items of
    every user excluded from its recommendations.
    """
    model = read_model(model_path)
    eval_df = load_ratings(eval_path)
    metrics: dict[str, float] = {}
    if sgd_config is not None:
        test_rmse = rmse_on(model, eval_df, sgd_config.min_rating, sgd_config.max_rating)
        if test_rmse is None:
            logger.warning(f"No held out rating in {eval_path} has both its user and item in the model")
        else:
            metrics["test_rmse"] = test_rmse
    else:
        metrics[f"test_ndcg_at_{k}"] = evaluate_ndcg(model, eval_df, seen=train_df, k=k)

    for name, value in metrics.items():
        logger.info(f"{name}: {value:.6f}")
    if metrics and mlflow.active_run() is not None:
        mlflow.log_metrics(metrics)
    return metrics


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--algorithm", choices=["sgd", *RANKING_METHODS], default="sgd")
    parser.add_argument("--input", required=True, help="ratings file, one 'user item [rating]' per line")
    parser.add_argument("--output", required=True, help="where to write the factor model")
    parser.add_argument("--ca", action="append", default=[], metavar="KEY=VALUE",
                        help="algorithm parameter, repeatable (e.g. --ca dim=10)")
    parser.add_argument("--max-supersteps", type=int, default=100_000)
    parser.add_argument("--mlflow-uri", default=None, help="track the run in this mlflow server")
    parser.add_argument("--eval-input", default=None,
                        help="held out ratings to score the written model on, same format as --input")
    parser.add_argument("--k", type=int, default=20, help="cutoff of NDCG@k for the ranking methods")
    parser.add_argument("--plot", default=None, help="save the training curve to this png")
    parser.add_argument("--progress", action="store_true", help="show a superstep progress bar")
    parser.add_argument("--log-level", default="INFO")
    return parser


def train(algorithm: str, custom_arguments: dict[str, str], input_path: str, output_path: str,
          max_supersteps: int = 100_000, show_progress: bool = False,
          plot_path: Optional[str] = None, eval_path: Optional[str] = None, k: int = 20) -> RunResult:
    """Config is validated before the graph is loaded, so bad parameters fail fast."""
    if k < 1:
        raise ConfigurationError(f"Error: k must be >= 1 but got {k}")
    sgd_config: Optional[SgdConfig] = None
    if algorithm == "sgd":
        sgd_config = SgdConfig.from_custom_arguments(custom_arguments)
        master = SgdMasterCompute(sgd_config)
        config_dict = sgd_config.to_dict()
    else:
        ranking_config = RankingConfig.from_custom_arguments(custom_arguments)
        master = RankingMasterCompute(ranking_config, RANKING_METHODS[algorithm](ranking_config))
        config_dict = ranking_config.to_dict()

    if mlflow.active_run() is not None:
        mlflow.log_params({"algorithm": algorithm, **config_dict})

    df = load_ratings(input_path)
    vertices = build_vertices(df)
    graph_info(vertices)

    runner = InMemoryGraphRunner(
        vertices,
        master=master,
        max_supersteps=max_supersteps,
        counters=Counters(),
        show_progress=show_progress,
    )
    result = runner.run()
    logger.info(f"Finished after {result.supersteps} supersteps "
                f"({'master halt' if result.halted_by_master else 'all vertices halted'})")
    write_model(result.vertices.values(), output_path)

    if plot_path:
        if isinstance(master, SgdMasterCompute):
            plot_history(master.rmse_history, "Superstep", "RMSE", "SGD training RMSE per superstep", plot_path)
        else:
            plot_history(master.loss_history, "Iteration", "Average train loss (-log sigma)",
                         f"{algorithm} training loss per iteration", plot_path)

    if eval_path:
        evaluate_model(output_path, eval_path, df, sgd_config, k)
    return result


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )

    try:
        custom_arguments = parse_custom_arguments(args.ca)
        if args.mlflow_uri:
            mlflow.set_tracking_uri(args.mlflow_uri)
            experiment = mlflow.set_experiment(f"bsp_{args.algorithm}_{generate_now_timestamp_str()}")
            with mlflow.start_run(experiment_id=experiment.experiment_id):
                train(args.algorithm, custom_arguments, args.input, args.output,
                      args.max_supersteps, args.progress, args.plot, args.eval_input, args.k)
        else:
            train(args.algorithm, custom_arguments, args.input, args.output,
                  args.max_supersteps, args.progress, args.plot, args.eval_input, args.k)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except SamplingError as e:
        logger.error(f"Sampling failed, check minItemId/maxItemId against the data: {e}")
        return 3
    return 0


if __name__ == "__main__":
    sys.exit(main())
