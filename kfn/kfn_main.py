"""
Entry point of the k-furthest-neighbor binding.

kfn_main() reads its inputs from a Params store, checks every argument
combination before doing any expensive work, then trains a model (or reuses
the input model), runs the search and writes its outputs back to the store.
Nothing is written when validation fails.
"""
from dataclasses import dataclass
from typing import Optional

import numpy as np

from kfn.errors import InvalidArgumentError, TypeMismatchError
from kfn.logger import get_logger
from kfn.metrics import compute_recall, effective_error
from kfn.model import KFNModel
from kfn.params import Params
from kfn.search import SEARCH_MODES

logger = get_logger(__name__)


@dataclass
class RunResult:
    """Outcome of run_kfn(); error_kind is None on success."""
    ok: bool
    error_kind: Optional[str] = None
    message: Optional[str] = None


def _invalid(message: str) -> InvalidArgumentError:
    logger.error(message)
    return InvalidArgumentError(message)


def _passed(params: Params, name: str):
    return params.get(name) if params.has(name) else None


def _check_dataset(name: str, data: Optional[np.ndarray]):
    if data is None:
        return
    if data.ndim != 2 or data.shape[0] == 0 or data.shape[1] == 0:
        raise _invalid(f"Parameter '{name}' must be a non-empty (dimensions x points) matrix, "
                       f"got shape {data.shape}")
    if not np.all(np.isfinite(data)):
        raise _invalid(f"Parameter '{name}' contains NaN or infinite values")


def _report_ignored(params: Params, name: str, reason: str):
    if params.has(name):
        logger.warning(f"Parameter '{name}' ignored because {reason}")


def _resolve_epsilon(params: Params) -> float:
    epsilon = params.get("epsilon")
    percentage = params.get("percentage")
    if params.has("epsilon") and params.has("percentage"):
        raise _invalid("Only one of 'epsilon' and 'percentage' may be specified")
    if not 0.0 <= epsilon < 1.0:
        raise _invalid(f"Invalid epsilon: {epsilon}; must be in the range [0, 1)")
    if not 0.0 < percentage <= 1.0:
        raise _invalid(f"Invalid percentage: {percentage}; must be in the range (0, 1]")
    if params.has("percentage"):
        return 1.0 - percentage
    return epsilon


def kfn_main(params: Params):
    """
    Run k-furthest-neighbor search with the parameters held in a store.

    Reads 'reference' or 'input_model', and optionally 'query', 'k',
    'algorithm', 'leaf_size', 'epsilon', 'percentage', 'random_basis',
    'seed', 'true_neighbors' and 'true_distances'. Writes 'neighbors' and
    'distances' when k is given, 'output_model' when a model was trained,
    and 'effective_epsilon'/'recall' when true results were supplied.

    Raises:
        InvalidArgumentError: If any parameter or parameter combination is invalid
    """
    reference = _passed(params, "reference")
    query = _passed(params, "query")
    input_model: Optional[KFNModel] = _passed(params, "input_model")
    _check_dataset("reference", reference)
    _check_dataset("query", query)

    if reference is not None:
        reference_dimensions, reference_points = reference.shape
    elif input_model is not None:
        reference_dimensions, reference_points = input_model.dimensions, input_model.num_points
    else:
        reference_dimensions = reference_points = None

    # Query and reference must live in the same space.
    if query is not None and reference_dimensions is not None and query.shape[0] != reference_dimensions:
        raise _invalid(f"Query has dimensionality {query.shape[0]}, but reference data has "
                       f"dimensionality {reference_dimensions}")

    k = params.get("k")
    if params.has("k") and reference_points is not None:
        if k < 1 or k > reference_points:
            raise _invalid(f"Invalid k: {k}; must be greater than 0 and less than or equal to the "
                           f"number of reference points ({reference_points})")
        if query is None and k == reference_points:
            raise _invalid(f"Invalid k: {k}; when the reference set is searched against itself "
                           f"k must be less than the number of reference points ({reference_points})")

    leaf_size = params.get("leaf_size")
    if params.has("leaf_size") and leaf_size < 1:
        raise _invalid(f"Invalid leaf size: {leaf_size}; must be greater than 0")

    if reference is not None and input_model is not None:
        raise _invalid("Only one of 'reference' and 'input_model' may be specified")
    if reference is None and input_model is None:
        raise _invalid("One of 'reference' or 'input_model' must be specified")

    algorithm = params.get("algorithm")
    if algorithm not in SEARCH_MODES:
        raise _invalid(f"Invalid algorithm '{algorithm}'; must be one of {', '.join(SEARCH_MODES)}")

    epsilon = _resolve_epsilon(params)

    true_neighbors = _passed(params, "true_neighbors")
    true_distances = _passed(params, "true_distances")
    if (true_neighbors is not None or true_distances is not None) and not params.has("k"):
        raise _invalid("'k' must be specified to compare against true neighbors or distances")
    query_points = query.shape[1] if query is not None else reference_points
    for name, truth in (("true_neighbors", true_neighbors), ("true_distances", true_distances)):
        if truth is not None and truth.shape != (k, query_points):
            raise _invalid(f"Parameter '{name}' has shape {truth.shape}, expected {(k, query_points)}")

    if input_model is not None:
        _report_ignored(params, "leaf_size", "an input model was given")
        _report_ignored(params, "random_basis", "an input model was given")
        _report_ignored(params, "seed", "an input model was given")
    if not params.has("k"):
        _report_ignored(params, "query", "no 'k' was given")
    if epsilon > 0 and algorithm == "naive":
        logger.warning("Naive search is exact; 'epsilon' has no effect")

    if reference is not None:
        model = KFNModel.build(reference.T, leaf_size=leaf_size, search_mode=algorithm,
                               epsilon=epsilon, random_basis=params.get("random_basis"),
                               seed=params.get("seed"))
        trained = True
    else:
        model = input_model
        trained = False
        if params.has("algorithm"):
            model.search_mode = algorithm
        if params.has("epsilon") or params.has("percentage"):
            model.epsilon = epsilon
        logger.info(f"Using input model {model}")

    neighbors = distances = None
    if params.has("k"):
        if query is not None:
            logger.info(f"Searching for {k} furthest neighbors of {query.shape[1]} query points")
            neighbors, distances = model.search(query.T, k)
        else:
            logger.info(f"Searching for {k} furthest neighbors of each reference point")
            neighbors, distances = model.search_self(k)
        neighbors = np.ascontiguousarray(neighbors.T)
        distances = np.ascontiguousarray(distances.T)

    effective_epsilon = recall = None
    if true_distances is not None:
        effective_epsilon = effective_error(distances, true_distances)
        logger.info(f"Effective epsilon: {effective_epsilon}")
    if true_neighbors is not None:
        recall = compute_recall(neighbors.T, true_neighbors.T)
        logger.info(f"Recall: {recall}")

    if neighbors is not None:
        params.set("neighbors", neighbors)
        params.set("distances", distances)
    if effective_epsilon is not None:
        params.set("effective_epsilon", effective_epsilon)
    if recall is not None:
        params.set("recall", recall)
    if trained:
        params.set("output_model", model)


def run_kfn(params: Params) -> RunResult:
    """Run kfn_main() and report argument errors as a result instead of raising."""
    try:
        kfn_main(params)
    except InvalidArgumentError as e:
        return RunResult(ok=False, error_kind="invalid_argument", message=str(e))
    except TypeMismatchError as e:
        return RunResult(ok=False, error_kind="type_mismatch", message=str(e))
    return RunResult(ok=True)
