import argparse
import os
import sys
from typing import List, Optional

from kfn.data_set import DataSet
from kfn.kfn_main import run_kfn
from kfn.logger import get_logger, set_verbose
from kfn.model import load_model, save_model
from kfn.params import Params
from kfn.search import SEARCH_MODES
from kfn.vec_data_source import VecDataSource

logger = get_logger(__name__)


# Handle argument parsing
# Input args
# - --reference-file -r
# - --query-file -q
# - --input-model-file -m

def add_input_args(parser):
    group = parser.add_argument_group('Input Options')
    group.add_argument("--reference-file", "-r", type=str, required=False, default=None,
                       help="Matrix containing the reference dataset, one point per row")
    group.add_argument("--query-file", "-q", type=str, required=False, default=None,
                       help="Matrix containing query points (optional)")
    group.add_argument("--input-model-file", "-m", type=str, required=False, default=None,
                       help="Pre-trained furthest neighbor model (.npz)")


# Search args
# - --k -k
# - --algorithm -a
# - --leaf-size -l
# - --epsilon -e
# - --percentage -p
# - --random-basis -R
# - --seed -s

def add_search_args(parser):
    group = parser.add_argument_group('Search Options')
    group.add_argument("--k", "-k", type=int, required=False, default=None,
                       help="Number of furthest neighbors to find")
    group.add_argument("--algorithm", "-a", type=str, required=False, default=None,
                       help="Type of search to perform, options are: " + ", ".join(SEARCH_MODES))
    group.add_argument("--leaf-size", "-l", type=int, required=False, default=None,
                       help="Leaf size for tree building")
    group.add_argument("--epsilon", "-e", type=float, required=False, default=None,
                       help="If specified, will do approximate furthest neighbor search with given relative error. Must be in the range [0,1)")
    group.add_argument("--percentage", "-p", type=float, required=False, default=None,
                       help="If specified, neighbors will be at least this fraction of the true furthest distance. Must be in the range (0,1]")
    group.add_argument("--random-basis", "-R", action="store_true",
                       help="Before tree-building, project the data onto a random orthogonal basis")
    group.add_argument("--seed", "-s", type=int, required=False, default=None,
                       help="Random seed (if 0, the system entropy is used)")


# Evaluation args
# - --true-neighbors-file -T
# - --true-distances-file -D

def add_evaluation_args(parser):
    group = parser.add_argument_group('Evaluation Options')
    group.add_argument("--true-neighbors-file", "-T", type=str, required=False, default=None,
                       help="Matrix of true neighbors to compute the recall with")
    group.add_argument("--true-distances-file", "-D", type=str, required=False, default=None,
                       help="Matrix of true distances to compute the effective error with")


# Output args
# - --neighbors-file -n
# - --distances-file -d
# - --output-model-file -M
# - --verbose -v

def add_output_args(parser):
    group = parser.add_argument_group('Output Options')
    group.add_argument("--neighbors-file", "-n", type=str, required=False, default=None,
                       help="Matrix to save the furthest neighbor indices into")
    group.add_argument("--distances-file", "-d", type=str, required=False, default=None,
                       help="Matrix to save the furthest neighbor distances into")
    group.add_argument("--output-model-file", "-M", type=str, required=False, default=None,
                       help="If specified, the trained model will be saved to this file (.npz)")
    group.add_argument("--verbose", "-v", action="store_true",
                       help="Display debug output")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="k-Furthest-Neighbors Search")

    # Add all argument groups
    add_input_args(parser)
    add_search_args(parser)
    add_evaluation_args(parser)
    add_output_args(parser)

    return parser.parse_args(argv)


def get_dataset(args: argparse.Namespace) -> DataSet:
    name = os.path.basename(args.reference_file) if args.reference_file else "model"
    return DataSet(
        name=name,
        reference_file=args.reference_file,
        query_file=args.query_file,
        true_neighbors_file=args.true_neighbors_file,
        true_distances_file=args.true_distances_file
    )


def load_params(args: argparse.Namespace, data_source: VecDataSource, params: Params):
    """
    Fill a parameter store from the parsed command line.

    Only options given on the command line are marked as passed; files are
    transposed so that every point is a column. Each value is stored as soon as
    it is loaded.
    """
    dataset = data_source.dataset
    if dataset.reference_file:
        params.set("reference", data_source.read_reference().T)
    if dataset.query_file:
        params.set("query", data_source.read_query().T)
    if args.input_model_file:
        params.set("input_model", load_model(args.input_model_file))
    if dataset.true_neighbors_file:
        params.set("true_neighbors", data_source.read_neighbors(dataset.true_neighbors_file).T)
    if dataset.true_distances_file:
        params.set("true_distances", data_source.read_matrix(dataset.true_distances_file).T)

    for name in ("k", "algorithm", "leaf_size", "epsilon", "percentage", "seed"):
        value = getattr(args, name)
        if value is not None:
            params.set(name, value)
    if args.random_basis:
        params.set("random_basis", True)


def save_outputs(args: argparse.Namespace, params: Params, data_source: VecDataSource):
    if args.neighbors_file:
        if params.has("neighbors"):
            data_source.write_matrix(args.neighbors_file, params.get("neighbors").T)
        else:
            logger.warning("No neighbors computed (was --k given?); not saving neighbors file")
    if args.distances_file:
        if params.has("distances"):
            data_source.write_matrix(args.distances_file, params.get("distances").T)
        else:
            logger.warning("No distances computed (was --k given?); not saving distances file")
    if args.output_model_file:
        model = params.get("output_model") if params.has("output_model") else params.get("input_model")
        save_model(model, args.output_model_file)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    set_verbose(args.verbose)

    # the flow is:
    # 1. load the datasets and the input model into a parameter store
    # 2. run the search
    # 3. save the requested outputs
    dataset = get_dataset(args)
    logger.debug(f"Got dataset: {dataset}")
    data_source = VecDataSource(dataset)

    params = Params()
    try:
        load_params(args, data_source, params)
        result = run_kfn(params)
        if not result.ok:
            logger.error(f"Search failed ({result.error_kind}): {result.message}")
            return 1
        save_outputs(args, params, data_source)
    finally:
        params.reset()

    logger.info("Furthest neighbor search completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
