from dataclasses import dataclass
from numbers import Integral, Real
from typing import Any, Dict, List, Optional
import copy as copy_module

import numpy as np

from kfn.errors import TypeMismatchError
from kfn.logger import get_logger
from kfn.model import KFNModel

logger = get_logger(__name__)


@dataclass
class Parameter:
    """A named, typed input or output of the search binding."""
    name: str
    type: type
    default: Any
    description: str
    is_output: bool = False


KFN_PARAMETERS: List[Parameter] = [
    Parameter("reference", np.ndarray, None, "Reference dataset, one point per column."),
    Parameter("query", np.ndarray, None, "Query dataset, one point per column."),
    Parameter("k", int, 0, "Number of furthest neighbors to find."),
    Parameter("leaf_size", int, 20, "Leaf size for tree building."),
    Parameter("algorithm", str, "dual_tree",
              "Type of search: 'dual_tree', 'single_tree', 'naive' or 'greedy'."),
    Parameter("input_model", KFNModel, None, "Pre-trained furthest neighbor model."),
    Parameter("epsilon", float, 0.0, "Relative error bound for approximate search."),
    Parameter("percentage", float, 1.0,
              "Minimum fraction of the true furthest distance to accept."),
    Parameter("random_basis", bool, False,
              "Project the data onto a random orthogonal basis before indexing."),
    Parameter("seed", int, 0, "Random seed (0 draws from the system entropy)."),
    Parameter("true_neighbors", np.ndarray, None, "True neighbors, used to compute recall."),
    Parameter("true_distances", np.ndarray, None,
              "True distances, used to compute the effective epsilon."),
    Parameter("output_model", KFNModel, None, "The trained model.", is_output=True),
    Parameter("neighbors", np.ndarray, None, "Indices of the furthest neighbors.", is_output=True),
    Parameter("distances", np.ndarray, None, "Distances to the furthest neighbors.", is_output=True),
    Parameter("effective_epsilon", float, None,
              "Measured relative error against the true distances.", is_output=True),
    Parameter("recall", float, None, "Measured recall against the true neighbors.", is_output=True),
]


def _matches(declared: type, value: Any) -> bool:
    if value is None:
        return True
    if declared is bool:
        return isinstance(value, (bool, np.bool_))
    if declared is int:
        return isinstance(value, Integral) and not isinstance(value, (bool, np.bool_))
    if declared is float:
        return isinstance(value, Real) and not isinstance(value, (bool, np.bool_))
    return isinstance(value, declared)


class Params:
    """
    Request-scoped store of named parameters.

    Each parameter remembers whether it was explicitly passed, so a caller can
    run the search again overriding only some inputs.
    """

    def __init__(self, parameters: Optional[List[Parameter]] = None):
        self._parameters: Dict[str, Parameter] = {
            p.name: p for p in (parameters if parameters is not None else KFN_PARAMETERS)
        }
        self._values: Dict[str, Any] = {}
        self._passed: Dict[str, bool] = {}
        self._restore_defaults()

    def _restore_defaults(self):
        for name, parameter in self._parameters.items():
            self._values[name] = parameter.default
            self._passed[name] = False

    def _parameter(self, name: str) -> Parameter:
        try:
            return self._parameters[name]
        except KeyError:
            raise KeyError(f"Unknown parameter '{name}'") from None

    def names(self) -> List[str]:
        return list(self._parameters)

    def set(self, name: str, value: Any, copy: bool = False):
        """
        Store a value and mark the parameter as passed.

        Args:
            name: The parameter name
            value: The value; arrays are kept by reference unless copy is set
            copy: Store a copy of the value instead of the value itself
        """
        parameter = self._parameter(name)
        if not _matches(parameter.type, value):
            raise TypeMismatchError(
                f"Parameter '{name}' expects {parameter.type.__name__}, "
                f"got {type(value).__name__}")
        if copy:
            value = np.array(value, copy=True) if isinstance(value, np.ndarray) \
                else copy_module.deepcopy(value)
        elif parameter.type is int and value is not None:
            value = int(value)
        elif parameter.type is float and value is not None:
            value = float(value)
        elif parameter.type is bool and value is not None:
            value = bool(value)
        self._values[name] = value
        self._passed[name] = True

    def get(self, name: str, expected_type: Optional[type] = None) -> Any:
        parameter = self._parameter(name)
        if expected_type is not None and expected_type is not parameter.type:
            raise TypeMismatchError(
                f"Parameter '{name}' has type {parameter.type.__name__}, "
                f"requested as {expected_type.__name__}")
        return self._values[name]

    def has(self, name: str) -> bool:
        """Return True if the parameter was explicitly passed."""
        self._parameter(name)
        return self._passed[name]

    def take(self, name: str) -> Any:
        """Move a value out of the store, leaving the default behind."""
        parameter = self._parameter(name)
        value = self._values[name]
        self._values[name] = parameter.default
        self._passed[name] = False
        return value

    def clear(self, name: str):
        """Mark a parameter as not passed, keeping its value."""
        self._parameter(name)
        self._passed[name] = False

    def reset(self):
        """Restore every default and release the models the store still owns."""
        released = set()
        for name, value in self._values.items():
            if isinstance(value, KFNModel) and id(value) not in released:
                released.add(id(value))
                if not value.released:
                    logger.debug(f"Releasing model held in '{name}'")
                    value.release()
        self._restore_defaults()
