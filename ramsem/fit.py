# -*- coding: utf-8 -*-
# Fitting a model: start values, the optimization run and its result
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import numpy as np

from .model import Sem, SemEnsemble
from .optimizers import OptimizationResult, SemOptimizer, get_optimizer
from .parametertable import ParameterTable
from .semopts import SemOptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SemFit:
    """
    Fitted structural equation model: minimum objective value, parameter
    estimates, starting values, the model, the optimizer result and the
    options of the fit.
    """

    minimum: float
    solution: np.ndarray
    start_val: np.ndarray
    model: Any
    optimization_result: OptimizationResult
    options: Optional[SemOptions] = None

    def __post_init__(self):
        self.solution.setflags(write = False)
        self.start_val.setflags(write = False)

    @property
    def param_labels(self):
        return self.model.param_labels

    @property
    def n_par(self) -> int:
        return self.model.n_par

    @property
    def n_obs(self) -> int:
        return self.model.n_obs

    @property
    def optimizer(self) -> str:
        return self.optimization_result.algorithm

    @property
    def n_iterations(self) -> int:
        return self.optimization_result.n_iterations

    @property
    def converged(self) -> bool:
        return self.optimization_result.converged

    def estimates(self) -> dict:
        return dict(zip(self.param_labels, self.solution.tolist()))

    def __repr__(self):
        return (
            f"SemFit(minimum={self.minimum:.6g}, n_par={self.n_par}, optimizer={self.optimizer!r}, "
            f"n_iterations={self.n_iterations}, converged={self.converged})"
        )


def start_simple(model: Union[Sem, SemEnsemble], **kwargs) -> np.ndarray:
    """
    Simple starting values from the position of each parameter in the RAM
    matrices, see RAMMatrices.start_simple. For ensembles a parameter takes
    the value of the first group in which it occurs.
    """
    if isinstance(model, SemEnsemble):
        start = np.full(model.n_par, np.nan)
        for sem in model.sems:
            ram = sem.implied.ram_matrices
            group_start = ram.start_simple(**kwargs).numpy()
            occurs = np.array([bool(ram.A_ind[k] or ram.S_ind[k] or (ram.M_ind and ram.M_ind[k])) for k in range(ram.n_par)])
            todo = np.isnan(start) & occurs
            start[todo] = group_start[todo]
        return np.nan_to_num(start)
    return model.implied.ram_matrices.start_simple(**kwargs).numpy()


def start_parameter_table(model: Union[Sem, SemEnsemble], table: ParameterTable, **kwargs) -> np.ndarray:
    """Starting values from the start column of a table, start_simple where it is empty"""
    start = start_simple(model, **kwargs)
    index = {label: i for i, label in enumerate(model.param_labels)}
    for label, value in zip(table.columns["label"], table.columns["start"]):
        if label in index and not np.isnan(value):
            start[index[label]] = value
    return start


def fit(
    model: Union[Sem, SemEnsemble],
    start_val: Optional[Union[np.ndarray, Callable]] = None,
    optimizer: Optional[Union[str, SemOptimizer]] = None,
    options: Optional[SemOptions] = None,
    **kwargs,
) -> SemFit:
    """
    Minimizes the objective of model
    :param start_val: starting values, a function of the model, or None for start_simple
    :param optimizer: optimizer backend or its name, taken from options when None
    :param options: SemOptions
    :param kwargs: passed to start_val when it is a function
    :return: SemFit
    """
    options = options if options is not None else SemOptions()
    if start_val is None:
        start_val = start_simple(model)
    elif callable(start_val):
        start_val = start_val(model, **kwargs)
    start_val = np.array(start_val, dtype = float)
    if start_val.shape != (model.n_par,):
        raise ValueError(f"Expected {model.n_par} starting values, got shape {start_val.shape}")

    if optimizer is None:
        optimizer = options.optimizer
    if isinstance(optimizer, str):
        kw = options.optimizer_kwargs() if optimizer == options.optimizer else {}
        optimizer = get_optimizer(optimizer, **kw)

    result = optimizer.optimize(model, start_val)
    if not result.converged:
        logger.warning(f"The optimizer did not converge: {result.message}")
    logger.info(
        f"Fitted {model!r} with {result.algorithm} in {result.n_iterations} iterations, minimum {result.minimum:.6g}"
    )
    return SemFit(
        minimum = result.minimum,
        solution = np.array(result.solution, dtype = float),
        start_val = start_val,
        model = model,
        optimization_result = result,
        options = options,
    )
