# -*- coding: utf-8 -*-
# Single group and multigroup structural equation models
import logging
from typing import Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd
import torch

from .errors import SingularStructuralMatrixError
from .functions import jacobian
from .implied import RAM
from .loss_functions import SemFIML, SemLoss, SemLossFunction, SemML
from .observed import SemObserved, SemObservedMissing
from .parametertable import ParameterTable
from .ram_matrices import RAMMatrices
from .semopts import SemOptions

logger = logging.getLogger(__name__)


def _loss_list(loss):
    if isinstance(loss, (list, tuple)):
        return list(loss)
    return [loss]


class Sem:
    """
    A single group model: observed moments, the RAM implied moments and a
    (composite) loss. Every evaluation recomputes the implied moments of this
    model's own RAM workspace at the given parameter vector.
    """

    def __init__(self, observed, implied: RAM, loss: Union[SemLoss, SemLossFunction, Sequence[SemLossFunction]]):
        self.observed = observed
        self.implied = implied
        self.loss = loss if isinstance(loss, SemLoss) else SemLoss(_loss_list(loss))
        if self.loss.requires_meanstructure and not implied.meanstructure:
            raise ValueError("The loss function needs a model with mean structure")
        if implied.meanstructure and isinstance(observed, SemObserved) and observed.obs_mean is None:
            raise ValueError("A model with mean structure needs observed means")
        if observed.n_man != implied.F.shape[0]:
            raise ValueError(
                f"The model has {implied.F.shape[0]} observed variables, the data has {observed.n_man}"
            )
        if observed.observed_vars is not None and list(observed.observed_vars) != list(implied.observed_vars):
            raise ValueError("The observed variables of the data and the model differ")

    @classmethod
    def from_partable(
        cls,
        specification: Union[ParameterTable, RAMMatrices],
        data = None,
        obs_cov = None,
        obs_mean = None,
        n_obs: Optional[int] = None,
        loss = SemML,
        observed = None,
        meanstructure: Optional[bool] = None,
        param_labels: Optional[Sequence[str]] = None,
        options: Optional[SemOptions] = None,
    ):
        """
        Builds a model from a parameter table (or RAM matrices) and data.
        :param loss: loss class(es), instantiated with the observed data, or loss instance(s)
        :param observed: observed data provider; created from data / obs_cov when None
        :param meanstructure: force the mean structure on or off, inferred from the table when None
        """
        options = options if options is not None else SemOptions()
        if meanstructure is None and options.meanstructure:
            meanstructure = True
        if isinstance(specification, RAMMatrices):
            ram_matrices = specification
        else:
            ram_matrices = RAMMatrices.from_partable(
                specification, param_labels = param_labels, meanstructure = meanstructure, dtype = options.torch_dtype
            )
        if isinstance(loss, SemLoss):
            losses, weights = loss.functions, loss.weights
        else:
            losses, weights = _loss_list(loss), None

        if observed is None:
            observed_vars = ram_matrices.observed_vars if isinstance(data, pd.DataFrame) else None
            if any(l is SemFIML or isinstance(l, SemFIML) for l in losses):
                observed = SemObservedMissing(data, observed_vars = observed_vars, dtype = ram_matrices.dtype)
            else:
                observed = SemObserved(
                    data = data, obs_cov = obs_cov, obs_mean = obs_mean, n_obs = n_obs,
                    observed_vars = observed_vars, meanstructure = ram_matrices.meanstructure,
                    dtype = ram_matrices.dtype,
                )
        losses = [l(observed) if isinstance(l, type) else l for l in losses]
        return cls(observed, RAM(ram_matrices), SemLoss(losses, weights))

    @property
    def param_labels(self):
        return self.implied.param_labels

    @property
    def n_par(self) -> int:
        return self.implied.n_par

    @property
    def n_obs(self) -> int:
        return self.observed.n_obs

    @property
    def dtype(self):
        return self.implied.dtype

    @property
    def variance_params(self) -> np.ndarray:
        return np.array(self.implied.ram_matrices.variance_params(), dtype = bool)

    def _objective_tensor(self, theta: torch.Tensor) -> torch.Tensor:
        try:
            self.implied(theta)
        except SingularStructuralMatrixError:
            logger.debug("Singular (I - A), returning an infinite objective")
            return torch.tensor(float("inf"), dtype = self.dtype)
        return self.loss.objective(self, theta)

    def objective(self, theta) -> float:
        theta = self.implied.as_tensor(theta).detach()
        with torch.no_grad():
            return float(self._objective_tensor(theta))

    def _autograd_gradient(self, theta: torch.Tensor):
        theta = theta.detach().requires_grad_(True)
        F = self._objective_tensor(theta)
        if not torch.isfinite(F):
            return float(F), np.ones(self.n_par)
        grad = torch.autograd.grad(F, theta, allow_unused = True)[0]
        if grad is None:
            grad = torch.zeros_like(theta)
        return float(F), grad.detach().numpy()

    def objective_gradient(self, theta):
        """
        Objective and gradient at theta, sharing one evaluation of the implied moments
        :return: tuple of float and float array
        """
        theta = self.implied.as_tensor(theta).detach()
        if not self.loss.has_gradient:
            return self._autograd_gradient(theta)
        with torch.no_grad():
            try:
                self.implied.gradient(theta)
            except SingularStructuralMatrixError:
                logger.debug("Singular (I - A), returning an infinite objective")
                return float("inf"), np.ones(self.n_par)
            F = self.loss.objective(self, theta)
            grad = self.loss.gradient(self, theta)
        return float(F), grad.numpy()

    def gradient(self, theta) -> np.ndarray:
        return self.objective_gradient(theta)[1]

    def hessian(self, theta) -> np.ndarray:
        """
        Exact hessian of the objective by differentiating the gradient with autograd
        :return: float array of size n_par * n_par, NaN if the objective is not finite
        """
        theta = self.implied.as_tensor(theta).detach().requires_grad_(True)
        F = self._objective_tensor(theta)
        if not torch.isfinite(F):
            logger.warning("The objective is not finite, the hessian is undefined")
            return np.full((self.n_par, self.n_par), np.nan)
        g = torch.autograd.grad(F, theta, create_graph = True)[0]
        H = jacobian(g, theta)
        return H.detach().numpy()

    def __repr__(self):
        losses = ", ".join(type(f).__name__ for f in self.loss.functions)
        return f"Sem(loss=[{losses}], n_par={self.n_par}, n_obs={self.n_obs})"


class SemEnsemble:
    """
    Several groups sharing one parameter vector. The objective is the
    weighted sum of the group objectives, by default weighted with n_g / n.
    """

    def __init__(self, *models: Sem, weights: Optional[Sequence[float]] = None):
        if not models:
            raise ValueError("An ensemble needs at least one model")
        labels = models[0].param_labels
        for model in models[1:]:
            if list(model.param_labels) != list(labels):
                raise ValueError("The parameters of your models do not match.")
        if len({id(model.implied) for model in models}) != len(models):
            raise ValueError("Every group needs its own implied moments workspace")
        self.sems = list(models)
        n = self.n_obs
        self.weights = [m.n_obs / n for m in self.sems] if weights is None else [float(w) for w in weights]
        if len(self.weights) != len(self.sems):
            raise ValueError("Provide one weight per group")

    @classmethod
    def from_partables(
        cls,
        specifications: Dict[str, ParameterTable],
        data: pd.DataFrame,
        column: str,
        groups: Optional[Sequence] = None,
        loss = SemML,
        options: Optional[SemOptions] = None,
        **kwargs,
    ):
        """
        Builds one group per parameter table, splitting data by the values of
        column. Parameters shared between groups are matched by label.
        """
        if groups is None:
            groups = list(specifications)
        param_labels = list(dict.fromkeys(
            label for group in groups for label in specifications[group].param_labels
        ))
        models = [
            Sem.from_partable(
                specifications[group],
                data = data[data[column] == group],
                loss = loss,
                param_labels = param_labels,
                options = options,
                **kwargs,
            )
            for group in groups
        ]
        return cls(*models)

    @property
    def param_labels(self):
        return self.sems[0].param_labels

    @property
    def n_par(self) -> int:
        return self.sems[0].n_par

    @property
    def n_obs(self) -> int:
        return sum(model.n_obs for model in self.sems)

    @property
    def n_groups(self) -> int:
        return len(self.sems)

    @property
    def dtype(self):
        return self.sems[0].dtype

    @property
    def variance_params(self) -> np.ndarray:
        """Parameters that are a variance in at least one group"""
        return np.any([model.variance_params for model in self.sems], axis = 0)

    def objective(self, theta) -> float:
        return sum(w * model.objective(theta) for w, model in zip(self.weights, self.sems))

    def objective_gradient(self, theta):
        F = 0.0
        grad = np.zeros(self.n_par)
        for w, model in zip(self.weights, self.sems):
            F_g, grad_g = model.objective_gradient(theta)
            F += w * F_g
            grad += w * grad_g
        return F, grad

    def gradient(self, theta) -> np.ndarray:
        return self.objective_gradient(theta)[1]

    def hessian(self, theta) -> np.ndarray:
        return sum(w * model.hessian(theta) for w, model in zip(self.weights, self.sems))

    def __repr__(self):
        return f"SemEnsemble({self.n_groups} groups, n_par={self.n_par}, n_obs={self.n_obs})"
