# -*- coding: utf-8 -*-
# Options interface for ramsem model construction and fitting
from typing import NamedTuple, Dict, Any
import pickle

import torch


class SemOptions(NamedTuple):
    optimizer: str = "scipy"  # Optimizer backend, see ramsem.optimizers.AVAILABLE_OPTIMIZERS
    method: str = "L-BFGS-B"  # Algorithm of the scipy backend
    max_iter: int = 10000  # Maximum number of optimizer iterations
    tolerance_grad: float = 1e-9  # Convergence tolerance on the gradient
    tolerance_change: float = 1e-12  # Convergence tolerance on the objective change
    meanstructure: bool = False  # Whether to model the means even without intercept rows
    hessian: str = "finitediff"  # How standard errors compute the hessian
    dtype: str = "float64"  # Precision of all tensors

    @property
    def torch_dtype(self) -> torch.dtype:
        return getattr(torch, self.dtype)

    def optimizer_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ramsem.optimizers.get_optimizer"""
        if self.optimizer == "scipy":
            options = {"maxiter": self.max_iter, "gtol": self.tolerance_grad}
            if self.method.upper() == "L-BFGS-B":
                options["ftol"] = self.tolerance_change
            return {"method": self.method, "options": options}
        return {
            "max_iter": self.max_iter,
            "tolerance_grad": self.tolerance_grad,
            "tolerance_change": self.tolerance_change,
        }

    @staticmethod
    def from_dict(x: Dict):
        unknown = set(x) - set(SemOptions._fields)
        if unknown:
            raise ValueError(f"Unknown options {sorted(unknown)}")
        return SemOptions(**x)

    @staticmethod
    def from_file(x: str):
        with open(x, "rb") as f:
            return SemOptions.from_dict(pickle.load(f))
