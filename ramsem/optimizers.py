# -*- coding: utf-8 -*-
# Optimizer backends: minimize a model objective with its analytic gradient
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import numpy as np
import torch
from scipy.optimize import minimize

logger = logging.getLogger(__name__)

# Objective value handed to line searches instead of inf (non positive definite
# Sigma, singular I - A), so that they backtrack instead of interpolating with inf
NONFINITE_OBJECTIVE = 1e10

# Largest absolute (projected) gradient accepted as a converged solution, as
# lavaan's optim.dx.tol
GRADIENT_TOLERANCE = 1e-3

_BOUNDED_METHODS = {"L-BFGS-B", "TNC", "SLSQP", "POWELL", "NELDER-MEAD", "TRUST-CONSTR"}


@dataclass(frozen=True)
class OptimizationResult:
    """Normalized result returned by any optimizer backend"""

    minimum: float
    solution: np.ndarray
    n_iterations: int
    converged: bool
    algorithm: str
    message: str = ""
    stats: Dict[str, Any] = field(default_factory = dict)


class SemOptimizer(Protocol):
    """Optimizer protocol: minimize model.objective_gradient from start_val"""

    name: str

    def optimize(self, model: Any, start_val: np.ndarray) -> OptimizationResult: ...


def finite_objective_gradient(model):
    """
    Wraps model.objective_gradient for line searches: a non-finite objective
    is replaced by NONFINITE_OBJECTIVE, the gradient is passed on as is
    """
    def objective_gradient(theta):
        F, grad = model.objective_gradient(theta)
        if not np.isfinite(F):
            return NONFINITE_OBJECTIVE, np.asarray(grad, dtype = float)
        return F, grad

    return objective_gradient


def max_gradient(grad: np.ndarray, theta: np.ndarray, bounds = None) -> float:
    """Largest absolute gradient entry, ignoring entries pushing against an active bound"""
    grad = np.array(grad, dtype = float)
    if bounds is not None:
        for i, (lower, upper) in enumerate(bounds):
            if lower is not None and theta[i] <= lower and grad[i] > 0:
                grad[i] = 0.0
            if upper is not None and theta[i] >= upper and grad[i] < 0:
                grad[i] = 0.0
    return float(np.max(np.abs(grad))) if grad.size else 0.0


class ScipyOptimizer:
    name = "scipy"

    def __init__(
        self,
        method: str = "L-BFGS-B",
        options: Optional[Dict[str, Any]] = None,
        bounds = None,
        variance_lower_bound: Optional[float] = 1e-4,
        gradient_tolerance: float = GRADIENT_TOLERANCE,
    ):
        """
        :param method: scipy.optimize.minimize method
        :param options: dict forwarded to scipy.optimize.minimize
        :param bounds: optional (lower, upper) pairs per parameter
        :param variance_lower_bound: lower bound of the variance parameters when
            bounds is None and the method supports bounds, None for no bounds
        :param gradient_tolerance: largest absolute gradient of a converged solution
        """
        self.method = method
        if options is None:
            options = {"maxiter": 10000, "gtol": 1e-9}
            if method.upper() == "L-BFGS-B":
                options["ftol"] = 1e-12
        self.options = dict(options)
        self.bounds = bounds
        self.variance_lower_bound = variance_lower_bound
        self.gradient_tolerance = gradient_tolerance

    def model_bounds(self, model):
        """Bounds for a model: the given ones, or lower bounds on its variances"""
        if self.bounds is not None:
            return list(self.bounds)
        if self.variance_lower_bound is None or self.method.upper() not in _BOUNDED_METHODS:
            return None
        return [
            (self.variance_lower_bound, None) if is_variance else (None, None)
            for is_variance in model.variance_params
        ]

    def optimize(self, model, start_val) -> OptimizationResult:
        bounds = self.model_bounds(model)
        logger.debug(f"scipy.optimize.minimize with method {self.method} and options {self.options}")
        res = minimize(
            finite_objective_gradient(model),
            np.asarray(start_val, dtype = float),
            jac = True,
            method = self.method,
            bounds = bounds,
            options = self.options,
        )
        solution = np.asarray(res.x, dtype = float)
        F, grad = model.objective_gradient(solution)
        grad_max = max_gradient(grad, solution, bounds)
        converged = bool(res.success) and bool(np.isfinite(F)) and grad_max <= self.gradient_tolerance
        message = str(res.message)
        if res.success and not converged:
            message = f"{message}; largest gradient {grad_max:.3g} exceeds {self.gradient_tolerance:.3g}"
        return OptimizationResult(
            minimum = float(F),
            solution = solution,
            n_iterations = int(getattr(res, "nit", 0)),
            converged = converged,
            algorithm = f"scipy.{self.method}",
            message = message,
            stats = {"nfev": int(getattr(res, "nfev", 0)), "max_gradient": grad_max},
        )


class TorchLBFGSOptimizer:
    name = "torch"

    def __init__(
        self,
        max_iter: int = 10000,
        tolerance_grad: float = 1e-9,
        tolerance_change: float = 1e-12,
        history_size: int = 100,
        lr: float = 1.0,
        gradient_tolerance: float = GRADIENT_TOLERANCE,
    ):
        self.max_iter = max_iter
        self.max_eval = 2 * max_iter
        self.tolerance_grad = tolerance_grad
        self.tolerance_change = tolerance_change
        self.history_size = history_size
        self.lr = lr
        self.gradient_tolerance = max(gradient_tolerance, tolerance_grad)

    def optimize(self, model, start_val) -> OptimizationResult:
        dtype = getattr(model, "dtype", torch.float64)
        theta = torch.nn.Parameter(torch.tensor(np.asarray(start_val, dtype = float), dtype = dtype))
        optim = torch.optim.LBFGS(
            [theta],
            lr = self.lr,
            max_iter = self.max_iter,
            max_eval = self.max_eval,
            tolerance_grad = self.tolerance_grad,
            tolerance_change = self.tolerance_change,
            history_size = self.history_size,
            line_search_fn = "strong_wolfe",
        )
        objective_gradient = finite_objective_gradient(model)

        def closure():
            optim.zero_grad()  # reset the gradients of the parameters
            F, grad = objective_gradient(theta.detach().numpy())
            theta.grad = torch.as_tensor(grad, dtype = dtype)  # the analytic gradient
            return torch.tensor(F, dtype = dtype)

        optim.step(closure)
        state = optim.state[theta]
        n_iter = int(state.get("n_iter", 0))
        func_evals = int(state.get("func_evals", 0))
        logger.debug(f"torch LBFGS stopped after {n_iter} iterations and {func_evals} evaluations")

        solution = theta.detach().numpy().copy()
        F, grad = model.objective_gradient(solution)
        grad_max = max_gradient(grad, solution)
        messages = []
        if n_iter >= self.max_iter:
            messages.append("maximum number of iterations reached")
        if func_evals >= self.max_eval:
            messages.append("maximum number of function evaluations reached")
        if not np.isfinite(F):
            messages.append("the objective is not finite")
        elif grad_max > self.gradient_tolerance:
            messages.append(f"largest gradient {grad_max:.3g} exceeds {self.gradient_tolerance:.3g}")
        return OptimizationResult(
            minimum = float(F),
            solution = solution,
            n_iterations = n_iter,
            converged = not messages,
            algorithm = "torch.LBFGS",
            message = "; ".join(messages),
            stats = {"func_evals": func_evals, "max_gradient": grad_max},
        )


_OPTIMIZERS = {
    "scipy": ScipyOptimizer,
    "torch": TorchLBFGSOptimizer,
}


def get_optimizer(name: str, **kwargs) -> SemOptimizer:
    """Return an optimizer backend by name."""
    try:
        cls = _OPTIMIZERS[name]
    except KeyError as e:
        raise ValueError(
            f"Unknown optimizer {name!r}. Available: {tuple(_OPTIMIZERS.keys())}"
        ) from e
    return cls(**kwargs)


AVAILABLE_OPTIMIZERS = tuple(_OPTIMIZERS.keys())
