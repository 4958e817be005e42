# -*- coding: utf-8 -*-
# Hessian based standard errors
import logging
from typing import Optional

import numpy as np

from .functions import finite_difference_jacobian
from .loss_functions import SemFIML, SemML, SemWLS
from .model import SemEnsemble

logger = logging.getLogger(__name__)


def H_scaling(model) -> float:
    """
    Constant c relating the hessian of the objective to the asymptotic
    covariance of the estimates, acov = c * H^-1
    """
    if isinstance(model, SemEnsemble):
        return 2 / model.n_obs
    for f in model.loss.functions:
        if isinstance(f, SemFIML):
            return 2 / model.n_obs
        if isinstance(f, (SemML, SemWLS)):
            return 2 / (model.n_obs - 1)
    raise ValueError("Standard errors need an ML, WLS or FIML loss function")


def finite_difference_hessian(model, theta, step: float = None) -> np.ndarray:
    """Central differences of the analytic gradient, symmetrized"""
    H = finite_difference_jacobian(model.gradient, theta, step)
    return (H + H.T) / 2


def se_hessian(fit, method: Optional[str] = None) -> np.ndarray:
    """
    Hessian based standard errors sqrt(diag(c * H^-1))
    :param fit: SemFit
    :param method: how to compute the hessian, the hessian option of the fit when None
        "analytic": exact hessian of the objective (autograd)
        "finitediff": finite differences of the gradient
        "optimizer" and "expected" are not implemented
    :return: array of standard errors in param_labels order
    """
    if method is None:
        options = getattr(fit, "options", None)
        method = options.hessian if options is not None else "finitediff"
    c = H_scaling(fit.model)

    if method == "analytic":
        H = fit.model.hessian(fit.solution)
    elif method == "finitediff":
        H = finite_difference_hessian(fit.model, fit.solution)
    elif method == "optimizer":
        raise NotImplementedError("standard errors from the optimizer hessian are not implemented yet")
    elif method == "expected":
        raise NotImplementedError("standard errors based on the expected hessian are not implemented yet")
    else:
        raise ValueError(f"I dont know how to compute {method!r} standard-errors")

    invH = c * np.linalg.inv(H)
    variances = np.diag(invH)
    if (variances < 0).any():
        logger.warning("The hessian is not positive definite, some standard errors are undefined")
    return np.sqrt(np.where(variances < 0, np.nan, variances))
