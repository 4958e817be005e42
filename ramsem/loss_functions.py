# -*- coding: utf-8 -*-
# Loss functions to export
from typing import Optional, Sequence

import torch

from .functions import duplication_matrix, Gamma_ADF, vech
from .helpers import symmetrize, vech_idx
from .observed import SemObserved, SemObservedMissing


def _inf(dtype):
    return torch.tensor(float("inf"), dtype = dtype)


class SemLossFunction:
    """
    Interface of a loss term. objective receives the model after its implied
    moments were computed at theta, gradient after the implied jacobians were.
    Loss terms without an analytic gradient are differentiated by autograd.
    """

    has_gradient = False
    requires_meanstructure = False

    def objective(self, model, theta: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def gradient(self, model, theta: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError


class SemML(SemLossFunction):
    """
    Maximum likelihood:
    F = log|Sigma| + tr(S Sigma^-1) - log|S| - p [+ (xbar - mu)^T Sigma^-1 (xbar - mu)]
    """

    has_gradient = True

    def __init__(self, observed: SemObserved):
        self.observed = observed
        S_chol = torch.linalg.cholesky(symmetrize(observed.obs_cov))
        self.logdet_obs = 2 * S_chol.diagonal().log().sum()

    def _chol(self, model):
        Sigma_chol, info = torch.linalg.cholesky_ex(symmetrize(model.implied.Sigma))
        return (Sigma_chol if info.item() == 0 else None)

    def objective(self, model, theta):
        implied = model.implied
        Sigma_chol = self._chol(model)
        if Sigma_chol is None:
            return _inf(implied.dtype)
        S = self.observed.obs_cov
        F = 2 * Sigma_chol.diagonal().log().sum() + torch.cholesky_solve(S, Sigma_chol).trace()
        F = F - self.logdet_obs - S.shape[0]
        if implied.meanstructure:
            diff = self.observed.obs_mean - implied.mu
            F = F + diff.dot(torch.cholesky_solve(diff.unsqueeze(1), Sigma_chol).squeeze(1))
        return F

    def gradient(self, model, theta):
        implied = model.implied
        Sigma_chol = self._chol(model)
        if Sigma_chol is None:
            return torch.ones(implied.n_par, dtype = implied.dtype)
        Sigma_inv = torch.cholesky_inverse(Sigma_chol)
        X = Sigma_inv - Sigma_inv.mm(self.observed.obs_cov).mm(Sigma_inv)
        grad = torch.einsum("ij,kij->k", X, implied.dSigma)
        if implied.meanstructure:
            a = Sigma_inv.mv(self.observed.obs_mean - implied.mu)
            grad = grad - 2 * implied.dmu.mv(a) - torch.einsum("i,kij,j->k", a, implied.dSigma, a)
        return grad


class SemWLS(SemLossFunction):
    """
    Weighted least squares on the non-duplicated covariances:
    F = (s - sigma)^T W (s - sigma) [+ (xbar - mu)^T V (xbar - mu)]
    The default W is the GLS weight 1/2 D^T (S^-1 kron S^-1) D and V = S^-1.
    """

    has_gradient = True

    def __init__(
        self,
        observed: SemObserved,
        weight_matrix: Optional[torch.Tensor] = None,
        weight_matrix_mean: Optional[torch.Tensor] = None,
    ):
        self.observed = observed
        S = observed.obs_cov
        P = S.shape[0]
        S_inv = torch.linalg.inv(symmetrize(S))
        if weight_matrix is None:
            D = duplication_matrix(P, dtype = S.dtype)
            weight_matrix = D.t().mm(torch.kron(S_inv, S_inv)).mm(D).div(2)
        self.W = torch.as_tensor(weight_matrix, dtype = S.dtype)
        if self.W.shape != (P * (P + 1) // 2,) * 2:
            raise ValueError(f"The weight matrix must be of size {P * (P + 1) // 2} * {P * (P + 1) // 2}")
        self.V = torch.as_tensor(weight_matrix_mean, dtype = S.dtype) if weight_matrix_mean is not None else S_inv
        self.s = vech(S)
        self.vech_rows, self.vech_cols = vech_idx(P)

    @classmethod
    def adf(cls, observed: SemObserved):
        """Asymptotically distribution free WLS, weighted by the inverse of the ADF Gamma matrix"""
        if observed.data is None:
            raise ValueError("ADF weights need the raw data")
        return cls(observed, weight_matrix = torch.linalg.inv(Gamma_ADF(observed.data)))

    @classmethod
    def dwls(cls, observed: SemObserved):
        """Diagonally weighted least squares with the ADF Gamma diagonal"""
        if observed.data is None:
            raise ValueError("DWLS weights need the raw data")
        w = 1 / Gamma_ADF(observed.data).diagonal()  # these are the dwls weights
        return cls(observed, weight_matrix = torch.diag(w))

    def objective(self, model, theta):
        implied = model.implied
        r = self.s - vech(implied.Sigma)
        F = r.dot(self.W.mv(r))
        if implied.meanstructure:
            r_mean = self.observed.obs_mean - implied.mu
            F = F + r_mean.dot(self.V.mv(r_mean))
        return F

    def gradient(self, model, theta):
        implied = model.implied
        r = self.s - vech(implied.Sigma)
        J = implied.dSigma[:, self.vech_rows, self.vech_cols]
        grad = -2 * J.mv(self.W.mv(r))
        if implied.meanstructure:
            r_mean = self.observed.obs_mean - implied.mu
            grad = grad - 2 * implied.dmu.mv(self.V.mv(r_mean))
        return grad


class SemFIML(SemLossFunction):
    """
    Full information maximum likelihood for data with missing values. Per
    missingness pattern p with n_p rows, observed variables o, mean m_p and
    covariance S_p:
    F = 1/n sum_p n_p (log|Sigma_oo| + tr(S_p Sigma_oo^-1) + (m_p - mu_o)^T Sigma_oo^-1 (m_p - mu_o))
    """

    has_gradient = True
    requires_meanstructure = True

    def __init__(self, observed: SemObservedMissing):
        if not isinstance(observed, SemObservedMissing):
            raise TypeError("FIML needs SemObservedMissing data")
        self.observed = observed

    def _pattern_chol(self, Sigma, pattern):
        idx = pattern.obs_index
        Sigma_chol, info = torch.linalg.cholesky_ex(Sigma[idx][:, idx])
        return Sigma_chol if info.item() == 0 else None

    def objective(self, model, theta):
        implied = model.implied
        Sigma = symmetrize(implied.Sigma)
        F = torch.zeros((), dtype = implied.dtype)
        for pattern in self.observed.patterns:
            Sigma_chol = self._pattern_chol(Sigma, pattern)
            if Sigma_chol is None:
                return _inf(implied.dtype)
            diff = pattern.obs_mean - implied.mu[pattern.obs_index]
            F = F + pattern.n_obs * (
                2 * Sigma_chol.diagonal().log().sum()
                + torch.cholesky_solve(pattern.obs_cov, Sigma_chol).trace()
                + diff.dot(torch.cholesky_solve(diff.unsqueeze(1), Sigma_chol).squeeze(1))
            )
        return F / self.observed.n_obs

    def gradient(self, model, theta):
        implied = model.implied
        Sigma = symmetrize(implied.Sigma)
        grad = torch.zeros(implied.n_par, dtype = implied.dtype)
        for pattern in self.observed.patterns:
            Sigma_chol = self._pattern_chol(Sigma, pattern)
            if Sigma_chol is None:
                return torch.ones(implied.n_par, dtype = implied.dtype)
            idx = pattern.obs_index
            Sigma_inv = torch.cholesky_inverse(Sigma_chol)
            a = Sigma_inv.mv(pattern.obs_mean - implied.mu[idx])
            X = Sigma_inv - Sigma_inv.mm(pattern.obs_cov).mm(Sigma_inv) - torch.outer(a, a)
            dSigma = implied.dSigma[:, idx][:, :, idx]
            grad = grad + pattern.n_obs * (torch.einsum("ij,kij->k", X, dSigma) - 2 * implied.dmu[:, idx].mv(a))
        return grad / self.observed.n_obs


class SemRidge(SemLossFunction):
    """Ridge penalty alpha * sum(theta[which]^2), added on top of a fit function"""

    has_gradient = True

    def __init__(self, alpha: float, which: Sequence, param_labels: Optional[Sequence[str]] = None):
        if any(isinstance(w, str) for w in which):
            if param_labels is None:
                raise ValueError("Selecting ridge parameters by label needs param_labels")
            index = {label: i for i, label in enumerate(param_labels)}
            which = [index[w] for w in which]
        self.alpha = float(alpha)
        self.which = torch.tensor(list(which), dtype = torch.long)

    def objective(self, model, theta):
        return self.alpha * theta[self.which].pow(2).sum()

    def gradient(self, model, theta):
        grad = torch.zeros_like(theta)
        grad[self.which] = 2 * self.alpha * theta[self.which]
        return grad


class SemLoss:
    """Weighted sum of loss terms, evaluated on the same implied moments"""

    def __init__(self, functions: Sequence[SemLossFunction], weights: Optional[Sequence[float]] = None):
        self.functions = list(functions)
        if not self.functions:
            raise ValueError("A loss needs at least one loss function")
        self.weights = [1.0] * len(self.functions) if weights is None else [float(w) for w in weights]
        if len(self.weights) != len(self.functions):
            raise ValueError("Provide one weight per loss function")

    @property
    def has_gradient(self) -> bool:
        return all(f.has_gradient for f in self.functions)

    @property
    def requires_meanstructure(self) -> bool:
        return any(f.requires_meanstructure for f in self.functions)

    def objective(self, model, theta):
        F = torch.zeros((), dtype = theta.dtype)
        for w, f in zip(self.weights, self.functions):
            F = F + w * f.objective(model, theta)
        return F

    def gradient(self, model, theta):
        grad = torch.zeros_like(theta)
        for w, f in zip(self.weights, self.functions):
            grad = grad + w * f.gradient(model, theta)
        return grad
