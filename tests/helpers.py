"""Shared test helpers (non-fixtures).

Model builders and numerical checks used across the test modules.
For fixtures, see conftest.py.
"""

import numpy as np
import pandas as pd
import torch

from ramsem import ParameterTable

# one factor model: eta -> x1 (fixed 1), x2, x3
ONE_FACTOR_LABELS = ["l2", "l3", "e1", "e2", "e3", "psi"]
ONE_FACTOR_TRUE = np.array([0.8, 1.2, 0.1, 0.1, 0.1, 0.2])


def one_factor_table() -> ParameterTable:
    table = ParameterTable(observed_vars = ["x1", "x2", "x3"], latent_vars = ["eta"])
    table.add_row("eta", "->", "x1", free = False, value_fixed = 1.0)
    table.add_row("eta", "->", "x2", label = "l2")
    table.add_row("eta", "->", "x3", label = "l3")
    table.add_row("x1", "<->", "x1", label = "e1")
    table.add_row("x2", "<->", "x2", label = "e2")
    table.add_row("x3", "<->", "x3", label = "e3")
    table.add_row("eta", "<->", "eta", label = "psi")
    return table


def one_factor_cov(theta) -> np.ndarray:
    l2, l3, e1, e2, e3, psi = theta
    lam = np.array([1.0, l2, l3])
    return psi * np.outer(lam, lam) + np.diag([e1, e2, e3])


def structural_table(meanstructure: bool = False) -> ParameterTable:
    """
    Two factors with a regression xi -> eta, an equality constrained loading
    (l2 on x2 and y2), a residual covariance and optionally intercepts.
    eta is declared before xi, so the unsorted A matrix is not triangular.
    """
    table = ParameterTable(
        observed_vars = ["x1", "x2", "x3", "y1", "y2", "y3"],
        latent_vars = ["eta", "xi"],
    )
    table.add_row("xi", "->", "x1", free = False, value_fixed = 1.0)
    table.add_row("xi", "->", "x2", label = "l2")
    table.add_row("xi", "->", "x3", label = "l3")
    table.add_row("eta", "->", "y1", free = False, value_fixed = 1.0)
    table.add_row("eta", "->", "y2", label = "l2")
    table.add_row("eta", "->", "y3", label = "l5")
    table.add_row("xi", "->", "eta", label = "b")
    for var in ["x1", "x2", "x3", "y1", "y2", "y3"]:
        table.add_row(var, "<->", var, label = f"e_{var}")
    table.add_row("x1", "<->", "y1", label = "c")
    table.add_row("xi", "<->", "xi", label = "psi_xi")
    table.add_row("eta", "<->", "eta", label = "psi_eta")
    if meanstructure:
        for var in ["x1", "x2", "x3", "y1", "y2", "y3"]:
            table.add_row("1", "->", var, label = f"m_{var}")
    return table


STRUCTURAL_VALUES = {
    "l2": 0.8, "l3": 1.1, "l5": 0.9, "b": 0.6, "c": 0.1,
    "psi_xi": 1.0, "psi_eta": 0.5,
    "m_x1": 0.2, "m_x2": -0.1, "m_x3": 0.3, "m_y1": 0.0, "m_y2": 0.5, "m_y3": -0.4,
}


def structural_theta(param_labels) -> np.ndarray:
    return np.array([STRUCTURAL_VALUES.get(label, 0.4) for label in param_labels])


def simulate(Sigma, mu, n: int, columns, seed: int = 1) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    Sigma = np.asarray(Sigma, dtype = float)
    mu = np.zeros(Sigma.shape[0]) if mu is None else np.asarray(mu, dtype = float)
    return pd.DataFrame(rng.multivariate_normal(mu, Sigma, size = n), columns = columns)


def fd_moments(implied, theta, h: float = 1e-6):
    """Central finite differences of the implied moments"""
    theta = np.asarray(theta, dtype = float)
    dSigma, dmu = [], []
    for k in range(theta.shape[0]):
        e = np.zeros_like(theta)
        e[k] = h
        Sigma_p, mu_p = implied(theta + e)
        Sigma_m, mu_m = implied(theta - e)
        dSigma.append((Sigma_p - Sigma_m) / (2 * h))
        if mu_p is not None:
            dmu.append((mu_p - mu_m) / (2 * h))
    return torch.stack(dSigma), (torch.stack(dmu) if dmu else None)


def fd_gradient(func, theta, h: float = 1e-6) -> np.ndarray:
    theta = np.asarray(theta, dtype = float)
    grad = np.zeros_like(theta)
    for k in range(theta.shape[0]):
        e = np.zeros_like(theta)
        e[k] = h
        grad[k] = (func(theta + e) - func(theta - e)) / (2 * h)
    return grad
