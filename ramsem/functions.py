# -*- coding: utf-8 -*-
# Helper functions to export for use in loss functions and SE computation
import numpy as np
import torch

from .helpers import dup_idx, vech_idx


def Gamma_ADF(data):
    """
    Constructs gamma matrix from raw data based on asymptotic distribution free theory. Source:
    https://github.com/yrosseel/lavaan/blob/f630fe752f75ec6c22fdf57de4c940a1612381b5/R/lav_samplestats_gamma.R#L241
    :param data: N * P tensor of raw data
    :return: Gamma tensor
    """
    N, P = data.shape
    Yc = data.sub(data.mean(0))  # center
    idx1, idx2 = vech_idx(P)
    Z = Yc[:, idx1] * Yc[:, idx2]
    Zc = Z.sub(Z.mean(0))  # center
    return Zc.t().mm(Zc).div(N)


def jacobian(output, input):
    """
    Computes jacobian of output wrt input
    :param output: Tensor vector of size Po
    :param input: Tensor vector of size Pi
    :return: jacobian: Tensor of size Pi, Po
    """
    jacobian = torch.zeros(output.shape[0], input.shape[0], dtype = input.dtype)
    for i in range(output.shape[0]):
        if not output[i].requires_grad:
            continue  # constant element, zero derivative
        grad = torch.autograd.grad(output[i], input, retain_graph = True, allow_unused = True)[0]
        if grad is not None:
            jacobian[i] = grad

    return jacobian.t()


def vech(x: torch.Tensor):
    """
    :param x: square (symmetric) matrix tensor
    :return: vech vector, ordered as the rows of Gamma_ADF
    """
    idx1, idx2 = vech_idx(x.shape[-1])
    return x[..., idx1, idx2]


def duplication_matrix(n: int, dtype: torch.dtype = torch.float64):
    """
    Duplication matrix D with vec(X) = D vech(X) for a symmetric n*n matrix X
    :param n: size of the square matrix
    :return: n^2 * n(n+1)/2 tensor
    """
    idx = dup_idx(n)
    D = torch.zeros(n * n, n * (n + 1) // 2, dtype = dtype)
    D[torch.arange(n * n), torch.tensor(idx, dtype = torch.long)] = 1.0
    return D


def finite_difference_jacobian(func, x, step: float = None):
    """
    Central finite difference jacobian of a vector valued function
    :param func: function mapping a float array of size P to an array of size K
    :param x: point of evaluation
    :param step: relative step size, defaults to the cube root of machine epsilon
    :return: K * P array
    """
    x = np.asarray(x, dtype = float)
    step = np.finfo(float).eps ** (1 / 3) if step is None else float(step)
    eps = step * (np.abs(x) + 1.0)
    columns = []
    for i in range(x.shape[0]):
        e = np.zeros_like(x)
        e[i] = eps[i]
        f_plus = np.atleast_1d(np.asarray(func(x + e), dtype = float))
        f_minus = np.atleast_1d(np.asarray(func(x - e), dtype = float))
        columns.append((f_plus - f_minus) / (2 * eps[i]))
    return np.stack(columns, axis = 1)
