# -*- coding: utf-8 -*-
# The RAM implied moments module
import logging

import numpy as np
import torch

from .errors import SingularStructuralMatrixError
from .ram_matrices import RAMMatrices

logger = logging.getLogger(__name__)


class RAM(torch.nn.Module):
    def __init__(self, ram_matrices: RAMMatrices, generator: torch.Generator = None):
        """
        In the constructor we store the fixed parts of the RAM matrices, the
        index tensors that place the parameter vector into them, and we find
        out whether (I - A) can be handled with triangular solves
        :param ram_matrices: RAMMatrices specification
        :param generator: random generator for the triangularity check
        """
        super(RAM, self).__init__()
        self.ram_matrices = ram_matrices
        self.dtype = ram_matrices.dtype
        self.n_var = ram_matrices.n_var
        self.n_par = ram_matrices.n_par

        # Fixed values, free cells are zero
        self.A_pre = ram_matrices.A.clone()
        self.S_pre = ram_matrices.S.clone()
        self.M_pre = ram_matrices.M.clone() if ram_matrices.meanstructure else None
        self.F = ram_matrices.F.clone()

        # Free cells: parameter index and flat cell index of every occupied cell
        self.A_params, A_cells = ram_matrices.cells("A")
        self.S_params, S_cells = ram_matrices.cells("S")
        self.A_rows, self.A_cols = A_cells.div(self.n_var, rounding_mode = "floor"), A_cells.remainder(self.n_var)
        self.S_rows, self.S_cols = S_cells.div(self.n_var, rounding_mode = "floor"), S_cells.remainder(self.n_var)
        if self.meanstructure:
            self.M_params, self.M_rows = ram_matrices.cells("M")

        self.I_mat = torch.eye(self.n_var, dtype = self.dtype)

        self.triangular = ram_matrices.triangular_structure(generator)
        if self.triangular is None and ram_matrices.is_acyclic_hint(generator):
            logger.info(
                "Your model is acyclic, sorting the variables of the parameter table (sort_vars) "
                "makes the A matrix lower triangular and allows faster computations."
            )

        self.Sigma = None
        self.mu = None

    @property
    def meanstructure(self) -> bool:
        return self.M_pre is not None

    @property
    def param_labels(self):
        return self.ram_matrices.param_labels

    @property
    def observed_vars(self):
        return self.ram_matrices.observed_vars

    def as_tensor(self, theta) -> torch.Tensor:
        if isinstance(theta, torch.Tensor):
            theta = theta.to(self.dtype)
        else:
            theta = torch.tensor(np.array(theta, dtype = float), dtype = self.dtype)
        if theta.shape != (self.n_par,):
            raise ValueError(f"Expected a parameter vector of length {self.n_par}, got shape {tuple(theta.shape)}")
        return theta

    def fill_matrices(self, theta: torch.Tensor):
        """Places the parameter values into every cell they occupy, fixed cells keep their value"""
        self.A = self.A_pre.index_put((self.A_rows, self.A_cols), theta[self.A_params])
        self.S = self.S_pre.index_put((self.S_rows, self.S_cols), theta[self.S_params])
        if self.meanstructure:
            self.M = self.M_pre.index_put((self.M_rows,), theta[self.M_params])
        else:
            self.M = None

    def _inverse(self, I_A: torch.Tensor) -> torch.Tensor:
        I_A_inv, info = torch.linalg.inv_ex(I_A)
        if info.item() != 0 or not torch.isfinite(I_A_inv).all():
            raise SingularStructuralMatrixError("(I - A) is singular at the current parameter values")
        return I_A_inv

    def forward(self, theta):
        """
        In the forward pass, we fill the RAM matrices from the parameter vector
        and compute the model-implied moments
        Sigma = F (I - A)^-1 S (I - A)^-T F^T and mu = F (I - A)^-1 M
        :param theta: parameter vector
        :return: tuple of the implied covariance matrix and mean vector (None without means)
        """
        theta = self.as_tensor(theta)
        self.fill_matrices(theta)

        self.I_A = self.I_mat - self.A
        if self.triangular is not None:
            if (self.I_A.diagonal() == 0).any():
                raise SingularStructuralMatrixError("(I - A) is singular at the current parameter values")
            # solves X (I - A) = F
            self.F_I_A_inv = torch.linalg.solve_triangular(
                self.I_A, self.F, upper = self.triangular == "upper", left = False
            )
            self.I_A_inv = None
        else:
            self.I_A_inv = self._inverse(self.I_A)
            self.F_I_A_inv = self.F.mm(self.I_A_inv)

        self.F_I_A_inv_S = self.F_I_A_inv.mm(self.S)
        self.Sigma = self.F_I_A_inv_S.mm(self.F_I_A_inv.t())
        self.mu = self.F_I_A_inv.mv(self.M) if self.meanstructure else None
        return self.Sigma, self.mu

    evaluate = forward

    def gradient(self, theta):
        """
        Jacobians of the implied moments. With B = F (I - A)^-1 and
        G = (I - A)^-1 S B^T, the derivative wrt parameter k is
        dSigma_k = B dA_k G + (B dA_k G)^T + B dS_k B^T, where dA_k and dS_k
        are the 0/1 indicators of the cells of parameter k.
        :param theta: parameter vector
        :return: tuple of q * m * m dSigma and q * m dmu (None without means)
        """
        theta = self.as_tensor(theta).detach()
        with torch.no_grad():
            self.forward(theta)
            I_A_inv = self.I_A_inv
            if I_A_inv is None:
                I_A_inv = torch.linalg.solve_triangular(self.I_A, self.I_mat, upper = self.triangular == "upper")
            B = self.F_I_A_inv
            m = B.shape[0]

            G = I_A_inv.mm(self.S).mm(B.t())
            dA = torch.zeros(self.n_par, m, m, dtype = self.dtype)
            # every A cell (i, j) contributes the outer product B[:, i] G[j, :]
            dA.index_add_(0, self.A_params, B[:, self.A_rows].t().unsqueeze(2) * G[self.A_cols].unsqueeze(1))
            self.dSigma = dA + dA.transpose(1, 2)
            self.dSigma.index_add_(
                0, self.S_params, B[:, self.S_rows].t().unsqueeze(2) * B[:, self.S_cols].t().unsqueeze(1)
            )

            if self.meanstructure:
                I_A_inv_M = I_A_inv.mv(self.M)
                self.dmu = torch.zeros(self.n_par, m, dtype = self.dtype)
                self.dmu.index_add_(0, self.A_params, B[:, self.A_rows].t() * I_A_inv_M[self.A_cols].unsqueeze(1))
                self.dmu.index_add_(0, self.M_params, B[:, self.M_rows].t())
            else:
                self.dmu = None

        return self.dSigma, self.dmu
