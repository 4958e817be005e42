# -*- coding: utf-8 -*-
# RAM matrix specification built from a parameter table
import logging
from typing import List, Optional, Sequence

import torch

from .parametertable import COVARIANCE, INTERCEPT_SOURCE, REGRESSION, ParameterTable, check_param_labels

logger = logging.getLogger(__name__)


class RAMMatrices:
    """
    Dense RAM matrices with the fixed values filled in, and for every free
    parameter the list of flat (row-major) cells it occupies in A, S and M.

    A: n*n directed paths, A[to, from]
    S: n*n symmetric (co)variances
    F: m*n 0/1 filter selecting the observed variables
    M: n intercepts, None without a mean structure
    """

    def __init__(
        self,
        A: torch.Tensor,
        S: torch.Tensor,
        F: torch.Tensor,
        param_labels: Sequence[str],
        A_ind: List[List[int]],
        S_ind: List[List[int]],
        M: Optional[torch.Tensor] = None,
        M_ind: Optional[List[List[int]]] = None,
        vars: Optional[Sequence[str]] = None,
        observed_vars: Optional[Sequence[str]] = None,
    ):
        n = A.shape[0]
        if A.shape != (n, n) or S.shape != (n, n) or F.shape[1] != n:
            raise ValueError("A and S must be n*n and F must have n columns")
        if len(A_ind) != len(param_labels) or len(S_ind) != len(param_labels):
            raise ValueError("A_ind and S_ind need one entry per parameter")
        if M is not None and (M_ind is None or len(M_ind) != len(param_labels)):
            raise ValueError("M_ind needs one entry per parameter")
        self.A = A
        self.S = S
        self.F = F
        self.M = M
        self.param_labels = list(param_labels)
        self.A_ind = [list(ind) for ind in A_ind]
        self.S_ind = [list(ind) for ind in S_ind]
        self.M_ind = [list(ind) for ind in M_ind] if M is not None else None
        self.vars = list(vars) if vars is not None else [f"x{i + 1}" for i in range(n)]
        if observed_vars is None:
            observed_vars = [self.vars[int(j)] for j in F.argmax(1)]
        self.observed_vars = list(observed_vars)

    @classmethod
    def from_partable(
        cls,
        table: ParameterTable,
        param_labels: Optional[Sequence[str]] = None,
        meanstructure: Optional[bool] = None,
        dtype: torch.dtype = torch.float64,
    ):
        """
        Builds the RAM matrices of a parameter table, in the order of its
        (sorted) variables. The mean structure is included if requested, or if
        the table has intercept rows when meanstructure is None.
        """
        if param_labels is None:
            param_labels = table.param_labels
        else:
            check_param_labels(param_labels, table.columns["label"])
        param_index = {label: i for i, label in enumerate(param_labels)}
        has_intercepts = any(source == INTERCEPT_SOURCE for source in table.columns["from"])
        if meanstructure is None:
            meanstructure = has_intercepts
        elif has_intercepts and not meanstructure:
            logger.warning("Intercepts are ignored because the model has no mean structure")

        vars = table.vars
        pos = {var: i for i, var in enumerate(vars)}
        n = len(vars)

        def position(var):
            try:
                return pos[var]
            except KeyError as e:
                raise ValueError(f"Variable {var!r} is neither observed nor latent") from e

        A = torch.zeros(n, n, dtype = dtype)
        S = torch.zeros(n, n, dtype = dtype)
        M = torch.zeros(n, dtype = dtype) if meanstructure else None
        A_ind = [[] for _ in param_labels]
        S_ind = [[] for _ in param_labels]
        M_ind = [[] for _ in param_labels] if meanstructure else None
        free_cells = {"A": {}, "S": {}, "M": {}}
        fixed_cells = {"A": set(), "S": set(), "M": set()}

        for row in table:
            source, relation, target = row["from"], row["relation"], row["to"]
            if relation == REGRESSION and source == INTERCEPT_SOURCE:
                if not meanstructure:
                    continue
                name, mat, ind, cells = "M", M, M_ind, [position(target)]
            elif relation == REGRESSION:
                name, mat, ind, cells = "A", A, A_ind, [position(target) * n + position(source)]
            elif relation == COVARIANCE:
                i, j = position(source), position(target)
                name, mat, ind, cells = "S", S, S_ind, sorted({i * n + j, j * n + i})
            else:
                raise ValueError(f"Unknown relation {relation!r}")

            if row["free"]:
                k = param_index[row["label"]]
                for cell in cells:
                    owner = free_cells[name].setdefault(cell, k)
                    if owner != k:
                        raise ValueError(
                            f"Cell {cell} of {name} belongs to both {param_labels[owner]} and {param_labels[k]}"
                        )
                    if cell not in ind[k]:
                        ind[k].append(cell)
            else:
                mat.view(-1)[cells] = float(row["value_fixed"])
                fixed_cells[name].update(cells)

        for name in free_cells:
            overlap = set(free_cells[name]) & fixed_cells[name]
            if overlap:
                raise ValueError(f"Cells {sorted(overlap)} of {name} are both fixed and free")

        F = torch.zeros(len(table.observed_vars), n, dtype = dtype)
        for i, var in enumerate(table.observed_vars):
            F[i, position(var)] = 1.0

        return cls(A, S, F, param_labels, A_ind, S_ind, M, M_ind, vars, table.observed_vars)

    @property
    def n_par(self) -> int:
        return len(self.param_labels)

    @property
    def n_var(self) -> int:
        return self.A.shape[0]

    @property
    def n_obs_vars(self) -> int:
        return self.F.shape[0]

    @property
    def dtype(self) -> torch.dtype:
        return self.A.dtype

    @property
    def meanstructure(self) -> bool:
        return self.M is not None

    def cells(self, which: str):
        """
        Flattened free cells of A, S or M as (parameter index, cell) tensors
        :param which: "A", "S" or "M"
        :return: tuple of two long tensors of equal length
        """
        ind = {"A": self.A_ind, "S": self.S_ind, "M": self.M_ind}[which] or []
        params = [k for k, cells in enumerate(ind) for _ in cells]
        cells = [cell for cells in ind for cell in cells]
        return torch.tensor(params, dtype = torch.long), torch.tensor(cells, dtype = torch.long)

    def variance_params(self) -> List[bool]:
        """Whether each parameter occupies a diagonal cell of S"""
        n = self.n_var
        return [any(cell // n == cell % n for cell in cells) for cells in self.S_ind]

    def random_A(self, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        """A with uniform random values in all free cells"""
        params, cells = self.cells("A")
        A_rand = self.A.clone()
        values = torch.rand(self.n_par, generator = generator, dtype = self.dtype)
        A_rand.view(-1)[cells] = values[params]
        return A_rand

    def triangular_structure(self, generator: Optional[torch.Generator] = None) -> Optional[str]:
        """
        Whether A is "lower" or "upper" triangular for every parameter value,
        or None. Only used to pick triangular solves for (I - A).
        """
        A_rand = self.random_A(generator)
        if not A_rand.triu(1).any():
            return "lower"
        if not A_rand.tril(-1).any():
            return "upper"
        return None

    def is_acyclic_hint(self, generator: Optional[torch.Generator] = None) -> bool:
        """
        Heuristic: det(I - A) equals one under a random fill when the paths are
        acyclic. Advisory only, ParameterTable.sort_vars is the actual check.
        """
        A_rand = self.random_A(generator)
        I_A = torch.eye(self.n_var, dtype = self.dtype) - A_rand
        return bool(torch.isclose(torch.linalg.det(I_A), torch.ones((), dtype = self.dtype)))

    def start_simple(
        self,
        start_loadings: float = 0.5,
        start_regressions: float = 0.0,
        start_variances_observed: float = 1.0,
        start_variances_latent: float = 0.05,
        start_covariances: float = 0.0,
        start_means: float = 0.0,
    ) -> torch.Tensor:
        """
        Simple starting values chosen by the matrix cell of each parameter:
        latent->observed paths are loadings, diagonal S cells are variances.
        """
        n = self.n_var
        observed = set(self.F.argmax(1).tolist())
        start = torch.zeros(self.n_par, dtype = self.dtype)
        for k in range(self.n_par):
            if self.A_ind[k]:
                row, col = divmod(self.A_ind[k][0], n)
                start[k] = start_loadings if (col not in observed and row in observed) else start_regressions
            elif self.S_ind[k]:
                row, col = divmod(self.S_ind[k][0], n)
                if row != col:
                    start[k] = start_covariances
                else:
                    start[k] = start_variances_observed if row in observed else start_variances_latent
            elif self.M_ind is not None and self.M_ind[k]:
                start[k] = start_means
        return start

    def __repr__(self):
        return (
            f"RAMMatrices({self.n_par} parameters, {self.n_var} variables, "
            f"{self.n_obs_vars} observed, meanstructure={self.meanstructure})"
        )
