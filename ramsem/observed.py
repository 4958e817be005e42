# -*- coding: utf-8 -*-
# Observed moments consumed by the loss functions
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import torch

logger = logging.getLogger(__name__)


def _as_array(data, observed_vars: Optional[Sequence[str]]):
    """Returns the raw data as float array and the column names, if any"""
    if isinstance(data, pd.DataFrame):
        if observed_vars is not None:
            data = data[list(observed_vars)]  # order the columns, important step!
        return data.to_numpy(dtype = float), list(data.columns)
    if isinstance(data, torch.Tensor):
        data = data.detach().cpu().numpy()
    return np.asarray(data, dtype = float), None


class SemObserved:
    """
    Observed covariance matrix, mean vector and sample size of complete data.
    Either computed from raw data (covariance normalized by n - 1) or given directly.
    """

    def __init__(
        self,
        data = None,
        obs_cov = None,
        obs_mean = None,
        n_obs: Optional[int] = None,
        observed_vars: Optional[Sequence[str]] = None,
        meanstructure: bool = False,
        dtype: torch.dtype = torch.float64,
    ):
        self.data = None
        if data is not None:
            arr, columns = _as_array(data, observed_vars)
            if np.isnan(arr).any():
                raise ValueError("The data contains missing values, use SemObservedMissing with FIML instead")
            if observed_vars is None:
                observed_vars = columns
            self.data = torch.tensor(arr, dtype = dtype)
            n_obs = arr.shape[0]
            obs_mean = self.data.mean(0)
            centered = self.data.sub(obs_mean)
            obs_cov = centered.t().mm(centered).div(n_obs - 1)
        elif obs_cov is None or n_obs is None:
            raise ValueError("Provide either data, or obs_cov and n_obs")

        self.obs_cov = torch.as_tensor(obs_cov, dtype = dtype)
        if self.obs_cov.ndim != 2 or self.obs_cov.shape[0] != self.obs_cov.shape[1]:
            raise ValueError("obs_cov must be a square matrix")
        self.obs_mean = torch.as_tensor(obs_mean, dtype = dtype) if obs_mean is not None else None
        if meanstructure and self.obs_mean is None:
            raise ValueError("A mean structure needs observed means")
        self.n_obs = int(n_obs)
        self.observed_vars = list(observed_vars) if observed_vars is not None else None

    @property
    def n_man(self) -> int:
        return self.obs_cov.shape[0]

    def __repr__(self):
        return f"SemObserved(n_obs={self.n_obs}, n_man={self.n_man})"


@dataclass
class SemObservedPattern:
    """Rows of the data sharing one missingness pattern"""

    obs_mask: torch.Tensor  # which variables are observed
    obs_index: torch.Tensor  # their positions
    n_obs: int
    obs_mean: torch.Tensor  # mean of the observed variables
    obs_cov: torch.Tensor  # n-normalized covariance of the observed variables


class SemObservedMissing:
    """
    Raw data with missing values (NaN), partitioned into missingness patterns.
    Rows where every variable is missing carry no information and are dropped.
    """

    def __init__(
        self,
        data,
        observed_vars: Optional[Sequence[str]] = None,
        dtype: torch.dtype = torch.float64,
    ):
        arr, columns = _as_array(data, observed_vars)
        if observed_vars is None:
            observed_vars = columns
        observed = ~np.isnan(arr)
        empty = ~observed.any(1)
        if empty.any():
            logger.warning(f"Dropping {int(empty.sum())} rows without any observed value")
            arr, observed = arr[~empty], observed[~empty]

        self.data = torch.tensor(arr, dtype = dtype)
        self.n_obs = arr.shape[0]
        self.observed_vars = list(observed_vars) if observed_vars is not None else None
        self._n_man = arr.shape[1]

        masks, inverse = np.unique(observed, axis = 0, return_inverse = True)
        inverse = np.asarray(inverse).reshape(-1)
        # complete cases first, then by decreasing number of observed variables
        order = sorted(range(len(masks)), key = lambda i: (-int(masks[i].sum()), tuple(~masks[i])))
        self.patterns: List[SemObservedPattern] = []
        for i in order:
            mask = masks[i]
            rows = arr[inverse == i][:, mask]
            mean = rows.mean(0)
            centered = rows - mean
            cov = centered.T @ centered / rows.shape[0]
            self.patterns.append(SemObservedPattern(
                obs_mask = torch.tensor(mask),
                obs_index = torch.tensor(np.flatnonzero(mask), dtype = torch.long),
                n_obs = rows.shape[0],
                obs_mean = torch.tensor(mean, dtype = dtype),
                obs_cov = torch.tensor(cov, dtype = dtype),
            ))
        logger.debug(f"{len(self.patterns)} missingness patterns in {self.n_obs} rows")

    @property
    def n_man(self) -> int:
        return self._n_man

    @property
    def n_patterns(self) -> int:
        return len(self.patterns)

    def __repr__(self):
        return f"SemObservedMissing(n_obs={self.n_obs}, n_man={self.n_man}, n_patterns={self.n_patterns})"
