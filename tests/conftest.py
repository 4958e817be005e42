"""Shared fixtures for ramsem tests."""

import numpy as np
import pytest
import torch

from ramsem import RAM, RAMMatrices, Sem, SemFIML

from tests.helpers import (
    ONE_FACTOR_TRUE,
    one_factor_cov,
    one_factor_table,
    simulate,
    structural_table,
    structural_theta,
)


@pytest.fixture
def one_factor():
    return one_factor_table()


@pytest.fixture
def one_factor_population():
    """One factor model fitted by ML to its own population covariance"""
    table = one_factor_table()
    return Sem.from_partable(table, obs_cov = one_factor_cov(ONE_FACTOR_TRUE), n_obs = 300)


@pytest.fixture
def structural_data():
    """Data simulated from the structural model with mean structure"""
    table = structural_table(meanstructure = True).sorted_copy()
    implied = RAM(RAMMatrices.from_partable(table))
    Sigma, mu = implied(structural_theta(table.param_labels))
    return simulate(Sigma.numpy(), mu.numpy(), 500, table.observed_vars)


@pytest.fixture
def missing_data(structural_data):
    rng = np.random.default_rng(7)
    data = structural_data.copy()
    mask = rng.random(data.shape) < 0.15
    data = data.mask(mask)
    return data


@pytest.fixture
def fiml_model(missing_data):
    table = structural_table(meanstructure = True)
    return Sem.from_partable(table, data = missing_data, loss = SemFIML)


@pytest.fixture(autouse = True)
def _seed():
    torch.manual_seed(0)
