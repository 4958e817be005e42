import math

import numpy as np
import pytest

from ramsem import H_scaling, Sem, SemEnsemble, SemOptions, SemRidge, fit, se_hessian, update_se_hessian
from ramsem.parametertable import CONST
from ramsem.standard_errors import finite_difference_hessian

from tests.helpers import ONE_FACTOR_TRUE, one_factor_cov, one_factor_table, simulate, structural_table, structural_theta


@pytest.fixture
def fitted(structural_data):
    model = Sem.from_partable(structural_table(), data = structural_data)
    return fit(model)


def test_analytic_and_finite_difference_hessians_agree(fitted) -> None:
    H_analytic = fitted.model.hessian(fitted.solution)
    H_fd = finite_difference_hessian(fitted.model, fitted.solution)
    np.testing.assert_allclose(H_analytic, H_analytic.T, atol = 1e-10)
    np.testing.assert_allclose(H_fd, H_analytic, rtol = 1e-4, atol = 1e-6)


def test_standard_errors_agree_between_methods(fitted) -> None:
    se_fd = se_hessian(fitted)
    se_analytic = se_hessian(fitted, method = "analytic")
    assert se_fd.shape == (fitted.n_par,)
    assert np.all(np.isfinite(se_fd)) and np.all(se_fd > 0)
    np.testing.assert_allclose(se_fd, se_analytic, rtol = 1e-2)


def test_standard_error_scaling(fitted) -> None:
    H = fitted.model.hessian(fitted.solution)
    expected = np.sqrt(np.diag(2 / (500 - 1) * np.linalg.inv(H)))
    np.testing.assert_allclose(se_hessian(fitted, method = "analytic"), expected, rtol = 1e-12)


@pytest.mark.parametrize("method", ["optimizer", "expected"])
def test_unimplemented_hessians(fitted, method) -> None:
    with pytest.raises(NotImplementedError):
        se_hessian(fitted, method = method)


def test_unknown_hessian_method(fitted) -> None:
    with pytest.raises(ValueError):
        se_hessian(fitted, method = "bootstrap")


def test_H_scaling(fitted, fiml_model, structural_data) -> None:
    assert H_scaling(fitted.model) == 2 / 499
    assert H_scaling(fiml_model) == 2 / fiml_model.n_obs

    table = structural_table()
    a = Sem.from_partable(table, data = structural_data.iloc[:200])
    b = Sem.from_partable(table, data = structural_data.iloc[200:])
    assert H_scaling(SemEnsemble(a, b)) == 2 / 500


def test_H_scaling_needs_a_likelihood(fitted) -> None:
    model = Sem.from_partable(
        fitted.model.implied.ram_matrices,
        observed = fitted.model.observed,
        loss = SemRidge(1.0, [0]),
    )
    with pytest.raises(ValueError):
        H_scaling(model)


def test_hessian_of_infinite_objective_is_nan(fitted) -> None:
    theta = structural_theta(fitted.param_labels)
    theta[fitted.param_labels.index("e_x1")] = -5.0
    assert np.isnan(fitted.model.hessian(theta)).all()


def test_update_se_hessian(fitted) -> None:
    table = structural_table()
    update_se_hessian(table, fitted)
    se = se_hessian(fitted)
    for row in table:
        if row["label"] == CONST:
            assert row["se"] == 0.0
        else:
            assert math.isclose(row["se"], se[fitted.param_labels.index(row["label"])], rel_tol = 1e-12)


def test_hessian_method_follows_the_fit_options(structural_data) -> None:
    model = Sem.from_partable(structural_table(), data = structural_data)
    fitted = fit(model, options = SemOptions(hessian = "analytic"))
    assert fitted.options.hessian == "analytic"
    np.testing.assert_array_equal(se_hessian(fitted), se_hessian(fitted, method = "analytic"))

    table = update_se_hessian(structural_table(), fitted)
    se = se_hessian(fitted, method = "analytic")
    assert table.columns["se"][1] == se[fitted.param_labels.index("l2")]

    fitted = fit(model, options = SemOptions(hessian = "expected"))
    with pytest.raises(NotImplementedError):
        se_hessian(fitted)


def test_default_hessian_method_is_finitediff(fitted) -> None:
    assert fitted.options.hessian == "finitediff"
    np.testing.assert_array_equal(se_hessian(fitted), se_hessian(fitted, method = "finitediff"))


def test_standard_errors_of_a_one_factor_fit_on_300_observations() -> None:
    data = simulate(one_factor_cov(ONE_FACTOR_TRUE), None, 300, ["x1", "x2", "x3"])
    model = Sem.from_partable(one_factor_table(), data = data)
    fitted = fit(model)
    assert model.n_obs == 300
    assert fitted.converged
    assert fitted.n_iterations > 1
    np.testing.assert_allclose(model.gradient(fitted.solution), 0.0, atol = 1e-3)

    se_fd = se_hessian(fitted, method = "finitediff")
    se_analytic = se_hessian(fitted, method = "analytic")
    assert np.all(np.isfinite(se_fd)) and np.all(se_fd > 0)
    np.testing.assert_allclose(se_fd, se_analytic, rtol = 1e-2)
    np.testing.assert_allclose(
        se_analytic, np.sqrt(np.diag(2 / 299 * np.linalg.inv(model.hessian(fitted.solution)))), rtol = 1e-12
    )
