import math

import numpy as np
import pandas as pd
import pytest

from ramsem import (
    CyclicModelError,
    DimensionMismatchError,
    ExternalMatchError,
    MissingParameterError,
    ParameterTable,
    lavaan_params,
    update_estimate,
    update_partable,
)
from ramsem.parametertable import CONST, COVARIANCE, REGRESSION

from tests.helpers import ONE_FACTOR_LABELS, structural_table


def _regression_edges(table):
    return [
        (row["from"], row["to"])
        for row in table
        if row["relation"] == REGRESSION and row["from"] != "1"
    ]


def test_param_labels_follow_declaration_order(one_factor) -> None:
    assert one_factor.param_labels == ONE_FACTOR_LABELS
    assert one_factor.n_params == 6
    assert one_factor.param_indices["psi"] == 5
    assert one_factor[0]["label"] == CONST
    assert one_factor[1]["relation"] == REGRESSION
    assert one_factor[3]["relation"] == COVARIANCE


def test_shared_labels_define_one_parameter() -> None:
    table = structural_table()
    assert table.param_labels.count("l2") == 1
    assert table.columns["label"].count("l2") == 2


def test_add_row_generates_labels_and_rejects_unknown_columns(one_factor) -> None:
    one_factor.add_row("x1", "<->", "x2")
    assert one_factor[len(one_factor) - 1]["label"] == "theta_7"
    assert one_factor.param_labels[-1] == "theta_7"

    with pytest.raises(ValueError):
        one_factor.add_row("x1", "<->", "x3", colour = "red")
    with pytest.raises(ValueError):
        one_factor.add_row("x1", "<->", "x3", free = False)


def test_push_needs_all_columns(one_factor) -> None:
    with pytest.raises(ValueError):
        one_factor.push({"from": "x1", "relation": "<->", "to": "x2"})


def test_free_rows_can_not_be_labeled_const(one_factor) -> None:
    with pytest.raises(ValueError):
        one_factor.add_row("x1", "<->", "x2", label = CONST)
    row = dict(one_factor[1])
    row["label"] = CONST
    with pytest.raises(ValueError):
        one_factor.push(row)
    assert len(one_factor) == 7
    assert one_factor.param_labels == ONE_FACTOR_LABELS

    with pytest.raises(ValueError):
        ParameterTable(
            {"from": ["eta"], "relation": ["->"], "to": ["x1"], "free": [True],
             "value_fixed": [np.nan], "label": [CONST]},
            ["x1"], ["eta"],
        )


def test_generated_labels_skip_explicit_labels() -> None:
    table = ParameterTable(
        {
            "from": ["eta", "eta"],
            "relation": ["->", "->"],
            "to": ["x1", "x2"],
            "free": [True, True],
            "value_fixed": [np.nan, np.nan],
            "label": ["", "theta_1"],
        },
        ["x1", "x2"], ["eta"],
    )
    assert table.columns["label"] == ["theta_1_", "theta_1"]
    assert table.param_labels == ["theta_1_", "theta_1"]
    assert table.n_params == 2


def test_sort_vars_orders_every_regression_edge() -> None:
    table = structural_table(meanstructure = True)
    table.sort_vars()
    order = {var: i for i, var in enumerate(table.sorted_vars)}

    assert sorted(table.sorted_vars) == sorted(table.latent_vars + table.observed_vars)
    for source, target in _regression_edges(table):
        assert order[source] < order[target]
    assert table.vars == table.sorted_vars


def test_sort_vars_breaks_ties_by_declaration_order() -> None:
    table = structural_table()
    table.sort_vars()
    assert table.sorted_vars == ["xi", "eta", "x1", "x2", "x3", "y1", "y2", "y3"]


def test_sort_vars_is_idempotent() -> None:
    once = structural_table().sorted_copy()
    twice = once.sorted_copy()
    assert once.sorted_vars == twice.sorted_vars
    assert once == twice


def test_sorted_copy_leaves_the_table_untouched() -> None:
    table = structural_table()
    sorted_table = table.sorted_copy()
    assert table.sorted_vars == []
    assert table.vars == ["eta", "xi", "x1", "x2", "x3", "y1", "y2", "y3"]
    assert sorted_table != table


def test_cyclic_model_can_not_be_sorted() -> None:
    table = ParameterTable(observed_vars = ["a", "b"])
    table.add_row("a", "->", "b", label = "ab")
    table.add_row("b", "->", "a", label = "ba")
    table.add_row("a", "<->", "a", label = "va")
    table.add_row("b", "<->", "b", label = "vb")

    with pytest.raises(CyclicModelError):
        table.sort_vars()


def test_intercepts_do_not_count_as_edges() -> None:
    table = ParameterTable(observed_vars = ["a"])
    table.add_row("1", "->", "a", label = "m")
    table.add_row("a", "<->", "a", label = "v")
    assert table.sort_vars().sorted_vars == ["a"]


def test_equality_handles_missing_values(one_factor) -> None:
    other = one_factor.copy()
    assert other == one_factor
    other.columns["start"][1] = 0.3
    assert other != one_factor


def test_dataframe_round_trip(one_factor) -> None:
    df = one_factor.to_dataframe()
    assert list(df.columns[:3]) == ["from", "relation", "to"]
    back = ParameterTable.from_dataframe(df, one_factor.observed_vars, one_factor.latent_vars)
    assert back == one_factor


def test_from_dataframe_fills_missing_columns() -> None:
    df = pd.DataFrame({
        "from": ["eta", "eta", "x1"],
        "relation": ["→", "→", "↔"],
        "to": ["x1", "x2", "x1"],
        "free": [False, True, True],
        "value_fixed": [1.0, np.nan, np.nan],
    })
    table = ParameterTable.from_dataframe(df, ["x1", "x2"], ["eta"])
    assert table.columns["relation"] == [REGRESSION, REGRESSION, COVARIANCE]
    assert table.columns["label"] == [CONST, "theta_2", "theta_3"]
    assert table.param_labels == ["theta_2", "theta_3"]


def test_explicit_param_labels_are_validated(one_factor) -> None:
    reordered = one_factor.copy(param_labels = list(reversed(ONE_FACTOR_LABELS)))
    assert reordered.param_labels[0] == "psi"

    with pytest.raises(MissingParameterError):
        one_factor.copy(param_labels = ["l2"])
    with pytest.raises(ValueError):
        one_factor.copy(param_labels = ONE_FACTOR_LABELS + ["l2"])
    with pytest.raises(ValueError):
        one_factor.copy(param_labels = ONE_FACTOR_LABELS + [CONST])


def test_observed_and_latent_must_be_disjoint() -> None:
    with pytest.raises(ValueError):
        ParameterTable(observed_vars = ["x1"], latent_vars = ["x1"])


class _Fit:
    def __init__(self, labels, solution):
        self.param_labels = labels
        self.solution = solution


def test_update_estimate_round_trip(one_factor) -> None:
    v = np.array([0.81, 1.19, 0.11, 0.09, 0.12, 0.21])
    update_estimate(one_factor, _Fit(one_factor.param_labels, v))

    first_row = {}
    for row in one_factor:
        first_row.setdefault(row["label"], row["estimate"])
    assert np.array_equal([first_row[label] for label in one_factor.param_labels], v)
    # fixed rows get their fixed value
    assert one_factor[0]["estimate"] == 1.0


def test_update_partable_writes_every_row_of_a_label() -> None:
    table = structural_table()
    values = np.arange(table.n_params, dtype = float)
    update_partable(table, "se", table.param_labels, values)

    for row in table:
        if row["label"] == CONST:
            assert row["se"] == 0.0
        else:
            assert row["se"] == values[table.param_indices[row["label"]]]


def test_update_partable_errors(one_factor) -> None:
    with pytest.raises(DimensionMismatchError):
        update_partable(one_factor, "estimate", ["l2", "l3"], [1.0])
    with pytest.raises(MissingParameterError):
        update_partable(one_factor, "estimate", ["l2"], [1.0])

    update_partable(one_factor, "estimate", ["l2"], [1.0], default = math.nan)
    assert one_factor[1]["estimate"] == 1.0
    assert math.isnan(one_factor[2]["estimate"])


@pytest.fixture
def lavaan_solution():
    return pd.DataFrame({
        "lhs": ["eta", "eta", "eta", "x1", "x2", "x3", "eta", "x1"],
        "op": ["=~", "=~", "=~", "~~", "~~", "~~", "~~", "~1"],
        "rhs": ["x1", "x2", "x3", "x1", "x2", "x3", "eta", ""],
        "est": [1.0, 0.8, 1.2, 0.1, 0.11, 0.12, 0.2, 3.0],
    })


def test_lavaan_params_matches_by_structure(one_factor, lavaan_solution) -> None:
    out = lavaan_params(lavaan_solution, one_factor)
    np.testing.assert_allclose(out, [0.8, 1.2, 0.1, 0.11, 0.12, 0.2])


def test_lavaan_params_matches_intercepts_and_regressions() -> None:
    table = ParameterTable(observed_vars = ["x1", "y"])
    table.add_row("x1", "->", "y", label = "b")
    table.add_row("1", "->", "x1", label = "m")
    table.add_row("y", "<->", "x1", label = "c")
    lav = pd.DataFrame({
        "lhs": ["y", "x1", "x1"],
        "op": ["~", "~1", "~~"],
        "rhs": ["x1", "", "y"],
        "est": [0.5, 2.0, 0.3],
    })
    np.testing.assert_allclose(lavaan_params(lav, table), [0.5, 2.0, 0.3])


def test_lavaan_params_missing_match(one_factor, lavaan_solution) -> None:
    with pytest.raises(ExternalMatchError):
        lavaan_params(lavaan_solution.iloc[:-2], one_factor)


def test_lavaan_params_ambiguous_match(one_factor, lavaan_solution) -> None:
    duplicated = pd.concat([lavaan_solution, lavaan_solution.iloc[[1]]], ignore_index = True)
    with pytest.raises(ExternalMatchError):
        lavaan_params(duplicated, one_factor)


def test_lavaan_params_filters_groups(one_factor, lavaan_solution) -> None:
    g1 = lavaan_solution.assign(group = 1)
    g2 = lavaan_solution.assign(group = 2, est = lavaan_solution["est"] * 2)
    both = pd.concat([g1, g2], ignore_index = True)
    out = lavaan_params(both, one_factor, lav_group = 2)
    np.testing.assert_allclose(out, [1.6, 2.4, 0.2, 0.22, 0.24, 0.4])


def test_lavaan_params_checks_output_length(one_factor, lavaan_solution) -> None:
    with pytest.raises(DimensionMismatchError):
        lavaan_params(lavaan_solution, one_factor, out = np.full(3, np.nan))
