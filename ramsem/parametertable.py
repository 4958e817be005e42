# -*- coding: utf-8 -*-
# Parameter table: the symbolic specification of a RAM model
import copy
import logging
import math
from typing import Dict, Iterator, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import CyclicModelError, DimensionMismatchError, ExternalMatchError, MissingParameterError

logger = logging.getLogger(__name__)

REGRESSION = "->"
COVARIANCE = "<->"
CONST = "const"
INTERCEPT_SOURCE = "1"

_RELATION_ALIASES = {
    "->": REGRESSION,
    "→": REGRESSION,
    "<->": COVARIANCE,
    "↔": COVARIANCE,
}

REQUIRED_COLUMNS = ("from", "relation", "to")


def empty_partable_columns(nrows: int = 0) -> Dict[str, list]:
    """The default parameter table columns, optionally pre-allocated for nrows"""
    return {
        "from": [""] * nrows,
        "relation": [""] * nrows,
        "to": [""] * nrows,
        "free": [True] * nrows,
        "value_fixed": [math.nan] * nrows,
        "start": [math.nan] * nrows,
        "estimate": [math.nan] * nrows,
        "label": [""] * nrows,
    }


def _column_default(column: str):
    if column == "free":
        return True
    if column in ("from", "relation", "to", "label"):
        return ""
    return math.nan


def _same_value(a, b) -> bool:
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    return a == b


def normalize_relation(relation: str) -> str:
    try:
        return _RELATION_ALIASES[relation]
    except KeyError as e:
        raise ValueError(
            f"Unknown relation {relation!r}. Use one of {tuple(_RELATION_ALIASES)}"
        ) from e


def check_param_labels(param_labels: Sequence[str], labels: Optional[Sequence[str]] = None):
    """
    Validates an ordered parameter label list
    :param param_labels: candidate parameter labels
    :param labels: the label column of a table; every non-constant label must be covered
    """
    if len(set(param_labels)) != len(param_labels):
        raise ValueError("Duplicate parameter labels detected")
    if CONST in param_labels:
        raise ValueError(f"Parameters constant label ({CONST}) is in the parameter labels")
    if labels is not None:
        known = set(param_labels)
        missing = [lab for lab in labels if lab != CONST and lab not in known]
        if missing:
            raise MissingParameterError(
                f"The parameter labels {sorted(set(missing))} of the table are not in param_labels"
            )


class ParameterTable:
    """
    Column oriented table of model paths. Each row is one edge between two
    variables (or the constant "1" for intercepts), either free, with a label
    shared by all rows of the same parameter, or fixed to value_fixed with
    the label "const".
    """

    def __init__(
        self,
        columns: Optional[Mapping[str, Sequence]] = None,
        observed_vars: Sequence[str] = (),
        latent_vars: Sequence[str] = (),
        param_labels: Optional[Sequence[str]] = None,
    ):
        if columns is None:
            columns = empty_partable_columns()
        self.columns = {key: list(values) for key, values in columns.items()}
        for col in REQUIRED_COLUMNS + ("free", "value_fixed", "label"):
            if col not in self.columns:
                raise ValueError(f"The parameter table needs a {col!r} column")
        lengths = {len(values) for values in self.columns.values()}
        if len(lengths) > 1:
            raise DimensionMismatchError("All parameter table columns need to have the same length")
        self.columns["relation"] = [normalize_relation(rel) for rel in self.columns["relation"]]
        labels = self.columns["label"]
        existing = set(labels)
        for i, free in enumerate(self.columns["free"]):
            if not free:
                labels[i] = CONST
            elif labels[i] == CONST:
                raise ValueError(f"The free row #{i + 1} can not have the constant label ({CONST})")
            elif not labels[i] or (isinstance(labels[i], float) and math.isnan(labels[i])):
                label = f"theta_{i + 1}"
                while label in existing:
                    label += "_"
                labels[i] = label
                existing.add(label)

        self.observed_vars = list(observed_vars)
        self.latent_vars = list(latent_vars)
        overlap = set(self.observed_vars) & set(self.latent_vars)
        if overlap:
            raise ValueError(f"Variables {sorted(overlap)} are both observed and latent")
        self.sorted_vars = []

        if param_labels is None:
            param_labels = list(dict.fromkeys(lab for lab in self.columns["label"] if lab != CONST))
        else:
            param_labels = list(param_labels)
            check_param_labels(param_labels, self.columns["label"])
        self._param_labels = param_labels

    @classmethod
    def from_rows(
        cls,
        rows: Sequence[Mapping],
        observed_vars: Sequence[str],
        latent_vars: Sequence[str] = (),
        param_labels: Optional[Sequence[str]] = None,
    ):
        """Builds a table row by row with add_row semantics (labels generated for unlabeled free rows)"""
        table = cls(observed_vars = observed_vars, latent_vars = latent_vars)
        for row in rows:
            row = dict(row)
            table.add_row(row.pop("from"), row.pop("relation"), row.pop("to"), **row)
        if param_labels is not None:
            check_param_labels(param_labels, table.columns["label"])
            table._param_labels = list(param_labels)
        return table

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        observed_vars: Sequence[str],
        latent_vars: Sequence[str] = (),
        param_labels: Optional[Sequence[str]] = None,
    ):
        columns = empty_partable_columns(len(df))
        for col in df.columns:
            columns[col] = df[col].tolist()
        columns["free"] = [bool(v) for v in columns["free"]]
        return cls(columns, observed_vars, latent_vars, param_labels)

    # --- variables --------------------------------------------------------------------------

    @property
    def vars(self) -> List[str]:
        return self.sorted_vars if self.sorted_vars else self.latent_vars + self.observed_vars

    @property
    def n_vars(self) -> int:
        return len(self.latent_vars) + len(self.observed_vars)

    # --- parameters -------------------------------------------------------------------------

    @property
    def param_labels(self) -> List[str]:
        return self._param_labels

    @property
    def n_params(self) -> int:
        return len(self._param_labels)

    @property
    def param_indices(self) -> Dict[str, int]:
        return {label: i for i, label in enumerate(self._param_labels)}

    # --- rows -------------------------------------------------------------------------------

    def __len__(self):
        return len(self.columns["label"])

    def __getitem__(self, i: int) -> Dict:
        return {col: values[i] for col, values in self.columns.items()}

    def __iter__(self) -> Iterator[Dict]:
        for i in range(len(self)):
            yield self[i]

    def __eq__(self, other):
        if not isinstance(other, ParameterTable):
            return NotImplemented
        if set(self.columns) != set(other.columns):
            return False
        for col, values in self.columns.items():
            theirs = other.columns[col]
            if len(values) != len(theirs):
                return False
            if not all(_same_value(a, b) for a, b in zip(values, theirs)):
                return False
        return (
            self.observed_vars == other.observed_vars
            and self.latent_vars == other.latent_vars
            and self.sorted_vars == other.sorted_vars
            and self._param_labels == other._param_labels
        )

    __hash__ = None

    def __repr__(self):
        return (
            f"ParameterTable({len(self)} rows, {self.n_params} parameters, "
            f"latent={self.latent_vars}, observed={self.observed_vars})"
        )

    def push(self, row: Mapping):
        """Appends a row given as a mapping with exactly the keys of the table columns"""
        if set(row) != set(self.columns):
            raise ValueError("The new row needs to have the same keys as the columns of the parameter table.")
        if row["free"] and row["label"] == CONST:
            raise ValueError(f"A free row can not have the constant label ({CONST})")
        for key, value in row.items():
            if key == "relation":
                value = normalize_relation(value)
            self.columns[key].append(value)
        label = row["label"]
        if label != CONST and label not in self._param_labels:
            self._param_labels.append(label)
        return self

    def add_row(
        self,
        from_: str,
        relation: str,
        to: str,
        free: bool = True,
        value_fixed: float = math.nan,
        label: Optional[str] = None,
        **fields,
    ):
        """
        Appends a path to the table. Free rows without a label get a generated one,
        fixed rows are always labeled "const". Columns not given are filled with
        their default value.
        """
        unknown = set(fields) - set(self.columns)
        if unknown:
            raise ValueError(f"Unknown parameter table columns {sorted(unknown)}")
        if free:
            if not label:
                label = f"theta_{self.n_params + 1}"
                while label in self._param_labels:
                    label += "_"
        else:
            if value_fixed is None or math.isnan(value_fixed):
                raise ValueError(f"The fixed path {from_} {relation} {to} needs a value_fixed")
            label = CONST
        row = {col: _column_default(col) for col in self.columns}
        row.update(fields)
        row.update({
            "from": from_,
            "relation": relation,
            "to": to,
            "free": bool(free),
            "value_fixed": math.nan if free else float(value_fixed),
            "label": label,
        })
        return self.push(row)

    # --- conversion -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, list]:
        return self.columns

    def to_dataframe(self, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
        if columns is None:
            columns = list(self.columns)
        return pd.DataFrame({col: self.columns[col] for col in columns})

    def copy(self, param_labels: Optional[Sequence[str]] = None):
        """Deep copy, optionally with a different parameter order"""
        out = copy.deepcopy(self)
        if param_labels is not None:
            check_param_labels(param_labels, out.columns["label"])
            out._param_labels = list(param_labels)
        return out

    # --- sorting ----------------------------------------------------------------------------

    def sort_vars(self):
        """
        Sorts the variables so that all independent variables come before the
        dependent variables and stores the order in sorted_vars. If the
        relations between the variables are acyclic, the RAM A matrix is lower
        triangular under this order. Among variables without incoming edges,
        the earliest declared one is taken first.
        :return: the table itself
        """
        vars = self.latent_vars + self.observed_vars

        # regression edges, excluding intercepts
        edges = [
            (source, target)
            for rel, source, target in zip(self.columns["relation"], self.columns["from"], self.columns["to"])
            if rel == REGRESSION and source != INTERCEPT_SOURCE
        ]

        sorted_vars = []
        while vars:
            targets = {target for _, target in edges}
            for i, var in enumerate(vars):
                if var not in targets:
                    sorted_vars.append(var)
                    del vars[i]
                    edges = [e for e in edges if e[0] != var]
                    break
            else:
                raise CyclicModelError("your model is cyclic and therefore can not be ordered")

        assert len(sorted_vars) == self.n_vars
        self.sorted_vars = sorted_vars
        return self

    def sorted_copy(self):
        """Returns a copy of the table with sorted variables, see sort_vars"""
        return copy.deepcopy(self).sort_vars()


# --- write-back -------------------------------------------------------------------------------

def _update_column(table: ParameterTable, column: str, params: Mapping[str, float], default = None):
    n = len(table)
    coldata = table.columns.setdefault(column, [math.nan] * n)
    isvec_def = isinstance(default, (list, tuple, np.ndarray)) and len(default) == n

    for i, label in enumerate(table.columns["label"]):
        if label == CONST:
            coldata[i] = (default[i] if isvec_def else default) if default is not None else 0.0
        elif label in params:
            coldata[i] = params[label]
        elif default is None:
            raise MissingParameterError(f"No value for parameter {label!r}")
        else:
            coldata[i] = default[i] if isvec_def else default

    return table


def update_partable(
    table: ParameterTable,
    column: str,
    param_labels: Sequence[str],
    values: Sequence[float],
    default = None,
):
    """
    Writes parameter values into a column of the table. The labels and values
    define pairs that are matched against the label column of the table.
    Constant rows receive default (a scalar or one value per row) or zero.
    :return: the table
    """
    if len(param_labels) != len(values):
        raise DimensionMismatchError(
            f"The length of `param_labels` ({len(param_labels)}) and their `values` ({len(values)}) must be the same"
        )
    check_param_labels(list(param_labels))
    params = {label: float(value) for label, value in zip(param_labels, values)}
    return _update_column(table, column, params, default)


def update_estimate(table: ParameterTable, fit):
    """Writes the estimates of a fitted model into the estimate column"""
    return update_partable(table, "estimate", fit.param_labels, fit.solution, table.columns["value_fixed"])


def update_start(table: ParameterTable, fit_or_model, start_val = None, **kwargs):
    """
    Writes starting values into the start column, either the start values of
    a fitted model, or start_val for a model (a vector or a function of the model)
    """
    if start_val is None:
        return update_partable(
            table, "start", fit_or_model.param_labels, fit_or_model.start_val, table.columns["value_fixed"]
        )
    if callable(start_val):
        start_val = start_val(fit_or_model, **kwargs)
    return update_partable(table, "start", fit_or_model.param_labels, start_val)


def update_se_hessian(table: ParameterTable, fit, method: Optional[str] = None):
    """
    Writes hessian based standard errors of a fitted model into the se column,
    by default with the hessian method of the options of the fit
    """
    from .standard_errors import se_hessian

    se = se_hessian(fit, method = method)
    return update_partable(table, "se", fit.param_labels, se)


# --- external solutions -----------------------------------------------------------------------

def lavaan_params(
    partable_lav: pd.DataFrame,
    table: ParameterTable,
    lav_col: str = "est",
    lav_group = None,
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Extracts the values of the parameters of table from a lavaan style
    solution (columns lhs, op, rhs, optionally group). Rows are matched by
    variable names and relation type, not by parameter labels.
    :return: array of values in param_labels order
    """
    if out is None:
        out = np.full(table.n_params, np.nan)
    elif len(out) != table.n_params:
        raise DimensionMismatchError(
            f"The length of parameter values vector ({len(out)}) does not match the number of parameters ({table.n_params})"
        )
    param_index = table.param_indices
    lhs = partable_lav["lhs"].astype(str)
    rhs = partable_lav["rhs"].astype(str)
    op = partable_lav["op"]
    in_group = pd.Series(True, index = partable_lav.index)
    if lav_group is not None:
        in_group = partable_lav["group"] == lav_group
    lav_values = partable_lav[lav_col].to_numpy()

    for row in table:
        if not row["free"]:
            continue
        source, target, relation, label = row["from"], row["to"], row["relation"], row["label"]

        if source == INTERCEPT_SOURCE:
            mask = (lhs == target) & (op == "~1")
        elif relation == COVARIANCE:
            mask = (((lhs == source) & (rhs == target)) | ((lhs == target) & (rhs == source))) & (op == "~~")
        elif source in table.latent_vars and target in table.observed_vars:
            mask = (lhs == source) & (rhs == target) & (op == "=~")
        else:
            mask = (lhs == target) & (rhs == source) & (op == "~")
        lav_ind = np.flatnonzero((mask & in_group).to_numpy())

        if len(lav_ind) == 0:
            raise ExternalMatchError(
                f"Parameter {label} ({source} {relation} {target}) could not be found in the lavaan solution"
            )
        elif len(lav_ind) > 1:
            raise ExternalMatchError("At least one parameter was found twice in the lavaan solution")

        param_ind = param_index[label]
        param_val = float(lav_values[lav_ind[0]])
        if np.isnan(out[param_ind]):
            out[param_ind] = param_val
        elif not math.isclose(out[param_ind], param_val, rel_tol = 0.0, abs_tol = 1e-10):
            raise ExternalMatchError(
                f"Parameter {label} value at row #{lav_ind[0]} ({param_val}) differs from the earlier encountered value ({out[param_ind]})"
            )

    return out
