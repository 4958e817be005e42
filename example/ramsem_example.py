# -*- coding: utf-8 -*-
# Example of using the ramsem module
import logging

import numpy as np
import pandas as pd
from ramsem import *

### DESCRIPTION ###
# A two factor model with a structural regression xi -> eta,
# fitted by maximum likelihood, by FIML on data with missing values,
# and as a two group model with a group specific loading.

### PARAMETERS ###
N = 500  # sample size
MISSING = 0.1  # fraction of missing values for FIML
SEED = 42

logging.basicConfig(level = logging.INFO)

### THE MODEL ###
observed = ["x1", "x2", "x3", "y1", "y2", "y3"]
table = ParameterTable(observed_vars = observed, latent_vars = ["xi", "eta"])
table.add_row("xi", "->", "x1", free = False, value_fixed = 1.0)  # scale the factors
table.add_row("xi", "->", "x2", label = "l2")
table.add_row("xi", "->", "x3", label = "l3")
table.add_row("eta", "->", "y1", free = False, value_fixed = 1.0)
table.add_row("eta", "->", "y2", label = "l5")
table.add_row("eta", "->", "y3", label = "l6")
table.add_row("xi", "->", "eta", label = "b")
for var in observed:
    table.add_row(var, "<->", var, label = f"e_{var}")
table.add_row("xi", "<->", "xi", label = "psi_xi")
table.add_row("eta", "<->", "eta", label = "psi_eta")
table.sort_vars()  # lower triangular A, faster computations

### SIMULATE DATA ###
truth = dict(l2 = 0.8, l3 = 1.2, l5 = 0.9, l6 = 1.1, b = 0.5, psi_xi = 1.0, psi_eta = 0.6)
theta = np.array([truth.get(label, 0.3) for label in table.param_labels])
Sigma, _ = RAM(RAMMatrices.from_partable(table))(theta)
rng = np.random.default_rng(SEED)
df = pd.DataFrame(rng.multivariate_normal(np.zeros(6), Sigma.numpy(), size = N), columns = observed)

### MAXIMUM LIKELIHOOD ###
model = Sem.from_partable(table, data = df)
ml_fit = fit(model)
update_estimate(table, ml_fit)
update_se_hessian(table, ml_fit)
print(table.to_dataframe(["from", "relation", "to", "label", "estimate", "se"]))

### FIML WITH MISSING DATA ###
fiml_table = table.copy()
for var in observed:
    fiml_table.add_row("1", "->", var, label = f"m_{var}")  # FIML needs the means
df_missing = df.mask(rng.random(df.shape) < MISSING)
fiml_model = Sem.from_partable(fiml_table, data = df_missing, loss = SemFIML)
fiml_fit = fit(fiml_model, optimizer = "torch")
print(fiml_fit)
print(pd.DataFrame({"ml": ml_fit.estimates(), "fiml": fiml_fit.estimates()}))

### MULTIGROUP ###
group_table = ParameterTable.from_dataframe(
    table.to_dataframe().replace({"label": {"l3": "l3_g2"}}),
    table.observed_vars, table.latent_vars,
)
df["group"] = np.where(np.arange(N) < N // 2, "g1", "g2")
ensemble = SemEnsemble.from_partables({"g1": table, "g2": group_table}, df, "group")
group_fit = fit(ensemble)
se = se_hessian(group_fit, method = "analytic")
print(pd.DataFrame({"est": group_fit.solution, "se": se}, index = group_fit.param_labels))
