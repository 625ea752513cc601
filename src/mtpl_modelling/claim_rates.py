import logging

import numpy as np
import pandas as pd

from . import config
from .utils import require_columns, verbosely

logger = logging.getLogger(__name__)


def calculate_claim_rate(data: pd.DataFrame, group_cols: list[str] | None = None) -> pd.DataFrame:
    """
    Total claims over total exposure, per group.

    With no grouping columns the result is a single portfolio row. Missing
    group keys form a group of their own. Groups with zero exposure get a
    non-finite claim_rate.
    """
    group_cols = list(group_cols or [])
    require_columns(data, ["claim_count", "exposure"] + group_cols, "claim rate input")

    if group_cols:
        out = data.groupby(group_cols, as_index=False, observed=True, dropna=False).agg(
            total_claimcount=("claim_count", "sum"),
            total_exposure=("exposure", "sum"),
        )
    else:
        out = pd.DataFrame({
            "total_claimcount": [data["claim_count"].sum()],
            "total_exposure": [data["exposure"].sum()],
        })

    with np.errstate(divide="ignore", invalid="ignore"):
        out["claim_rate"] = out["total_claimcount"] / out["total_exposure"]

    return out


def bootstrap_claim_rates(data: pd.DataFrame, group_cols: list[str] | None = None,
                          n_boot: int = config.BOOTSTRAP_SAMPLES,
                          seed: int = config.BOOTSTRAP_SEED,
                          show_prob: float = 0.01) -> pd.DataFrame:
    """Claim rates recomputed on n_boot resamples of the policies (with replacement)."""
    rng = np.random.default_rng(seed)
    n = len(data)

    def one_rate(boot_id):
        idx = rng.integers(0, n, size=n)
        rate = calculate_claim_rate(data.iloc[idx], group_cols)
        rate.insert(0, "bootstrap_id", boot_id)
        return rate

    calc = verbosely(one_rate, show_prob=show_prob, rng=rng)
    return pd.concat([calc(i) for i in range(1, n_boot + 1)], ignore_index=True)


def summarise_bootstrap_rates(boot: pd.DataFrame, group_cols: list[str] | None = None,
                              quantiles=config.SUMMARY_QUANTILES) -> pd.DataFrame:
    group_cols = list(group_cols or [])

    aggs = {"mean": "mean"}
    for q in quantiles:
        aggs[f"p{int(round(q * 100))}"] = lambda s, q=q: s.quantile(q)

    if group_cols:
        g = boot.groupby(group_cols, observed=True, dropna=False)["claim_rate"]
        return g.agg(**aggs).reset_index()
    s = boot["claim_rate"]
    row = {"mean": s.mean()}
    row.update({name: f(s) for name, f in aggs.items() if name != "mean"})
    return pd.DataFrame([row])
