"""
Exploratory report for one merged MTPL table.

Covers column typing, missing data, per-column distributions, faceted
comparisons against claim counts, claim rates per risk factor with
bootstrap intervals and a regional claim-rate choropleth.
"""

import argparse
import logging
import os
import unicodedata

import geopandas as gpd
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from . import config
from .claim_rates import bootstrap_claim_rates, calculate_claim_rate, summarise_bootstrap_rates
from .datasets import load_dataset
from .utils import convert_counts_string, ensure_dirs, require_columns, require_file

logger = logging.getLogger(__name__)


# ---------------- Column typing / missing data ---------------- #

def classify_columns(df: pd.DataFrame) -> dict[str, list[str]]:
    out = {"numeric": [], "categorical": [], "logical": [], "nested": []}
    for c in df.columns:
        s = df[c]
        if pd.api.types.is_bool_dtype(s):
            out["logical"].append(c)
        elif pd.api.types.is_numeric_dtype(s):
            out["numeric"].append(c)
        elif s.map(lambda v: isinstance(v, (list, np.ndarray))).any():
            out["nested"].append(c)
        else:
            out["categorical"].append(c)
    return out


def missing_data_summary(df: pd.DataFrame) -> pd.DataFrame:
    missing = df.isna().sum().to_frame("missing_count")
    missing["missing_pct"] = 100 * missing["missing_count"] / max(len(df), 1)
    return missing.sort_values("missing_count", ascending=False)


def plot_missing_data(df: pd.DataFrame, path: str, max_rows: int = 5_000, seed: int = 42) -> str:
    flat = df[[c for c in df.columns if c not in classify_columns(df)["nested"]]]
    if len(flat) > max_rows:
        flat = flat.sample(max_rows, random_state=seed)

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))
    axes[0].imshow(flat.isna().to_numpy(), aspect="auto", interpolation="none", cmap="Greys")
    axes[0].set_xticks(range(flat.shape[1]))
    axes[0].set_xticklabels(flat.columns, rotation=90)
    axes[0].set_ylabel("row (sample)")
    axes[0].set_title("Missing values")

    missing = missing_data_summary(flat)
    axes[1].barh(missing.index, missing["missing_pct"])
    axes[1].set_xlabel("% missing")
    axes[1].set_title("Missing share per column")

    fig.tight_layout()
    fig.savefig(path, dpi=160)
    plt.close(fig)
    return path


# ---------------- Univariate ---------------- #

def plot_numeric_distribution(series: pd.Series, path: str, logy: bool = False, bins: int = 60) -> str:
    plt.figure()
    plt.hist(series.dropna().values, bins=bins)
    plt.title(f"{series.name} distribution")
    if logy:
        plt.yscale("log")
    plt.tight_layout()
    plt.savefig(path, dpi=160)
    plt.close()
    return path


def plot_categorical_distribution(series: pd.Series, path: str, top_n: int = 30) -> str:
    counts = series.astype(str).value_counts().head(top_n)
    plt.figure(figsize=(8, 4))
    plt.bar(counts.index, counts.values)
    plt.xticks(rotation=90)
    plt.title(f"{series.name} counts")
    plt.tight_layout()
    plt.savefig(path, dpi=160)
    plt.close()
    return path


def plot_claim_count_distribution(df: pd.DataFrame, path: str,
                                  max_count: int = config.MAX_CLAIM_COUNT_LABEL) -> str:
    labels = convert_counts_string(df["claim_count"], max_count).rename("claim_count")
    order = [str(i) for i in range(max_count)] + [f"{max_count}+"]
    counts = labels.value_counts().reindex(order, fill_value=0)

    plt.figure()
    plt.bar(counts.index, counts.values)
    plt.yscale("log")
    plt.title("Claims per policy")
    plt.tight_layout()
    plt.savefig(path, dpi=160)
    plt.close()
    return path


# ---------------- Bivariate ---------------- #

def plot_faceted_comparison(df: pd.DataFrame, value_col: str, facet_col: str, path: str,
                            col_wrap: int = 2) -> str:
    """Histogram of value_col, one panel per level of facet_col (independent y scales)."""
    g = sns.FacetGrid(df, col=facet_col, col_wrap=col_wrap, sharey=False, height=3)
    g.map(plt.hist, value_col, bins=40)
    g.tight_layout()
    g.savefig(path, dpi=160)
    plt.close(g.figure)
    return path


def claim_rate_with_intervals(df: pd.DataFrame, col: str, n_boot: int = config.BOOTSTRAP_SAMPLES,
                              seed: int = config.BOOTSTRAP_SEED) -> pd.DataFrame:
    point = calculate_claim_rate(df, [col])
    boot = bootstrap_claim_rates(df, [col], n_boot=n_boot, seed=seed)
    interval = summarise_bootstrap_rates(boot, [col], quantiles=(0.10, 0.90))
    return point.merge(interval[[col, "p10", "p90"]], on=col, how="left")


def plot_claim_rate_by(rates: pd.DataFrame, col: str, path: str) -> str:
    rates = rates.sort_values(col)
    x = rates[col].astype(str)
    plt.figure(figsize=(8, 4))
    plt.plot(x, rates["claim_rate"], "o")
    if {"p10", "p90"} <= set(rates.columns):
        plt.vlines(x, rates["p10"], rates["p90"])
    plt.xticks(rotation=90)
    plt.ylabel("claims per year at risk")
    plt.title(f"Claim rate by {col}")
    plt.tight_layout()
    plt.savefig(path, dpi=160)
    plt.close()
    return path


# ---------------- Geospatial ---------------- #

def region_key(name) -> str:
    """Fold accents, case and separators so 'Rhône-Alpes' matches 'Rhone Alpes'."""
    s = unicodedata.normalize("NFKD", str(name)).encode("ascii", "ignore").decode("ascii")
    return "".join(ch for ch in s.lower() if ch.isalnum())


def load_region_boundaries(shape_dir: str = config.GEO_DIR,
                           shape_file: str = config.REGION_SHAPE_FILE) -> gpd.GeoDataFrame:
    path = os.path.join(shape_dir, shape_file)
    require_file(path, "Download the GADM France level-1 shapefile (FRA_adm) into geospatial_data/.")
    return gpd.read_file(path)


def plot_claim_rate_choropleth(df: pd.DataFrame, boundaries: gpd.GeoDataFrame, path: str,
                               region_col: str = "region",
                               name_col: str = config.REGION_SHAPE_NAME_COL) -> tuple[str, list[str]]:
    """Returns the figure path and the data regions with no matching boundary."""
    require_columns(boundaries, [name_col], "region boundaries")

    rates = calculate_claim_rate(df[df[region_col].notna()], [region_col])
    rates["region_key"] = rates[region_col].map(region_key)

    geo = boundaries.copy()
    geo["region_key"] = geo[name_col].map(region_key)
    geo = geo.merge(rates[["region_key", "claim_rate"]], on="region_key", how="left")

    unmatched = rates.loc[~rates["region_key"].isin(geo["region_key"]), region_col].astype(str).tolist()
    if unmatched:
        logger.warning("No boundary found for regions: %s", ", ".join(unmatched))

    fig, ax = plt.subplots(figsize=(8, 8))
    geo.plot(column="claim_rate", ax=ax, legend=True, cmap="viridis",
             missing_kwds={"color": "lightgrey"}, edgecolor="white", linewidth=0.5)
    ax.set_axis_off()
    ax.set_title("Claim rate by region")
    fig.tight_layout()
    fig.savefig(path, dpi=160)
    plt.close(fig)
    return path, unmatched


# ---------------- Entry point ---------------- #

def main(dataset: str = "mtpl1", n_boot: int = config.BOOTSTRAP_SAMPLES):
    out_fig = os.path.join(config.OUT_FIG, f"explore_{dataset}")
    ensure_dirs(out_fig, config.OUT_TBL, config.LOG_DIR)
    report = os.path.join(config.LOG_DIR, f"explore_{dataset}_report.txt")

    df = load_dataset(dataset)
    require_columns(df, ["policy_id", "exposure", "claim_count", "claim_total"], f"{dataset} table")

    col_types = classify_columns(df)
    missing = missing_data_summary(df)
    missing_csv = os.path.join(config.OUT_TBL, f"{dataset}_missing_data.csv")
    missing.to_csv(missing_csv)

    figures = [plot_missing_data(df, os.path.join(out_fig, "missing_data.png"))]

    for c in col_types["numeric"]:
        logy = c in ("claim_total", "density", "claim_count", "claim_nb_reported")
        figures.append(plot_numeric_distribution(df[c], os.path.join(out_fig, f"hist_{c}.png"), logy=logy))
    for c in col_types["categorical"]:
        if c == "policy_id":
            continue
        figures.append(plot_categorical_distribution(df[c], os.path.join(out_fig, f"bar_{c}.png")))

    figures.append(plot_claim_count_distribution(df, os.path.join(out_fig, "claim_counts.png")))

    facet = df.assign(claim_group=convert_counts_string(df["claim_count"], config.MAX_CLAIM_COUNT_LABEL))
    figures.append(plot_faceted_comparison(facet, "exposure", "claim_group",
                                           os.path.join(out_fig, "exposure_by_claim_count.png")))

    claims = df[df["claim_total"] > 0]
    if len(claims) > 0 and "fuel" in df.columns:
        claims = claims.assign(log_claim_total=np.log10(claims["claim_total"]))
        figures.append(plot_faceted_comparison(claims, "log_claim_total", "fuel",
                                               os.path.join(out_fig, "claim_total_by_fuel.png")))

    # claim rates
    policies = df[df["exposure"] > 0]
    portfolio = calculate_claim_rate(policies)
    rate_tables = []
    for c in ["region", "vehicle_power", "fuel", "vehicle_brand", "area"]:
        if c not in policies.columns:
            continue
        rates = claim_rate_with_intervals(policies, c, n_boot=n_boot)
        rate_csv = os.path.join(config.OUT_TBL, f"{dataset}_claim_rate_by_{c}.csv")
        rates.to_csv(rate_csv, index=False)
        rate_tables.append(rate_csv)
        figures.append(plot_claim_rate_by(rates, c, os.path.join(out_fig, f"claim_rate_by_{c}.png")))

    shape_path = os.path.join(config.GEO_DIR, config.REGION_SHAPE_FILE)
    unmatched = None
    if os.path.exists(shape_path):
        boundaries = load_region_boundaries(config.GEO_DIR)
        fig_path, unmatched = plot_claim_rate_choropleth(policies, boundaries,
                                                         os.path.join(out_fig, "claim_rate_choropleth.png"))
        figures.append(fig_path)
    else:
        logger.warning("Shapefile %s not found, skipping choropleth", shape_path)

    with open(report, "w", encoding="utf-8") as f:
        f.write(f"explore.py report ({dataset})\n")
        f.write("=========================\n\n")
        f.write(f"Rows: {len(df):,}\n")
        f.write(f"Rows with claims: {int((df['claim_count'] > 0).sum()):,}\n\n")
        f.write("Column types:\n")
        for k, cols in col_types.items():
            f.write(f"  {k:<12}: {', '.join(cols) if cols else '-'}\n")
        f.write("\nMissing values:\n")
        for c, row in missing[missing["missing_count"] > 0].iterrows():
            f.write(f"  {c}: {int(row['missing_count']):,} ({row['missing_pct']:.2f}%)\n")
        f.write("\nPortfolio claim rate:\n")
        f.write(f"  claims:   {portfolio['total_claimcount'].iloc[0]:,}\n")
        f.write(f"  exposure: {portfolio['total_exposure'].iloc[0]:,.2f}\n")
        f.write(f"  rate:     {portfolio['claim_rate'].iloc[0]:.6f}\n\n")
        if unmatched is None:
            f.write("Choropleth: skipped (no shapefile)\n\n")
        else:
            f.write(f"Choropleth: regions without boundary: {', '.join(unmatched) if unmatched else 'none'}\n\n")
        f.write("Saved files:\n")
        f.write(f"  {missing_csv}\n")
        for p in rate_tables:
            f.write(f"  {p}\n")
        f.write(f"  {report}\n")
        f.write(f"\n{len(figures)} figures saved in {out_fig}\n")

    print("Done.")
    print("Wrote:", report)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Exploratory report for a merged MTPL table.")
    parser.add_argument("--dataset", choices=sorted(config.DATASET_FILES), default="mtpl1")
    args = parser.parse_args()
    main(args.dataset)
