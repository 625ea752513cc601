"""
Loading, joining and nesting of the MTPL policy and claim tables.

Both datasets ship as a policy-level table (one row per policy with its
exposure and risk factors) and a claim-level table (one row per claim with
its amount). The merged table keeps one row per policy and nests the claim
amounts as a list column, from which claim_count and claim_total derive.
"""

import logging
import os

import numpy as np
import pandas as pd

from . import config
from .utils import require_columns, require_file, to_num

logger = logging.getLogger(__name__)


# ---------------- Raw loaders ---------------- #

def load_mtpl1_raw(raw_dir: str = config.RAW_DIR) -> tuple[pd.DataFrame, pd.DataFrame]:
    freq_path = os.path.join(raw_dir, config.MTPL1_FREQ_FILE)
    sev_path = os.path.join(raw_dir, config.MTPL1_SEV_FILE)
    fix = "Export freMTPLfreq and freMTPLsev from the CASdatasets package into data/raw/ as CSV."
    require_file(freq_path, fix)
    require_file(sev_path, fix)

    freq = pd.read_csv(freq_path)
    sev = pd.read_csv(sev_path)
    logger.info("Loaded MTPL1: %d policies, %d claims", len(freq), len(sev))
    return freq, sev


def load_mtpl2_raw(raw_dir: str = config.RAW_DIR, allow_download: bool = True) -> tuple[pd.DataFrame, pd.DataFrame]:
    freq_path = os.path.join(raw_dir, config.MTPL2_FREQ_FILE)
    sev_path = os.path.join(raw_dir, config.MTPL2_SEV_FILE)

    if os.path.exists(freq_path) and os.path.exists(sev_path):
        freq = pd.read_csv(freq_path)
        sev = pd.read_csv(sev_path)
    elif allow_download:
        from sklearn.datasets import fetch_openml

        logger.info("MTPL2 CSVs not found in %s, fetching from OpenML", raw_dir)
        freq = fetch_openml(data_id=config.MTPL2_FREQ_OPENML_ID, as_frame=True, parser="auto").frame
        sev = fetch_openml(data_id=config.MTPL2_SEV_OPENML_ID, as_frame=True, parser="auto").frame
    else:
        fix = "Place freMTPL2freq.csv and freMTPL2sev.csv in data/raw/ or allow the OpenML download."
        require_file(freq_path, fix)
        require_file(sev_path, fix)

    logger.info("Loaded MTPL2: %d policies, %d claims", len(freq), len(sev))
    return freq, sev


# ---------------- Normalisation ---------------- #

def normalise_key(s: pd.Series) -> pd.Series:
    """
    Policy keys as strings. MTPL2 stores IDpol as a float in the policy
    table and as an int in the claim table, so numeric keys go through int
    first to make 1.0 and 1 the same key.
    """
    num = pd.to_numeric(s, errors="coerce")
    if num.notna().all():
        return num.astype("int64").astype(str)
    return s.astype(str).str.strip()


def normalise_policies(freq: pd.DataFrame, rename_map: dict) -> pd.DataFrame:
    require_columns(freq, list(rename_map), "policy table")

    df = freq.rename(columns=rename_map)[list(rename_map.values())].copy()
    df["policy_id"] = normalise_key(df["policy_id"])

    to_num(df, config.NUMERIC_COLS)

    for c in config.CATEGORICAL_COLS:
        if c in df.columns:
            df[c] = df[c].where(df[c].isna(), df[c].astype(str).str.strip().str.strip("'"))

    if "region" in df.columns:
        df["region"] = df["region"].replace(config.REGION_CODE_NAMES)

    df["claim_nb_reported"] = df["claim_nb_reported"].fillna(0).astype(int)

    dupes = df["policy_id"].duplicated()
    if dupes.any():
        raise ValueError(f"Policy table has {int(dupes.sum()):,} duplicated policy ids")

    return df


def normalise_claims(sev: pd.DataFrame, key: str) -> pd.DataFrame:
    require_columns(sev, [key, "ClaimAmount"], "claim table")

    claims = sev.rename(columns={key: "policy_id", "ClaimAmount": "claim_amount"})
    claims = claims[["policy_id", "claim_amount"]].copy()
    claims["policy_id"] = normalise_key(claims["policy_id"])
    to_num(claims, ["claim_amount"])

    n_before = len(claims)
    claims = claims.dropna(subset=["claim_amount"]).reset_index(drop=True)
    if len(claims) < n_before:
        logger.warning("Dropped %d claims without an amount", n_before - len(claims))

    return claims


# ---------------- Join ---------------- #

def find_orphan_claims(policies: pd.DataFrame, claims: pd.DataFrame) -> pd.DataFrame:
    return claims[~claims["policy_id"].isin(policies["policy_id"])].copy()


def patch_orphan_policies(policies: pd.DataFrame, claims: pd.DataFrame,
                          max_orphans: int = config.MAX_ORPHAN_POLICIES) -> pd.DataFrame:
    """
    Append a zero-history policy for every claim key missing from the policy
    table. The orphan policies get no risk factors, no reported claims and
    ORPHAN_EXPOSURE years at risk.
    """
    orphan_ids = find_orphan_claims(policies, claims)["policy_id"].drop_duplicates()

    if len(orphan_ids) > max_orphans:
        raise ValueError(
            f"{len(orphan_ids):,} claim keys have no policy record (limit {max_orphans:,}); "
            f"check the key normalisation before patching"
        )

    base = policies.assign(is_orphan=False)
    if len(orphan_ids) == 0:
        return base

    logger.warning("Patching %d orphan claim keys in as policies: %s",
                   len(orphan_ids), ", ".join(orphan_ids.head(10)))

    patch = pd.DataFrame({
        "policy_id": orphan_ids.to_numpy(),
        "exposure": config.ORPHAN_EXPOSURE,
        "claim_nb_reported": 0,
        "is_orphan": True,
    })
    return pd.concat([base, patch], ignore_index=True)


def nest_claims(policies: pd.DataFrame, claims: pd.DataFrame) -> pd.DataFrame:
    amounts = claims.groupby("policy_id")["claim_amount"].agg(list)

    df = policies.copy()
    df["claim_amounts"] = [
        v if isinstance(v, list) else []
        for v in df["policy_id"].map(amounts)
    ]
    df["claim_count"] = df["claim_amounts"].map(len).astype(int)
    df["claim_total"] = df["claim_amounts"].map(lambda v: float(np.sum(v))).astype(float)
    return df


def unnest_claims(policies: pd.DataFrame) -> pd.DataFrame:
    claims = (
        policies[["policy_id", "claim_amounts"]]
        .explode("claim_amounts")
        .dropna(subset=["claim_amounts"])
        .rename(columns={"claim_amounts": "claim_amount"})
    )
    claims["claim_amount"] = claims["claim_amount"].astype(float)
    return claims.reset_index(drop=True)


def claim_count_mismatches(policies: pd.DataFrame) -> pd.DataFrame:
    """Policies whose claim line-items disagree with the reported ClaimNb."""
    return policies[policies["claim_count"] != policies["claim_nb_reported"]].copy()


def construct_dataset(freq: pd.DataFrame, sev: pd.DataFrame, rename_map: dict, key: str,
                      max_orphans: int = config.MAX_ORPHAN_POLICIES) -> pd.DataFrame:
    policies = normalise_policies(freq, rename_map)
    claims = normalise_claims(sev, key)
    policies = patch_orphan_policies(policies, claims, max_orphans=max_orphans)
    return nest_claims(policies, claims)


# ---------------- Hand-off files ---------------- #

def write_dataset(df: pd.DataFrame, path: str) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    df.to_parquet(path, index=False)
    return path


def read_dataset(path: str) -> pd.DataFrame:
    require_file(path, "Run construct_datasets first to build the merged tables.")
    return pd.read_parquet(path)


def load_dataset(name: str) -> pd.DataFrame:
    if name not in config.DATASET_FILES:
        raise ValueError(f"Unknown dataset '{name}', expected one of {sorted(config.DATASET_FILES)}")
    return read_dataset(config.DATASET_FILES[name])
