import logging
import os

import pandas as pd

from . import config
from .datasets import (
    claim_count_mismatches,
    construct_dataset,
    load_mtpl1_raw,
    load_mtpl2_raw,
    unnest_claims,
    write_dataset,
)
from .utils import ensure_dirs

logger = logging.getLogger(__name__)

REPORT = os.path.join(config.LOG_DIR, "construct_datasets_report.txt")


def dataset_checks(df: pd.DataFrame) -> dict:
    # round trip: line-items back to counts must reproduce claim_count
    claims = unnest_claims(df)
    recount = claims.groupby("policy_id").size().reindex(df["policy_id"], fill_value=0)
    roundtrip_ok = bool((recount.to_numpy() == df["claim_count"].to_numpy()).all())

    mismatch = claim_count_mismatches(df)
    return {
        "policies": len(df),
        "claims": int(df["claim_count"].sum()),
        "orphan_policies": int(df["is_orphan"].sum()),
        "exposure": float(df["exposure"].sum()),
        "claim_total": float(df["claim_total"].sum()),
        "claimnb_mismatch": len(mismatch),
        "no_lineitems": int(((df["claim_nb_reported"] > 0) & (df["claim_count"] == 0)).sum()),
        "roundtrip_ok": roundtrip_ok,
    }


def main(raw_dir: str = config.RAW_DIR, allow_download: bool = True):
    ensure_dirs(config.DATA_DIR, config.LOG_DIR)

    builds = {
        "mtpl1": (load_mtpl1_raw(raw_dir), config.MTPL1_RENAME, config.MTPL1_KEY),
        "mtpl2": (load_mtpl2_raw(raw_dir, allow_download=allow_download), config.MTPL2_RENAME, config.MTPL2_KEY),
    }

    results = {}
    for name, ((freq, sev), rename_map, key) in builds.items():
        df = construct_dataset(freq, sev, rename_map, key)
        path = write_dataset(df, config.DATASET_FILES[name])
        results[name] = (path, dataset_checks(df))
        logger.info("Built %s: %d policies", name, len(df))

    with open(REPORT, "w", encoding="utf-8") as f:
        f.write("construct_datasets.py report\n")
        f.write("============================\n\n")
        for name, (path, chk) in results.items():
            f.write(f"{name}:\n")
            f.write(f"  policies:        {chk['policies']:,}\n")
            f.write(f"  claims:          {chk['claims']:,}\n")
            f.write(f"  total exposure:  {chk['exposure']:,.2f}\n")
            f.write(f"  total claimed:   {chk['claim_total']:,.2f}\n")
            f.write(f"  orphan policies patched in: {chk['orphan_policies']:,}\n\n")
            f.write("  Consistency checks:\n")
            f.write(f"    claim_count != reported ClaimNb : {chk['claimnb_mismatch']:,}\n")
            f.write(f"    ClaimNb>0 but no claim records  : {chk['no_lineitems']:,}\n")
            f.write(f"    claim_count round trip          : {'OK' if chk['roundtrip_ok'] else 'FAILED'}\n\n")
        f.write("Output files:\n")
        for path, _ in results.values():
            f.write(f"  {path}\n")
        f.write(f"  {REPORT}\n")

    print("Done.")
    for path, _ in results.values():
        print("Wrote:", path)
    print("Wrote:", REPORT)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
