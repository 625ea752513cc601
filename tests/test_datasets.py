import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import pandas as pd

from mtpl_modelling import config
from mtpl_modelling.datasets import (
    claim_count_mismatches,
    construct_dataset,
    find_orphan_claims,
    load_mtpl1_raw,
    load_mtpl2_raw,
    nest_claims,
    normalise_claims,
    normalise_key,
    normalise_policies,
    patch_orphan_policies,
    read_dataset,
    unnest_claims,
    write_dataset,
)


def make_mtpl2_freq():
    return pd.DataFrame({
        "IDpol": [1.0, 3.0, 5.0, 10.0],
        "ClaimNb": [1, 0, 2, 1],
        "Exposure": [0.1, 0.77, 0.75, 0.09],
        "Area": ["'D'", "'B'", "'B'", "'E'"],
        "VehPower": [5, 5, 6, 7],
        "VehAge": [0, 0, 2, 0],
        "DrivAge": [55, 55, 52, 46],
        "BonusMalus": [50, 50, 50, 50],
        "VehBrand": ["'B12'", "'B12'", "'B12'", "'B12'"],
        "VehGas": ["'Regular'", "'Regular'", "'Diesel'", "'Diesel'"],
        "Density": [1217, 1217, 54, 76],
        "Region": ["'R82'", "'R82'", "'R22'", "'R72'"],
    })


def make_mtpl2_sev():
    # policy 5 has two claims, 10 has none recorded, 99 has no policy record
    return pd.DataFrame({
        "IDpol": [1, 5, 5, 99],
        "ClaimAmount": [995.2, 1204.0, 302.5, 1500.0],
    })


class TestNormalisation(unittest.TestCase):
    def test_normalise_key_float_and_int_match(self):
        a = normalise_key(pd.Series([1.0, 139.0]))
        b = normalise_key(pd.Series([1, 139]))
        self.assertEqual(a.tolist(), ["1", "139"])
        self.assertEqual(a.tolist(), b.tolist())

    def test_normalise_key_strings(self):
        self.assertEqual(normalise_key(pd.Series([" 90125", "A12"])).tolist(), ["90125", "A12"])

    def test_normalise_policies(self):
        df = normalise_policies(make_mtpl2_freq(), config.MTPL2_RENAME)
        self.assertEqual(df["policy_id"].tolist(), ["1", "3", "5", "10"])
        self.assertEqual(df["fuel"].tolist(), ["Regular", "Regular", "Diesel", "Diesel"])
        self.assertEqual(df["region"].tolist(), ["Rhone-Alpes", "Rhone-Alpes", "Picardie", "Aquitaine"])
        self.assertEqual(df["vehicle_power"].tolist(), ["5", "5", "6", "7"])
        self.assertEqual(df["claim_nb_reported"].tolist(), [1, 0, 2, 1])

    def test_normalise_policies_keeps_missing_categories(self):
        freq = make_mtpl2_freq()
        freq.loc[1, "VehGas"] = None
        freq.loc[2, "Region"] = float("nan")
        df = normalise_policies(freq, config.MTPL2_RENAME)
        self.assertTrue(pd.isna(df.loc[1, "fuel"]))
        self.assertTrue(pd.isna(df.loc[2, "region"]))
        self.assertEqual(df.loc[0, "fuel"], "Regular")
        self.assertEqual(int(df["fuel"].isna().sum()), 1)

    def test_normalise_policies_missing_column(self):
        with self.assertRaises(ValueError):
            normalise_policies(make_mtpl2_freq().drop(columns="Exposure"), config.MTPL2_RENAME)

    def test_normalise_policies_duplicate_ids(self):
        freq = pd.concat([make_mtpl2_freq(), make_mtpl2_freq().head(1)], ignore_index=True)
        with self.assertRaises(ValueError):
            normalise_policies(freq, config.MTPL2_RENAME)

    def test_normalise_claims_drops_missing_amounts(self):
        sev = pd.DataFrame({"IDpol": [1, 2], "ClaimAmount": ["1.2E3", None]})
        claims = normalise_claims(sev, "IDpol")
        self.assertEqual(claims["policy_id"].tolist(), ["1"])
        self.assertAlmostEqual(claims["claim_amount"].iloc[0], 1200.0)


class TestJoin(unittest.TestCase):
    def setUp(self):
        self.policies = normalise_policies(make_mtpl2_freq(), config.MTPL2_RENAME)
        self.claims = normalise_claims(make_mtpl2_sev(), "IDpol")

    def test_find_orphans(self):
        orphans = find_orphan_claims(self.policies, self.claims)
        self.assertEqual(orphans["policy_id"].tolist(), ["99"])

    def test_patch_orphans(self):
        patched = patch_orphan_policies(self.policies, self.claims)
        self.assertEqual(len(patched), 5)
        orphan = patched[patched["is_orphan"]].iloc[0]
        self.assertEqual(orphan["policy_id"], "99")
        self.assertEqual(orphan["claim_nb_reported"], 0)
        self.assertEqual(orphan["exposure"], config.ORPHAN_EXPOSURE)
        self.assertTrue(pd.isna(orphan["region"]))
        self.assertEqual(int(patched["is_orphan"].sum()), 1)

    def test_patch_orphans_limit(self):
        with self.assertRaises(ValueError):
            patch_orphan_policies(self.policies, self.claims, max_orphans=0)

    def test_no_orphans(self):
        claims = self.claims[self.claims["policy_id"] != "99"]
        patched = patch_orphan_policies(self.policies, claims)
        self.assertEqual(len(patched), 4)
        self.assertFalse(patched["is_orphan"].any())

    def test_nest_claims(self):
        df = nest_claims(patch_orphan_policies(self.policies, self.claims), self.claims).set_index("policy_id")
        self.assertEqual(df.loc["5", "claim_count"], 2)
        self.assertAlmostEqual(df.loc["5", "claim_total"], 1506.5)
        self.assertEqual(df.loc["3", "claim_count"], 0)
        self.assertEqual(df.loc["3", "claim_amounts"], [])
        self.assertEqual(df.loc["99", "claim_count"], 1)

    def test_every_claim_resolves_after_construction(self):
        df = construct_dataset(make_mtpl2_freq(), make_mtpl2_sev(), config.MTPL2_RENAME, "IDpol")
        self.assertTrue(self.claims["policy_id"].isin(df["policy_id"]).all())
        self.assertEqual(df["claim_count"].sum(), len(self.claims))

    def test_roundtrip_claim_count(self):
        df = construct_dataset(make_mtpl2_freq(), make_mtpl2_sev(), config.MTPL2_RENAME, "IDpol")
        claims = unnest_claims(df)
        recount = claims.groupby("policy_id").size().reindex(df["policy_id"], fill_value=0)
        self.assertEqual(recount.tolist(), df["claim_count"].tolist())
        resum = claims.groupby("policy_id")["claim_amount"].sum().reindex(df["policy_id"], fill_value=0.0)
        self.assertEqual(resum.round(6).tolist(), df["claim_total"].round(6).tolist())

    def test_claim_count_mismatches(self):
        df = construct_dataset(make_mtpl2_freq(), make_mtpl2_sev(), config.MTPL2_RENAME, "IDpol")
        mismatched = claim_count_mismatches(df)
        # policy 10 reports a claim with no amount, 99 is an orphan
        self.assertEqual(sorted(mismatched["policy_id"]), ["10", "99"])


class TestFiles(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_parquet_roundtrip_keeps_nested_claims(self):
        df = construct_dataset(make_mtpl2_freq(), make_mtpl2_sev(), config.MTPL2_RENAME, "IDpol")
        path = write_dataset(df, os.path.join(self.test_dir, "data", "mtpl2_data.parquet"))
        loaded = read_dataset(path)
        self.assertEqual(loaded["claim_count"].tolist(), df["claim_count"].tolist())
        claims = unnest_claims(loaded)
        self.assertEqual(len(claims), int(df["claim_count"].sum()))

    def test_read_missing_dataset(self):
        with self.assertRaises(FileNotFoundError) as ctx:
            read_dataset(os.path.join(self.test_dir, "nope.parquet"))
        self.assertIn("construct_datasets", str(ctx.exception))

    def test_load_mtpl1_raw(self):
        pd.DataFrame({"PolicyID": [1], "ClaimNb": [0], "Exposure": [0.5]}).to_csv(
            os.path.join(self.test_dir, config.MTPL1_FREQ_FILE), index=False)
        pd.DataFrame({"PolicyID": [1], "ClaimAmount": [10.0]}).to_csv(
            os.path.join(self.test_dir, config.MTPL1_SEV_FILE), index=False)
        freq, sev = load_mtpl1_raw(self.test_dir)
        self.assertEqual(len(freq), 1)
        self.assertEqual(len(sev), 1)

    def test_load_mtpl1_raw_missing(self):
        with self.assertRaises(FileNotFoundError):
            load_mtpl1_raw(self.test_dir)

    def test_load_mtpl2_raw_without_download(self):
        with self.assertRaises(FileNotFoundError):
            load_mtpl2_raw(self.test_dir, allow_download=False)

    @patch("sklearn.datasets.fetch_openml")
    def test_load_mtpl2_raw_downloads(self, mock_fetch):
        mock_fetch.side_effect = [
            MagicMock(frame=make_mtpl2_freq()),
            MagicMock(frame=make_mtpl2_sev()),
        ]
        freq, sev = load_mtpl2_raw(self.test_dir)
        self.assertEqual(mock_fetch.call_count, 2)
        self.assertEqual(mock_fetch.call_args_list[0].kwargs["data_id"], config.MTPL2_FREQ_OPENML_ID)
        self.assertEqual(len(freq), 4)
        self.assertEqual(len(sev), 4)


if __name__ == "__main__":
    unittest.main()
