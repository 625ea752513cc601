import os
import shutil
import tempfile
import unittest

import numpy as np
import pandas as pd

from mtpl_modelling.utils import (
    convert_counts_string,
    ensure_dirs,
    require_columns,
    require_file,
    to_num,
    verbosely,
)


class TestConvertCountsString(unittest.TestCase):
    def test_caps_and_labels(self):
        out = convert_counts_string([0, 1, 2, 3, 5], 3)
        self.assertEqual(out.tolist(), ["0", "1", "2", "3+", "3+"])

    def test_keeps_index(self):
        s = pd.Series([4, 0], index=[10, 20])
        out = convert_counts_string(s, 2)
        self.assertEqual(out.index.tolist(), [10, 20])
        self.assertEqual(out.tolist(), ["2+", "0"])


class TestVerbosely(unittest.TestCase):
    def test_logs_when_drawn(self):
        f = verbosely(lambda x: x * 2, show_prob=1.0)
        with self.assertLogs("mtpl_modelling.utils", level="INFO") as logs:
            self.assertEqual(f(21), 42)
        self.assertIn("Running function for 21", logs.output[0])

    def test_silent_when_not_drawn(self):
        f = verbosely(lambda x, y: x + y, show_prob=0.0)
        with self.assertNoLogs("mtpl_modelling.utils", level="INFO"):
            self.assertEqual(f(1, 2), 3)

    def test_uses_given_rng(self):
        calls = []
        f = verbosely(calls.append, show_prob=0.5, rng=np.random.default_rng(0))
        for i in range(5):
            f(i)
        self.assertEqual(calls, list(range(5)))


class TestHelpers(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_ensure_dirs(self):
        a = os.path.join(self.test_dir, "a", "b")
        c = os.path.join(self.test_dir, "c")
        ensure_dirs(a, c)
        self.assertTrue(os.path.isdir(a))
        self.assertTrue(os.path.isdir(c))

    def test_to_num(self):
        df = pd.DataFrame({"x": ["1.5E-1", "bad"], "y": ["a", "b"]})
        to_num(df, ["x", "missing"])
        self.assertAlmostEqual(df["x"].iloc[0], 0.15)
        self.assertTrue(np.isnan(df["x"].iloc[1]))
        self.assertEqual(df["y"].tolist(), ["a", "b"])

    def test_require_columns(self):
        df = pd.DataFrame({"a": [1]})
        require_columns(df, ["a"], "test")
        with self.assertRaises(ValueError) as ctx:
            require_columns(df, ["a", "b"], "test")
        self.assertIn("'b'", str(ctx.exception))

    def test_require_file(self):
        with self.assertRaises(FileNotFoundError) as ctx:
            require_file(os.path.join(self.test_dir, "x.csv"), "Run step 1 first.")
        self.assertIn("Fix: Run step 1 first.", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
