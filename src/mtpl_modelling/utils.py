import functools
import logging
import os

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def ensure_dirs(*dirs: str) -> None:
    for d in dirs:
        os.makedirs(d, exist_ok=True)


def to_num(df: pd.DataFrame, cols: list[str]) -> pd.DataFrame:
    for c in cols:
        if c in df.columns:
            df[c] = pd.to_numeric(df[c], errors="coerce")  # handles scientific notation like 1.2E-3
    return df


def require_columns(df: pd.DataFrame, cols: list[str], source: str) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required column in {source}: {missing}")


def require_file(path: str, fix: str | None = None) -> None:
    if not os.path.exists(path):
        msg = f"Missing required file:\n  {path}"
        if fix:
            msg += f"\n\nFix: {fix}"
        raise FileNotFoundError(msg)


def convert_counts_string(x, max_count: int) -> pd.Series:
    """
    Cap integer counts at max_count and label them as strings, so the
    capped bucket reads "3+" rather than "3".
    """
    s = pd.Series(x)
    capped = np.minimum(s.to_numpy(), max_count).astype(int).astype(str)
    cap_label = str(max_count)
    return pd.Series(
        np.where(capped == cap_label, cap_label + "+", capped),
        index=s.index,
    )


def verbosely(f, show_prob: float = 0.01, rng: np.random.Generator | None = None):
    """Wrap a per-item function so a random fraction of calls gets logged."""
    rng = rng or np.random.default_rng()

    @functools.wraps(f)
    def wrapper(x, *args, **kwargs):
        if rng.random() < show_prob:
            logger.info("Running function for %s", x)
        return f(x, *args, **kwargs)

    return wrapper
