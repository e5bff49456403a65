"""Unit tests for altpp.utils module."""

import json
import warnings

import numpy as np
import pandas as pd
import polars as pl
import pytest

from altpp.utils import (
    bandwidth_nrd,
    grid_bin,
    is_discrete,
    is_missing,
    kde2d,
    read_json,
    read_yaml,
    to_pandas,
    warn,
)


class TestBasicUtilities:
    """Test basic utility functions."""

    def test_warn_points_at_caller(self):
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            warn("something odd")
        assert len(w) == 1
        assert str(w[0].message) == "something odd"

    def test_is_missing(self):
        assert is_missing(None)
        assert is_missing(np.nan)
        assert is_missing(pd.NA)
        assert not is_missing("a")
        assert not is_missing(0)
        assert not is_missing(len)

    def test_is_discrete(self):
        assert is_discrete(pd.Series(["a", "b"]))
        assert is_discrete(pd.Series(["a", "b"], dtype="category"))
        assert is_discrete(pd.Series([True, False]))
        assert not is_discrete(pd.Series([1.0, 2.0]))
        assert not is_discrete(pd.Series([1, 2]))

    def test_to_pandas(self):
        pdf = pd.DataFrame({"a": [1, 2]})
        assert to_pandas(pdf) is pdf

        res = to_pandas(pl.DataFrame({"a": [1, 2]}))
        assert isinstance(res, pd.DataFrame)
        assert res["a"].tolist() == [1, 2]

        res = to_pandas(pl.DataFrame({"a": [1, 2]}).lazy())
        assert res["a"].tolist() == [1, 2]

        with pytest.raises(ValueError, match="Expected a pandas or polars DataFrame"):
            to_pandas([1, 2])  # type: ignore[arg-type]


class TestDensity:
    """Bandwidth, grid KDE and binning."""

    def test_bandwidth_nrd(self):
        x = np.random.default_rng(5).normal(size=200)
        q1, q3 = np.quantile(x, [0.25, 0.75])
        expected = 4 * 1.06 * min(np.std(x, ddof=1), (q3 - q1) / 1.34) * 200 ** (-0.2)
        assert bandwidth_nrd(x) == pytest.approx(expected)

    def test_kde2d_single_point(self):
        gx, gy, z = kde2d([0.0], [0.0], h=(4.0, 4.0), n=(5, 5), lims=(-2, 2, -2, 2))
        assert gx.tolist() == [-2.0, -1.0, 0.0, 1.0, 2.0]
        assert z.shape == (5, 5)
        assert z[2, 2] == pytest.approx(1 / (2 * np.pi))
        assert z[2, 2] == z.max()

    def test_kde2d_integrates_to_one(self):
        rng = np.random.default_rng(42)
        x, y = rng.normal(size=150), rng.normal(size=150)
        gx, gy, z = kde2d(x, y, h=(bandwidth_nrd(x), bandwidth_nrd(y)), n=(200, 200), lims=(-8, 8, -8, 8))
        area = (gx[1] - gx[0]) * (gy[1] - gy[0])
        assert z.sum() * area == pytest.approx(1.0, abs=0.02)

    def test_kde2d_axes_are_independent(self):
        gx, gy, z = kde2d([0.0], [5.0], h=(4.0, 4.0), n=(3, 11), lims=(-1, 1, 0, 10))
        assert z.shape == (3, 11)
        assert np.argmax(z[1]) == 5

    def test_grid_bin(self):
        grid = np.array([0.0, 1.0, 2.0, 3.0])
        res = grid_bin([0.0, 0.5, 1.0, 1.5, 3.0, -1.0, 5.0], grid)
        assert res.tolist() == [0, 0, 0, 1, 2, 0, 2]


class TestFiles:
    """Config readers."""

    def test_read_json(self, tmp_path):
        fname = tmp_path / "spec.json"
        fname.write_text(json.dumps({"width": 200}))
        assert read_json(str(fname)) == {"width": 200}

        with pytest.raises(FileNotFoundError, match=".json extension"):
            read_json(str(tmp_path / "spec.txt"))

    def test_read_yaml(self, tmp_path):
        for ext in ["yaml", "yml"]:
            fname = tmp_path / f"spec.{ext}"
            fname.write_text("width: 200\nlayers:\n  - stat: panel_counts\n")
            assert read_yaml(str(fname)) == {"width": 200, "layers": [{"stat": "panel_counts"}]}

        with pytest.raises(FileNotFoundError, match=".yaml extension"):
            read_yaml(str(tmp_path / "spec.json"))
