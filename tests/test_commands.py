"""Tests for the altpp_render command."""

import json
import sys

import pandas as pd
import pytest

from altpp.commands import read_data, read_spec, render, render_fn

SPEC_YAML = """
mapping:
  x: x
  y: y
  colour: grp
width: 320
layers:
  - stat: identity
    geom: point
  - stat: group_counts
    geom: text_npc
    after_stat:
      label: "{grp_label}: {count}"
"""


@pytest.fixture
def files(tmp_path, two_groups):
    data_file = tmp_path / "data.csv"
    two_groups.to_csv(data_file, index=False)
    spec_file = tmp_path / "chart.yaml"
    spec_file.write_text(SPEC_YAML)
    return spec_file, data_file


class TestRender:
    def test_read_data(self, files, tmp_path, two_groups):
        _, data_file = files
        df = read_data(str(data_file))
        assert isinstance(df, pd.DataFrame)
        assert len(df) == len(two_groups)

        two_groups.to_parquet(tmp_path / "data.parquet")
        assert len(read_data(str(tmp_path / "data.parquet"))) == len(two_groups)

        with pytest.raises(ValueError, match="Unsupported data file extension"):
            read_data(str(tmp_path / "data.xlsx"))

    def test_read_spec(self, files, tmp_path):
        spec_file, _ = files
        spec = read_spec(str(spec_file))
        assert spec.width == 320
        assert [ls.stat for ls in spec.layers] == ["identity", "group_counts"]

        bad = tmp_path / "bad.yaml"
        bad.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="must be a mapping"):
            read_spec(str(bad))

    @pytest.mark.integration
    def test_render_fn(self, files, tmp_path, capsys):
        spec_file, data_file = files
        out_file = tmp_path / "out.json"
        render_fn(str(spec_file), str(data_file), str(out_file))

        chart = json.loads(out_file.read_text())
        assert chart["width"] == 320
        assert len(chart["layer"]) == 2
        assert "Saved chart" in capsys.readouterr().out

    def test_render_requires_arguments(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["altpp_render", "only_one"])
        with pytest.raises(SystemExit):
            render()
