"""CLI Commands
-------------

Command-line entry points shipped with the package.  `altpp_render` turns a
YAML/JSON chart spec plus a CSV/parquet data file into an HTML or JSON chart.
"""

__all__ = [
    "read_data",
    "read_spec",
    "render_fn",
    "render",
]

# Keep this list minimal as this py will actually be executed
import logging
import os
import sys

logger = logging.getLogger(__name__)


def read_data(fname: str):  # -> pd.DataFrame
    """Read a CSV or parquet file into pandas (via polars)."""
    import polars as pl

    ext = os.path.splitext(fname)[1].lower()
    if ext == ".csv":
        return pl.read_csv(fname).to_pandas()
    if ext in (".parquet", ".pq"):
        return pl.read_parquet(fname).to_pandas()
    raise ValueError(f"Unsupported data file extension '{ext}' for {fname}")


def read_spec(fname: str):  # -> ChartSpec
    """Read and validate a chart spec from a .yaml or .json file."""
    from altpp.utils import read_json, read_yaml
    from altpp.validation import hard_validate

    raw = read_json(fname) if fname.endswith(".json") else read_yaml(fname)
    if not isinstance(raw, dict):
        raise ValueError(f"Chart spec in {fname} must be a mapping")
    return hard_validate(raw)


def render_fn(spec_file: str, data_file: str, out_file: str) -> None:
    """Render the chart described by ``spec_file`` on ``data_file`` and save it to ``out_file``."""
    import altair as alt

    from altpp.layer import chart_from_spec

    spec = read_spec(spec_file)
    data = read_data(data_file)
    logger.info(f"Rendering {len(spec.layers)} layers on {len(data)} rows from {data_file}")

    alt.data_transformers.disable_max_rows()
    chart = chart_from_spec(spec, data)
    chart.save(out_file)
    print(f"Saved chart to {out_file}")


def render() -> None:
    """CLI entry point: ``altpp_render <spec.yaml|json> <data.csv|parquet> <out.html|json>``."""
    if len(sys.argv) < 4:
        print("Requires three parameters: <spec file> <data file> <output file>")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    render_fn(sys.argv[1], sys.argv[2], sys.argv[3])
