from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from .errors import FatalConfigError
from .runner import AnalysisResult
from .stats import RESULT_COLUMNS, sort_results

logger = logging.getLogger(__name__)


def _read_table(path: Path, sheet_name: str | int = 0) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix in {".xlsx", ".xls"}:
        return pd.read_excel(path, sheet_name=sheet_name)
    sep = "," if suffix == ".csv" else "\t"
    return pd.read_csv(path, sep=sep)


def _norm_col(c: object) -> str:
    # strip whitespace; preserve internal chars
    return str(c).strip()


def _norm_cols(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [_norm_col(c) for c in df.columns]
    return df


def _index_by(df: pd.DataFrame, id_col: Optional[str], path: Path, name: str) -> pd.DataFrame:
    if id_col is None:
        id_col = df.columns[0]
    elif id_col not in df.columns:
        raise FatalConfigError(f"{path} missing '{id_col}' column.")
    df[id_col] = df[id_col].astype(str).str.strip()
    df = df.set_index(id_col)
    df.index.name = name
    return df


def load_feature_table(
    path: str | Path,
    id_col: Optional[str] = None,
    sheet_name: str | int = 0,
) -> pd.DataFrame:
    """
    Reads a count table (.tsv, .txt, .csv or .xlsx).

    Expected:
      - first column (or ``id_col``) holds the row IDs.
      - remaining columns are numeric, non-negative counts; empty cells
        stay missing and the feature is skipped at fit time.
    Orientation is not interpreted here; see ``align_samples``.
    """
    path = Path(path)
    df = _norm_cols(_read_table(path, sheet_name=sheet_name))
    df = _index_by(df, id_col, path, "ID")
    try:
        df = df.apply(pd.to_numeric, errors="raise")
    except (ValueError, TypeError) as e:
        raise FatalConfigError(f"{path} has non-numeric counts: {e}") from e
    logger.info(f"Loaded feature table {path.name}: {df.shape[0]} rows x {df.shape[1]} columns")
    return df


def load_metadata(
    path: str | Path,
    sample_id_col: Optional[str] = None,
    sheet_name: str | int = 0,
) -> pd.DataFrame:
    """
    Reads a sample metadata table (.tsv, .txt, .csv or .xlsx).

    Expected:
      - first column (or ``sample_id_col``) holds sample IDs.
      - remaining columns are covariates; an optional normalization column
        (default name ``scale_factor``) holds per-sample offsets.
    """
    path = Path(path)
    meta = _norm_cols(_read_table(path, sheet_name=sheet_name))
    meta = _index_by(meta, sample_id_col, path, "sample_id")
    logger.info(f"Loaded metadata {path.name}: {meta.shape[0]} samples x {meta.shape[1]} covariates")
    return meta


def write_results(result: AnalysisResult, output_dir: str | Path) -> tuple[Path, Path]:
    """
    Writes ``all_results.tsv`` (display order) and ``skipped_features.tsv``.

    Returns the two paths.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    results_path = output_dir / "all_results.tsv"
    skipped_path = output_dir / "skipped_features.tsv"

    table = sort_results(result.results, result.spec.fixed_effects)
    table[RESULT_COLUMNS].to_csv(results_path, sep="\t", index=False, na_rep="NA")
    result.skipped.to_csv(skipped_path, sep="\t", index=False, na_rep="NA")

    logger.info(f"Results saved to {output_dir}")
    return results_path, skipped_path
