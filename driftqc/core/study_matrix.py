"""
Study matrix construction and validation.

A study matrix is an AnnData object (samples x metabolites) whose obs carries
the sample class (``Sample`` or ``QC``), the batch and the injection run order;
the sample id is the obs name. Correction and metric services only read it and
always work on copies.
"""

from typing import List, Tuple

import anndata
import numpy as np
import pandas as pd

from driftqc.config.constants import (
    BATCH_KEY,
    CLASS_KEY,
    N_METADATA_COLUMNS,
    QC_CLASS,
    RUN_ORDER_KEY,
    SAMPLE_CLASS,
    VALID_CLASSES,
)
from driftqc.core.exceptions import InsufficientQCError, StudyMatrixError
from driftqc.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = [
    "build_study_matrix",
    "from_anndata",
    "validate_study_matrix",
    "get_dense_matrix",
    "qc_mask",
    "sample_mask",
    "batch_partitions",
    "require_min_qc",
]

_CLASS_ALIASES = {label.lower(): label for label in VALID_CLASSES}


def _normalize_class_labels(values: pd.Series) -> pd.Series:
    stripped = values.astype(str).str.strip()
    normalized = stripped.str.lower().map(_CLASS_ALIASES)
    unknown = sorted(set(stripped[normalized.isna()]))
    if unknown:
        raise StudyMatrixError(
            f"Unknown sample class label(s): {unknown}. "
            f"Expected one of: {', '.join(VALID_CLASSES)}"
        )
    return normalized


def build_study_matrix(table: pd.DataFrame) -> anndata.AnnData:
    """
    Build a study matrix from a parsed table.

    Columns 1-4 are read by position as sample id, class, batch and run order;
    every remaining column is a metabolite. Non-numeric feature entries become
    NaN.

    Args:
        table: Parsed study table, one row per injection

    Returns:
        anndata.AnnData: validated study matrix

    Raises:
        StudyMatrixError: If the table layout or metadata is invalid
    """
    if table.shape[1] <= N_METADATA_COLUMNS:
        raise StudyMatrixError(
            f"Study table needs {N_METADATA_COLUMNS} metadata columns followed by "
            f"at least one feature column; got {table.shape[1]} column(s)"
        )

    meta = table.iloc[:, :N_METADATA_COLUMNS]
    features = table.iloc[:, N_METADATA_COLUMNS:]

    sample_ids = meta.iloc[:, 0].astype(str).str.strip()
    obs = pd.DataFrame(
        {
            CLASS_KEY: meta.iloc[:, 1].values,
            BATCH_KEY: meta.iloc[:, 2].values,
            RUN_ORDER_KEY: meta.iloc[:, 3].values,
        },
        index=pd.Index(sample_ids.values),
    )

    X = features.apply(pd.to_numeric, errors="coerce").to_numpy(dtype=np.float64)
    var = pd.DataFrame(index=pd.Index([str(c) for c in features.columns]))

    adata = anndata.AnnData(X=X, obs=obs, var=var)
    return _finalize(adata)


def from_anndata(
    adata: anndata.AnnData,
    class_key: str = CLASS_KEY,
    batch_key: str = BATCH_KEY,
    run_order_key: str = RUN_ORDER_KEY,
) -> anndata.AnnData:
    """
    Adapt an existing AnnData into a study matrix (copy).

    Args:
        adata: AnnData with class, batch and run order columns in obs
        class_key: obs column holding the sample class
        batch_key: obs column holding the batch label
        run_order_key: obs column holding the injection order

    Returns:
        anndata.AnnData: validated study matrix using the canonical obs keys
    """
    missing = [k for k in (class_key, batch_key, run_order_key) if k not in adata.obs.columns]
    if missing:
        raise StudyMatrixError(f"obs column(s) not found: {missing}")

    study = adata.copy()
    study.obs[CLASS_KEY] = adata.obs[class_key].values
    study.obs[BATCH_KEY] = adata.obs[batch_key].values
    study.obs[RUN_ORDER_KEY] = adata.obs[run_order_key].values
    study.X = get_dense_matrix(study)
    return _finalize(study)


def _finalize(adata: anndata.AnnData) -> anndata.AnnData:
    adata.obs[CLASS_KEY] = _normalize_class_labels(adata.obs[CLASS_KEY]).values

    run_order = pd.to_numeric(adata.obs[RUN_ORDER_KEY], errors="coerce")
    if run_order.isna().any():
        bad = adata.obs_names[run_order.isna().values].tolist()
        raise StudyMatrixError(f"Non-numeric run order for sample(s): {bad}")
    if not np.all(np.mod(run_order.values, 1) == 0):
        raise StudyMatrixError("Run order values must be integers")
    adata.obs[RUN_ORDER_KEY] = run_order.astype(np.int64).values

    if adata.obs[BATCH_KEY].isna().any():
        raise StudyMatrixError("Every sample must belong to a batch")
    adata.obs[BATCH_KEY] = adata.obs[BATCH_KEY].astype(str).str.strip().values

    validate_study_matrix(adata)
    logger.debug(
        f"Study matrix: {adata.n_obs} samples x {adata.n_vars} features, "
        f"{adata.obs[BATCH_KEY].nunique()} batch(es)"
    )
    return adata


def validate_study_matrix(adata: anndata.AnnData) -> None:
    """
    Check the structural invariants of a study matrix.

    Raises:
        StudyMatrixError: On missing obs columns, unknown classes, duplicate
            sample ids, duplicate feature names or repeated run orders
            within a batch
    """
    for key in (CLASS_KEY, BATCH_KEY, RUN_ORDER_KEY):
        if key not in adata.obs.columns:
            raise StudyMatrixError(f"Study matrix is missing obs['{key}']")

    classes = adata.obs[CLASS_KEY].astype(str)
    unknown = sorted(set(classes) - set(VALID_CLASSES))
    if unknown:
        raise StudyMatrixError(f"Unknown sample class label(s): {unknown}")

    if not adata.obs_names.is_unique:
        dupes = adata.obs_names[adata.obs_names.duplicated()].unique().tolist()
        raise StudyMatrixError(f"Duplicate sample id(s): {dupes}")

    if not adata.var_names.is_unique:
        dupes = adata.var_names[adata.var_names.duplicated()].unique().tolist()
        raise StudyMatrixError(f"Duplicate feature name(s): {dupes}")

    duplicated = adata.obs.duplicated(subset=[BATCH_KEY, RUN_ORDER_KEY], keep=False)
    if duplicated.any():
        offenders = adata.obs.loc[duplicated, [BATCH_KEY, RUN_ORDER_KEY]]
        first = offenders.iloc[0]
        raise StudyMatrixError(
            f"Run order {first[RUN_ORDER_KEY]} repeated within batch "
            f"'{first[BATCH_KEY]}' ({int(duplicated.sum())} rows affected)"
        )


def get_dense_matrix(adata: anndata.AnnData) -> np.ndarray:
    """Return X as a dense float64 array (always a copy)."""
    if hasattr(adata.X, "toarray"):
        return adata.X.toarray().astype(np.float64)
    return np.array(adata.X, dtype=np.float64)


def qc_mask(adata: anndata.AnnData) -> np.ndarray:
    return (adata.obs[CLASS_KEY].astype(str) == QC_CLASS).to_numpy()


def sample_mask(adata: anndata.AnnData) -> np.ndarray:
    return (adata.obs[CLASS_KEY].astype(str) == SAMPLE_CLASS).to_numpy()


def batch_partitions(adata: anndata.AnnData) -> List[Tuple[str, np.ndarray]]:
    """
    Split row positions by batch.

    Returns:
        List of (batch label, positional row indices) in order of first
        appearance of each batch
    """
    labels = adata.obs[BATCH_KEY].astype(str).to_numpy()
    partitions = []
    for batch in pd.unique(labels):
        partitions.append((batch, np.flatnonzero(labels == batch)))
    return partitions


def require_min_qc(adata: anndata.AnnData, min_qc: int, detail: str = "") -> None:
    """
    Raise if any batch holds fewer than ``min_qc`` QC rows.

    Raises:
        InsufficientQCError: naming the first offending batch
    """
    is_qc = qc_mask(adata)
    for batch, rows in batch_partitions(adata):
        n_qc = int(is_qc[rows].sum())
        if n_qc < min_qc:
            raise InsufficientQCError(batch, required=min_qc, available=n_qc, detail=detail)
