"""
QC-based batch correction service for metabolomics study matrices.

Two alternative correctors remove instrument drift using interspersed QC
injections as references:

- QC-MN (QC median normalization): each injection is divided by the median
  response of its nearest QC injections within the batch, then every feature
  is rescaled by its mean in the uncorrected matrix.
- QC-RSC (QC robust spline correction): per batch and feature, a robust
  cubic smoothing spline is fitted to the QC responses over run order and
  every injection is divided by the fitted curve.

All methods return 3-tuples (AnnData, Dict, AnalysisStep) for provenance
tracking. The input AnnData is never modified.
"""

import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import anndata
import numpy as np
from pydantic import BaseModel, ValidationError

from driftqc.config.constants import (
    ALGORITHM_ALIASES,
    MIN_QC,
    QC_MN,
    QC_RSC,
    RUN_ORDER_KEY,
    VALID_ALGORITHMS,
)
from driftqc.config.settings import QCMNParams, QCRSCParams
from driftqc.core.analysis_ir import AnalysisStep, ParameterSpec
from driftqc.core.exceptions import (
    DriftQCError,
    FitConvergenceError,
    InsufficientQCError,
    InvalidParameterError,
    StudyMatrixError,
)
from driftqc.core.study_matrix import (
    batch_partitions,
    get_dense_matrix,
    qc_mask,
    require_min_qc,
    validate_study_matrix,
)
from driftqc.services.quality.neighbor_index import NeighborIndex
from driftqc.utils.logger import get_logger
from driftqc.utils.smoothing_spline import fit_qc_drift

logger = get_logger(__name__)

PROGRESS_LOG_INTERVAL = 500

CorrectionParams = Union[QCMNParams, QCRSCParams]


class BatchCorrectionError(DriftQCError):
    """Unexpected failure during batch correction."""

    pass


@dataclass
class ColumnFit:
    """Outcome of correcting one feature within one batch."""

    batch: str
    feature: str
    status: str  # "ok" or "failed"
    smoothing_parameter: Optional[float] = None
    n_qc_points: int = 0
    cv_error: Optional[float] = None
    reason: Optional[str] = None
    error: Optional[FitConvergenceError] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch": self.batch,
            "feature": self.feature,
            "status": self.status,
            "smoothing_parameter": self.smoothing_parameter,
            "n_qc_points": self.n_qc_points,
            "cv_error": self.cv_error,
            "reason": self.reason,
        }


@dataclass
class CorrectionResult:
    """Corrected study matrix plus the per-column fit report."""

    matrix: anndata.AnnData
    algorithm: str
    params: CorrectionParams
    stats: Dict[str, Any]
    ir: AnalysisStep
    column_fits: List[ColumnFit] = field(default_factory=list)
    failures: List[FitConvergenceError] = field(default_factory=list)

    @property
    def failed_features(self) -> List[str]:
        """Features whose spline fit failed in at least one batch."""
        seen = []
        for failure in self.failures:
            if failure.feature not in seen:
                seen.append(failure.feature)
        return seen

    @property
    def n_undefined_cells(self) -> int:
        return int(self.stats.get("n_undefined_cells", 0))


def resolve_algorithm(algorithm: str) -> str:
    """Map an algorithm name or alias to its canonical form."""
    if algorithm in VALID_ALGORITHMS:
        return algorithm
    canonical = ALGORITHM_ALIASES.get(str(algorithm).strip().lower())
    if canonical is None:
        raise InvalidParameterError(
            f"Unknown batch correction algorithm: {algorithm}. "
            f"Choose from: {', '.join(VALID_ALGORITHMS)}"
        )
    return canonical


def resolve_params(
    algorithm: str, params: Union[None, Dict[str, Any], BaseModel]
) -> CorrectionParams:
    """Validate correction parameters into the model for ``algorithm``."""
    model = QCMNParams if algorithm == QC_MN else QCRSCParams
    if params is None:
        return model()
    if isinstance(params, model):
        return params
    if isinstance(params, BaseModel):
        raise InvalidParameterError(
            f"{type(params).__name__} given for {algorithm}; expected {model.__name__}"
        )
    try:
        return model(**params)
    except ValidationError as e:
        raise InvalidParameterError(f"Invalid {algorithm} parameters: {e}") from e


class BatchCorrectionService:
    """
    Stateless QC-based drift correction for metabolomics study matrices.

    Each call validates its explicit parameters, corrects a copy of the
    matrix, and reports per-column outcomes.
    """

    def __init__(self):
        """Initialize the batch correction service (stateless)."""
        logger.debug("Initializing stateless BatchCorrectionService")

    # =========================================================================
    # IR creation helpers
    # =========================================================================

    def _create_ir_correct_batch_effects(
        self, algorithm: str, params: CorrectionParams
    ) -> AnalysisStep:
        """Create IR for batch correction."""
        param_dict = params.model_dump()
        if algorithm == QC_MN:
            schema = {
                "n_qc": ParameterSpec(
                    param_type="int", papermill_injectable=True, default_value=5,
                    required=False, validation_rule="2 <= n_qc <= 10",
                    description="Number of nearest QC injections",
                ),
                "include_self": ParameterSpec(
                    param_type="bool", papermill_injectable=False, default_value=True,
                    required=False,
                    description="QC rows may count themselves as neighbours",
                ),
            }
        else:
            schema = {
                "smoothing_parameter": ParameterSpec(
                    param_type="float", papermill_injectable=True, default_value=0.0,
                    required=False, validation_rule="0 <= smoothing_parameter <= 1",
                    description="Spline smoothing parameter; 0 selects by LOO CV",
                ),
                "robust_iterations": ParameterSpec(
                    param_type="int", papermill_injectable=False, default_value=3,
                    required=False, validation_rule="robust_iterations >= 0",
                    description="Bisquare reweighting passes",
                ),
                "candidate_grid": ParameterSpec(
                    param_type="List[float]", papermill_injectable=False,
                    default_value=None, required=False,
                    description="Candidate smoothing parameters for LOO CV",
                ),
                "n_jobs": ParameterSpec(
                    param_type="int", papermill_injectable=True, default_value=1,
                    required=False, validation_rule="n_jobs >= 1",
                    description="Worker threads for spline fits",
                ),
            }

        return AnalysisStep(
            operation="driftqc.quality.correct_batch_effects",
            tool_name="correct_batch_effects",
            description=f"Correct instrument drift using {algorithm}",
            library="numpy/scipy",
            code_template="""# QC-based drift correction
from driftqc.services.quality.batch_correction_service import BatchCorrectionService

service = BatchCorrectionService()
adata_corrected, stats, _ = service.correct_batch_effects(
    adata,
    algorithm={{ algorithm | tojson }},
    params={{ params }},
)
print(f"{stats['algorithm']}: {stats['n_failed_fits']} failed fits, {stats['n_undefined_cells']} undefined cells")""",
            imports=[
                "from driftqc.services.quality.batch_correction_service import BatchCorrectionService"
            ],
            parameters={"algorithm": algorithm, "params": param_dict},
            parameter_schema=schema,
            input_entities=["adata"],
            output_entities=["adata_corrected"],
        )

    # =========================================================================
    # Public methods
    # =========================================================================

    def correct_batch_effects(
        self,
        adata: anndata.AnnData,
        algorithm: str = QC_RSC,
        params: Union[None, Dict[str, Any], BaseModel] = None,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Correct instrument drift in a study matrix.

        Args:
            adata: Study matrix (obs: class, batch, run_order)
            algorithm: "QC-MN" or "QC-RSC"
            params: QCMNParams / QCRSCParams or an equivalent dict:
                - QC-MN: {"n_qc": int in [2, 10], "include_self": bool}
                - QC-RSC: {"smoothing_parameter": float in [0, 1] (0 = auto),
                  "robust_iterations": int, "candidate_grid": [...], "n_jobs": int}

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
                corrected copy (raw values in layers["uncorrected"]), stats
                dict with the per-column report, and IR

        Raises:
            InsufficientQCError: If a batch has too few QC rows
            InvalidParameterError: If the algorithm or parameters are invalid
            StudyMatrixError: If the matrix layout is invalid
            BatchCorrectionError: On any unexpected failure
        """
        algorithm = resolve_algorithm(algorithm)
        params = resolve_params(algorithm, params)

        try:
            logger.info(f"Starting batch correction with algorithm: {algorithm}")
            validate_study_matrix(adata)

            X = get_dense_matrix(adata)
            partitions = batch_partitions(adata)
            is_qc = qc_mask(adata)

            if algorithm == QC_MN:
                X_corrected, column_fits = self._qc_mn_correction(X, adata, params)
            else:
                X_corrected, column_fits = self._qc_rsc_correction(X, adata, params)

            adata_corrected = adata.copy()
            adata_corrected.layers["uncorrected"] = X.copy()
            adata_corrected.X = X_corrected

            undefined = np.isnan(X_corrected) & ~np.isnan(X)
            n_undefined = int(undefined.sum())
            failed = [fit for fit in column_fits if not fit.ok]
            failures = [fit.error for fit in failed if fit.error is not None]

            failed_features = sorted({fit.feature for fit in failed})
            adata_corrected.var["correction_failed"] = adata_corrected.var_names.isin(
                failed_features
            )
            adata_corrected.var["n_undefined_cells"] = undefined.sum(axis=0)
            adata_corrected.uns["batch_correction"] = {
                "algorithm": algorithm,
                "params": params.model_dump(),
            }

            stats: Dict[str, Any] = {
                "algorithm": algorithm,
                "params": params.model_dump(),
                "n_batches": len(partitions),
                "batch_sizes": {batch: int(rows.size) for batch, rows in partitions},
                "n_qc_per_batch": {
                    batch: int(is_qc[rows].sum()) for batch, rows in partitions
                },
                "n_undefined_cells": n_undefined,
                "n_failed_fits": len(failed),
                "failed_features": failed_features,
                "failures": failures,
                "column_fits": column_fits,
                "analysis_type": "qc_batch_correction",
            }
            if algorithm == QC_RSC:
                stats["selected_smoothing"] = {
                    (fit.batch, fit.feature): fit.smoothing_parameter
                    for fit in column_fits
                    if fit.ok
                }

            if n_undefined:
                logger.warning(
                    f"{n_undefined} cell(s) undefined after {algorithm} "
                    f"(zero or missing drift reference)"
                )
            if failed:
                logger.warning(
                    f"{len(failed)} spline fit(s) failed across "
                    f"{len(failed_features)} feature(s); left uncorrected"
                )
            logger.info(
                f"Batch correction complete: {algorithm}, {len(partitions)} batch(es)"
            )

            ir = self._create_ir_correct_batch_effects(algorithm, params)
            return adata_corrected, stats, ir

        except (InsufficientQCError, InvalidParameterError, StudyMatrixError):
            raise
        except Exception as e:
            logger.exception(f"Error in batch correction: {e}")
            raise BatchCorrectionError(f"Batch correction failed: {str(e)}") from e

    def correct(
        self,
        adata: anndata.AnnData,
        algorithm: str = QC_RSC,
        params: Union[None, Dict[str, Any], BaseModel] = None,
    ) -> CorrectionResult:
        """Run ``correct_batch_effects`` and bundle the outputs."""
        algorithm = resolve_algorithm(algorithm)
        params = resolve_params(algorithm, params)
        adata_corrected, stats, ir = self.correct_batch_effects(adata, algorithm, params)
        return CorrectionResult(
            matrix=adata_corrected,
            algorithm=algorithm,
            params=params,
            stats=stats,
            ir=ir,
            column_fits=stats["column_fits"],
            failures=stats["failures"],
        )

    # =========================================================================
    # QC-MN
    # =========================================================================

    def _qc_mn_correction(
        self, X: np.ndarray, adata: anndata.AnnData, params: QCMNParams
    ) -> Tuple[np.ndarray, List[ColumnFit]]:
        """Nearest-QC median normalization followed by a global rescale."""
        X_corrected = np.full_like(X, np.nan)
        is_qc = qc_mask(adata)
        run_order = adata.obs[RUN_ORDER_KEY].to_numpy(dtype=np.int64)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            original_means = np.nanmean(X, axis=0)

        for batch, rows in batch_partitions(adata):
            qc_rows = rows[is_qc[rows]]
            if qc_rows.size < params.n_qc:
                raise InsufficientQCError(
                    batch, required=params.n_qc, available=int(qc_rows.size)
                )

            index = NeighborIndex(
                run_order[qc_rows], batch=batch, include_self=params.include_self
            )
            qc_data = X[qc_rows]

            for r in rows:
                neighbours = index.query(
                    run_order[r], params.n_qc, target_is_qc=bool(is_qc[r])
                )
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore", category=RuntimeWarning)
                    reference = np.nanmedian(qc_data[neighbours], axis=0)
                with np.errstate(divide="ignore", invalid="ignore"):
                    ratio = X[r] / reference
                ratio[(reference == 0) | ~np.isfinite(reference)] = np.nan
                X_corrected[r] = ratio

            logger.debug(
                f"QC-MN batch '{batch}': {rows.size} rows, {qc_rows.size} QC, n={params.n_qc}"
            )

        X_corrected = X_corrected * original_means[np.newaxis, :]

        column_fits = [
            ColumnFit(
                batch=batch,
                feature=str(feature),
                status="ok",
                n_qc_points=int(is_qc[rows].sum()),
            )
            for batch, rows in batch_partitions(adata)
            for feature in adata.var_names
        ]
        return X_corrected, column_fits

    # =========================================================================
    # QC-RSC
    # =========================================================================

    def _qc_rsc_correction(
        self, X: np.ndarray, adata: anndata.AnnData, params: QCRSCParams
    ) -> Tuple[np.ndarray, List[ColumnFit]]:
        """Per-batch, per-feature robust spline drift removal."""
        require_min_qc(adata, MIN_QC, detail="QC-RSC spline fit")

        X_corrected = X.copy()
        is_qc = qc_mask(adata)
        run_order = adata.obs[RUN_ORDER_KEY].to_numpy(dtype=np.float64)
        features = [str(f) for f in adata.var_names]

        tasks = []
        for batch, rows in batch_partitions(adata):
            qc_rows = rows[is_qc[rows]]
            for j, feature in enumerate(features):
                tasks.append((batch, rows, qc_rows, j, feature))

        results: Dict[Tuple[str, int], Tuple[ColumnFit, Optional[np.ndarray]]] = {}

        if params.n_jobs > 1:
            logger.info(
                f"Fitting {len(tasks)} QC drift curves with {params.n_jobs} parallel jobs"
            )
            with ThreadPoolExecutor(max_workers=params.n_jobs) as executor:
                futures = {}
                for batch, rows, qc_rows, j, feature in tasks:
                    future = executor.submit(
                        self._fit_single_feature,
                        batch, feature,
                        run_order[qc_rows], X[qc_rows, j],
                        run_order[rows], X[rows, j],
                        params,
                    )
                    futures[future] = (batch, j)

                completed = 0
                for future in as_completed(futures):
                    completed += 1
                    if completed % PROGRESS_LOG_INTERVAL == 0:
                        logger.info(f"Progress: {completed}/{len(tasks)} fits")
                    results[futures[future]] = future.result()
        else:
            for batch, rows, qc_rows, j, feature in tasks:
                results[(batch, j)] = self._fit_single_feature(
                    batch, feature,
                    run_order[qc_rows], X[qc_rows, j],
                    run_order[rows], X[rows, j],
                    params,
                )

        column_fits = []
        for batch, rows, _, j, _ in tasks:
            fit, values = results[(batch, j)]
            column_fits.append(fit)
            if values is not None:
                X_corrected[rows, j] = values

        return X_corrected, column_fits

    def _fit_single_feature(
        self,
        batch: str,
        feature: str,
        qc_x: np.ndarray,
        qc_y: np.ndarray,
        batch_x: np.ndarray,
        batch_y: np.ndarray,
        params: QCRSCParams,
    ) -> Tuple[ColumnFit, Optional[np.ndarray]]:
        """
        Fit and apply the drift curve for one feature in one batch.

        Returns the column report and the corrected values, or None when the
        fit failed and the raw values are kept.
        """
        finite = np.isfinite(qc_y)
        n_points = int(finite.sum())

        try:
            if n_points < MIN_QC:
                raise FitConvergenceError(
                    f"only {n_points} finite QC response(s); {MIN_QC} required"
                )
            spline, cv = fit_qc_drift(
                qc_x[finite],
                qc_y[finite],
                params.smoothing_parameter,
                robust_iterations=params.robust_iterations,
                candidates=params.candidate_grid,
            )
        except FitConvergenceError as e:
            scoped = e.scoped(batch, feature)
            logger.debug(str(scoped))
            return (
                ColumnFit(
                    batch=batch, feature=feature, status="failed",
                    n_qc_points=n_points, reason=scoped.reason, error=scoped,
                ),
                None,
            )

        curve = spline(batch_x)
        with np.errstate(divide="ignore", invalid="ignore"):
            corrected = batch_y / curve
        corrected[(curve == 0) | ~np.isfinite(curve)] = np.nan

        cv_error = None
        if cv is not None:
            cv_error = float(cv.mean_errors[cv.best_index])

        return (
            ColumnFit(
                batch=batch, feature=feature, status="ok",
                smoothing_parameter=spline.p, n_qc_points=n_points,
                cv_error=cv_error,
            ),
            corrected,
        )
