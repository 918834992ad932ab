"""
Shared pytest fixtures for driftqc tests.

Fixture Map:
============

Data Generation Fixtures:
├── make_study_table (factory for parsed study tables)
├── study_table (2 batches x (6 QC + 10 Sample), linear drift on "drifting")
├── study_matrix (study_table as AnnData)
└── flat_study_matrix (constant responses, no drift)

All synthetic data uses seeded numpy generators for reproducibility.
"""

import logging
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import pytest

from driftqc.core.study_matrix import build_study_matrix

logging.getLogger("anndata").setLevel(logging.ERROR)

# Run orders 1..16 per batch; QC every third injection starting at 1
RUN_ORDERS = np.arange(1, 17)
QC_RUN_ORDERS = [1, 4, 7, 10, 13, 16]


def _study_table(
    batches: List[str],
    qc_run_orders: List[int],
    run_orders: np.ndarray,
    features: Dict[str, float],
    drift_slope: Optional[Dict[str, float]] = None,
    qc_noise: float = 0.5,
    bio_sd: float = 15.0,
    seed: int = 42,
) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    drift_slope = drift_slope or {}
    records = []
    for batch in batches:
        for ro in run_orders:
            is_qc = int(ro) in qc_run_orders
            row = {
                "sample_id": f"{batch}_{'QC' if is_qc else 'S'}{int(ro):02d}",
                "class": "QC" if is_qc else "Sample",
                "batch": batch,
                "run_order": int(ro),
            }
            for name, base in features.items():
                if is_qc:
                    value = base + rng.normal(0.0, qc_noise)
                else:
                    value = base + rng.normal(0.0, bio_sd)
                value += drift_slope.get(name, 0.0) * ro
                row[name] = value
            records.append(row)
    return pd.DataFrame.from_records(records)


@pytest.fixture
def make_study_table():
    """Factory for parsed study tables (id, class, batch, run_order, features...)."""

    def _make(
        batches=("B1", "B2"),
        qc_run_orders=QC_RUN_ORDERS,
        run_orders=RUN_ORDERS,
        features=None,
        drift_slope=None,
        **kwargs,
    ) -> pd.DataFrame:
        features = features or {"stable": 200.0, "drifting": 100.0}
        return _study_table(
            list(batches), list(qc_run_orders), np.asarray(run_orders),
            features, drift_slope, **kwargs,
        )

    return _make


@pytest.fixture
def study_table(make_study_table):
    """2 batches, 6 QC + 10 Sample each, slope 0.5 drift on 'drifting'."""
    return make_study_table(drift_slope={"drifting": 0.5})


@pytest.fixture
def study_matrix(study_table):
    return build_study_matrix(study_table)


@pytest.fixture
def flat_study_matrix(make_study_table):
    """Every feature constant across all rows."""
    table = make_study_table(
        features={"m1": 50.0, "m2": 3.0, "m3": 1200.0}, qc_noise=0.0, bio_sd=0.0
    )
    return build_study_matrix(table)
