"""
Nearest-QC lookup by injection run order.

Used by QC median normalization: for each injection in a batch, the ``n`` QC
injections closest in run order supply the local drift reference.
"""

import numpy as np

from driftqc.core.exceptions import InsufficientQCError

__all__ = ["NeighborIndex", "nearest_qc", "nearest_qc_run_orders"]


class NeighborIndex:
    """
    Sorted QC run orders of one batch, answering nearest-QC queries.

    Ranking is by absolute run-order distance; ties go to the smaller run
    order. With ``include_self=True`` a QC target may appear among its own
    neighbours (distance 0); ``include_self=False`` removes the
    target's own injection from its candidate set.
    """

    def __init__(self, qc_run_orders, batch=None, include_self: bool = True):
        run_orders = np.asarray(qc_run_orders, dtype=np.int64)
        if run_orders.ndim != 1:
            raise ValueError("qc_run_orders must be one-dimensional")

        # Positions are indices into the caller's QC row array
        self._order = np.argsort(run_orders, kind="stable")
        self._sorted = run_orders[self._order]
        self.batch = batch
        self.include_self = include_self

    @property
    def n_qc(self) -> int:
        return int(self._sorted.size)

    def query(
        self, target_run_order: int, n: int, target_is_qc: bool = False
    ) -> np.ndarray:
        """
        Return positions (into the original QC run-order array) of the ``n``
        nearest QC injections, nearest first.

        Raises:
            InsufficientQCError: If fewer than ``n`` candidates exist
        """
        candidates = self._sorted
        positions = self._order

        if target_is_qc and not self.include_self:
            keep = candidates != target_run_order
            candidates = candidates[keep]
            positions = positions[keep]

        if n > candidates.size:
            detail = f"{n} nearest QC neighbours requested"
            if target_is_qc and not self.include_self:
                detail += " excluding the QC sample itself"
            raise InsufficientQCError(
                self.batch, required=n, available=int(candidates.size), detail=detail
            )

        distance = np.abs(candidates - int(target_run_order))
        # lexsort: last key is primary -> distance, then run order
        ranking = np.lexsort((candidates, distance))[:n]
        return positions[ranking]


def nearest_qc(
    qc_run_orders,
    target_run_order: int,
    n: int,
    include_self: bool = True,
    target_is_qc: bool = False,
    batch=None,
) -> np.ndarray:
    """
    Positions of the ``n`` QC injections nearest to ``target_run_order``.

    Args:
        qc_run_orders: Run orders of the QC rows of one batch
        target_run_order: Run order of the injection being corrected
        n: Number of neighbours
        include_self: Whether a QC target may be its own neighbour
        target_is_qc: Whether the target injection is itself a QC row
        batch: Batch label used in error messages

    Returns:
        np.ndarray: positions into ``qc_run_orders``, nearest first

    Raises:
        InsufficientQCError: If ``n`` exceeds the available QC rows
    """
    index = NeighborIndex(qc_run_orders, batch=batch, include_self=include_self)
    return index.query(target_run_order, n, target_is_qc=target_is_qc)


def nearest_qc_run_orders(
    qc_run_orders, target_run_order: int, n: int, **kwargs
) -> np.ndarray:
    """Run orders (not positions) of the ``n`` nearest QC injections."""
    run_orders = np.asarray(qc_run_orders, dtype=np.int64)
    return run_orders[nearest_qc(run_orders, target_run_order, n, **kwargs)]

