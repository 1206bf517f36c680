r"""
Fit many vertex candidates concurrently.

The fitter and linearizers hold only read-only configuration, so one
instance of each is shared by all worker threads. numpy releases the GIL in
its dense kernels, which is where most of the time of a fit goes.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from vertex_reco.event_data import Vertex, VertexConstraint
from vertex_reco.exceptions import VertexingError
from vertex_reco.fitters import FullBilloirVertexFitter

logger = logging.getLogger(__name__)

__all__ = ["VertexFitResult", "fit_vertices"]


@dataclass(slots=True)
class VertexFitResult:
    """Outcome of one candidate fit; ``vertex`` is ``None`` when it failed."""
    index: int
    vertex: Optional[Vertex]
    error: Optional[str] = None
    time_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.vertex is not None


def _fit_one(index: int,
             tracks: Sequence[Any],
             fitter: FullBilloirVertexFitter,
             linearizer: Any,
             constraint: Optional[VertexConstraint]) -> VertexFitResult:
    t0 = time.perf_counter()
    vertex = fitter.fit(tracks, linearizer, constraint)
    return VertexFitResult(index=index, vertex=vertex, time_s=time.perf_counter() - t0)


def fit_vertices(candidates: Sequence[Sequence[Any]],
                 fitter: FullBilloirVertexFitter,
                 linearizer: Any,
                 constraint: Optional[VertexConstraint] = None,
                 max_workers: int = 8,
                 raise_on_error: bool = False) -> List[VertexFitResult]:
    r"""
    Fit each candidate track list on a thread pool.

    Parameters
    ----------
    candidates : sequence of sequences
        Track lists, one per vertex candidate.
    fitter : FullBilloirVertexFitter
    linearizer : TrackLinearizer or callable
    constraint : VertexConstraint, optional
        Same constraint for every candidate (e.g. the beam spot).
    max_workers : int
        Size of the :class:`concurrent.futures.ThreadPoolExecutor`; ``1``
        fits sequentially in the calling thread.
    raise_on_error : bool
        Re-raise the first :class:`VertexingError` instead of recording it.

    Returns
    -------
    list[VertexFitResult]
        In the order of ``candidates``. Failed fits carry the error message.
    """
    results: List[Optional[VertexFitResult]] = [None] * len(candidates)

    def _record_failure(i: int, e: Exception) -> None:
        logger.exception("Vertex candidate %d failed: %s", i, e)
        results[i] = VertexFitResult(index=i, vertex=None, error=f"{type(e).__name__}: {e}")

    if max_workers <= 1:
        for i, cand in enumerate(candidates):
            try:
                results[i] = _fit_one(i, cand, fitter, linearizer, constraint)
            except VertexingError as e:
                if raise_on_error:
                    raise
                _record_failure(i, e)
        return results  # type: ignore[return-value]

    with ThreadPoolExecutor(max_workers=max_workers) as exe:
        futures = {
            exe.submit(_fit_one, i, cand, fitter, linearizer, constraint): i
            for i, cand in enumerate(candidates)
        }
        for f in as_completed(futures):
            i = futures[f]
            try:
                results[i] = f.result()
            except VertexingError as e:
                if raise_on_error:
                    for other in futures:
                        other.cancel()
                    raise
                _record_failure(i, e)

    n_fail = sum(1 for r in results if r is not None and not r.ok)
    logger.info("Fitted %d vertex candidates (%d failed)", len(candidates), n_fail)
    return results  # type: ignore[return-value]
