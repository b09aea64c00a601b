"""
Schedulers for SPR candidate evaluation.

A scheduler turns a tree snapshot and a list of prune edges into one row of
scored moves per prune edge. Rows always come back in the order of the
prune edges, whatever order the work finishes in, so the reduction in
:func:`phyloml.optimize.spr.select_best_move` sees the same input serially
and in parallel.

Workers get the likelihood calculator once, through the pool initializer,
and a read-only snapshot with every task. They never touch the run PRNG.
"""

import logging
import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Optional

from ..core.likelihood import LikelihoodCalculator
from ..exceptions import NumericalInstability, WorkerFailure
from .spr import SPRMove, SPRSnapshot, score_prune_edge

logger = logging.getLogger(__name__)

# Set in each worker process by _init_worker
_worker_calculator: Optional[LikelihoodCalculator] = None


def _init_worker(calculator: LikelihoodCalculator) -> None:
    global _worker_calculator
    _worker_calculator = calculator


def _score_row(snapshot: SPRSnapshot, prune_id: int) -> list[SPRMove]:
    return score_prune_edge(_worker_calculator, snapshot, prune_id)


class SerialScheduler:
    """Evaluate rows in the calling process."""

    def __init__(self, calculator: LikelihoodCalculator):
        self.calculator = calculator
        self.workers = 1

    def score_rows(self, snapshot: SPRSnapshot, prune_ids: list[int]) -> list[list[SPRMove]]:
        return [score_prune_edge(self.calculator, snapshot, prune_id) for prune_id in prune_ids]

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class ProcessScheduler:
    """
    Evaluate rows on a pool of worker processes.

    The pool is created on first use and shut down by :meth:`close` (or on
    leaving the ``with`` block), so one pool serves every sweep of a run.
    """

    def __init__(self, calculator: LikelihoodCalculator, workers: Optional[int] = None):
        """
        Parameters
        ----------
        calculator : LikelihoodCalculator
            Shipped to each worker once
        workers : int, optional
            Pool size; defaults to the number of CPUs
        """
        self.calculator = calculator
        self.workers = workers or os.cpu_count() or 1
        self._executor = None

    def _pool(self) -> ProcessPoolExecutor:
        if self._executor is None:
            logger.debug("Starting SPR worker pool with %d processes", self.workers)
            self._executor = ProcessPoolExecutor(
                max_workers=self.workers,
                initializer=_init_worker,
                initargs=(self.calculator,),
            )
        return self._executor

    def score_rows(self, snapshot: SPRSnapshot, prune_ids: list[int]) -> list[list[SPRMove]]:
        """
        Score all rows and return them indexed like ``prune_ids``.

        Blocks until every row has been reported.

        Raises
        ------
        NumericalInstability
            If a worker hit a non-finite log-likelihood
        WorkerFailure
            If a task could not be shipped, a worker process died or a
            worker raised anything else
        """
        executor = self._pool()
        futures = {
            executor.submit(_score_row, snapshot, prune_id): index
            for index, prune_id in enumerate(prune_ids)
        }

        rows: list[Optional[list[SPRMove]]] = [None] * len(prune_ids)
        for future in as_completed(futures):
            index = futures[future]
            try:
                rows[index] = future.result()
            except NumericalInstability:
                self._cancel(futures)
                raise
            except Exception as e:
                self._cancel(futures)
                raise WorkerFailure(prune_ids[index], e) from e
        return rows

    @staticmethod
    def _cancel(futures) -> None:
        for future in futures:
            future.cancel()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def make_scheduler(calculator: LikelihoodCalculator, parallel: bool = True,
                   workers: Optional[int] = None):
    """Pick a scheduler for the requested degree of parallelism."""
    if not parallel:
        return SerialScheduler(calculator)
    return ProcessScheduler(calculator, workers)
