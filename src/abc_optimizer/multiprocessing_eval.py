"""
Parallel evaluation dispatcher for the ABC optimizer.

Positions are evaluated in bounded batches on a multiprocessing pool (or
inline when a single worker and no timeout are configured). Results always
come back in submission order, whatever order the workers finish in, because
the engine aligns them with population slots by index.
"""

import math
import time
import logging
import contextlib
from multiprocessing import Pool, TimeoutError as PoolTimeoutError

import dill
import numpy as np

from .data_structures import EvaluationResult
from .utils import create_progress_bar, redirect_to_watch_path


logger = logging.getLogger(__name__)

# Set in each pool worker by _init_worker
_WORKER_GATEWAY = None


def _init_worker(gateway_payload):
    """Pool initializer: rebuild the gateway serialized with dill."""
    global _WORKER_GATEWAY
    _WORKER_GATEWAY = dill.loads(gateway_payload)


def _evaluate_worker(args):
    """
    Evaluate a single position - module level for pickling.

    Parameters
    ----------
    args : tuple
        (index, position)

    Returns
    -------
    tuple
        (index, EvaluationResult)
    """
    idx, position = args
    return idx, _WORKER_GATEWAY.evaluate(position)


def cleanup_multiprocessing_resources(pool, terminate=False):
    """
    Close (or terminate) a multiprocessing pool and wait for its workers.

    Parameters
    ----------
    pool : multiprocessing.Pool
        Pool to clean up
    terminate : bool
        Kill workers immediately instead of letting queued work finish
    """
    if pool is None:
        return

    try:
        if terminate:
            pool.terminate()
        else:
            pool.close()
        pool.join()
        logger.debug("Multiprocessing pool cleaned up successfully")
    except Exception as e:
        logger.error(f"Error cleaning up multiprocessing pool: {e}")
        try:
            pool.terminate()
            pool.join()
        except Exception as e2:
            logger.error(f"Error terminating pool: {e2}")


class ParallelDispatcher:
    """
    Run batches of independent evaluations with a bounded worker count.

    Parameters
    ----------
    gateway : EvaluatorGateway
        Gateway wrapping the cost function; its ``timeout`` bounds each
        evaluation
    num_workers : int
        Maximum number of concurrent evaluations
    batch_size : int, optional
        Positions per batch (default: num_workers)
    console : rich.console.Console, optional
        Console for the progress bar
    watch_path : str, optional
        File receiving the progress bar output
    verbose : bool
        Show a progress bar while evaluating
    """

    def __init__(self, gateway, num_workers=1, batch_size=None, console=None,
                 watch_path=None, verbose=False):
        if num_workers < 1:
            raise ValueError(f"num_workers must be >= 1, got {num_workers}")
        if batch_size is not None and batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")

        self.gateway = gateway
        self.num_workers = num_workers
        self.batch_size = batch_size if batch_size is not None else num_workers
        self.console = console
        self.watch_path = watch_path
        self.verbose = verbose
        self.pool = None

        self.total_evaluations = 0
        self.total_failures = 0

    @property
    def timeout(self):
        return getattr(self.gateway, "timeout", None)

    @property
    def uses_pool(self) -> bool:
        """True when evaluations run on the process pool instead of inline."""
        return self.num_workers > 1 or self.timeout is not None

    def _ensure_pool(self):
        if self.pool is None:
            self.pool = Pool(
                processes=self.num_workers,
                initializer=_init_worker,
                initargs=(dill.dumps(self.gateway),),
            )
            logger.debug(f"Started evaluation pool with {self.num_workers} workers")
        return self.pool

    def _restart_pool(self):
        """Kill a pool holding hung evaluations; the next batch starts a fresh one."""
        logger.warning("Terminating evaluation pool after a timeout")
        cleanup_multiprocessing_resources(self.pool, terminate=True)
        self.pool = None

    def evaluate(self, positions, description="Evaluating") -> list:
        """
        Evaluate every position and return results in input order.

        Parameters
        ----------
        positions : sequence of array-like
            Positions to evaluate
        description : str
            Progress bar label

        Returns
        -------
        list of EvaluationResult
            ``results[j]`` corresponds to ``positions[j]``
        """
        positions = [np.asarray(p, dtype=np.float64) for p in positions]
        results = [None] * len(positions)
        if not positions:
            return results

        with self._progress(len(positions), description) as advance:
            for start in range(0, len(positions), self.batch_size):
                batch = list(range(start, min(start + self.batch_size, len(positions))))
                if self.uses_pool:
                    self._evaluate_batch_in_pool(batch, positions, results, advance)
                else:
                    for idx in batch:
                        results[idx] = self.gateway.evaluate(positions[idx])
                        advance(results[idx])

        n_failed = sum(1 for r in results if r.failed)
        self.total_evaluations += len(results)
        self.total_failures += n_failed
        if n_failed:
            logger.warning(f"{n_failed}/{len(results)} evaluations failed")
        else:
            logger.debug(f"Completed: {len(results)}/{len(results)} valid evaluations")
        return results

    def _evaluate_batch_in_pool(self, batch, positions, results, advance):
        pool = self._ensure_pool()
        timeout = self.timeout

        if timeout is None:
            eval_args = [(idx, positions[idx]) for idx in batch]
            try:
                # Results come back in arbitrary order but carry their index
                for idx, result in pool.imap_unordered(_evaluate_worker, eval_args):
                    results[idx] = result
                    advance(result)
            except Exception as e:
                logger.error(f"Evaluation batch failed: {e}")
                for idx in batch:
                    if results[idx] is None:
                        results[idx] = EvaluationResult.failure(f"{type(e).__name__}: {e}")
                        advance(results[idx])
            return

        pending = [
            (idx, pool.apply_async(_evaluate_worker, ((idx, positions[idx]),)))
            for idx in batch
        ]
        waves = math.ceil(len(batch) / self.num_workers)
        deadline = time.monotonic() + timeout * waves
        timed_out = False

        for idx, async_result in pending:
            try:
                _, result = async_result.get(timeout=max(0.0, deadline - time.monotonic()))
            except PoolTimeoutError:
                logger.warning(f"Evaluation {idx} timed out after {timeout}s, assigning worst cost")
                result = EvaluationResult.failure(f"Timed out after {timeout}s")
                timed_out = True
            except Exception as e:
                logger.error(f"Evaluation {idx} crashed in worker: {e}")
                result = EvaluationResult.failure(f"{type(e).__name__}: {e}")
            results[idx] = result
            advance(result)

        if timed_out:
            self._restart_pool()

    @contextlib.contextmanager
    def _progress(self, total, description):
        """Yield a callback advancing the progress bar by one result."""
        if not (self.verbose and self.console is not None):
            yield lambda result: None
            return

        counts = {"ok": 0, "failed": 0, "best": float("inf")}
        with redirect_to_watch_path(self.watch_path):
            with create_progress_bar(console=self.console) as progress:
                task = progress.add_task(f"🐝 {description}", total=total)

                def advance(result):
                    if result.failed:
                        counts["failed"] += 1
                    else:
                        counts["ok"] += 1
                        counts["best"] = min(counts["best"], result.cost)
                    progress.update(
                        task,
                        advance=1,
                        description=(
                            f"🐝 {description} | ✅{counts['ok']} 💀{counts['failed']} "
                            f"| Batch Best: {counts['best']:.6e}"
                        ),
                    )

                yield advance

    def close(self):
        cleanup_multiprocessing_resources(self.pool)
        self.pool = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
