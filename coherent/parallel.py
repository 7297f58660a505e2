"""Ordered fork-join execution of independent per-timestep tasks."""

from typing import Any, Callable, Iterable, Optional, TypeVar

from joblib import Parallel, delayed
from tqdm import tqdm

__all__ = ['ordered_map']

T = TypeVar('T')


def ordered_map(
    func: Callable[..., T],
    items: Iterable[Any],
    *,
    n_jobs: Optional[int] = 1,
    desc: Optional[str] = None,
    progress: bool = False,
) -> list[T]:
    """Apply ``func`` to every item in a worker pool.

    Results are returned in the order of ``items`` regardless of completion
    order, so callers can reduce them afterwards. The first task that raises
    aborts the batch and the exception propagates unchanged.

    Parameters
    ----------
    func : callable
        Task applied to each item. Must be picklable when ``n_jobs != 1``.
    items : iterable
        Task inputs.
    n_jobs : int, optional
        Number of workers, as understood by :class:`joblib.Parallel`.
        ``1`` (default) runs in the calling process.
    desc : str, optional
        Label of the progress bar.
    progress : bool
        Show a :mod:`tqdm` progress bar over completed tasks.

    """
    items = list(items)
    if n_jobs == 1:
        iterator = tqdm(items, desc=desc, disable=not progress)
        return [func(item) for item in iterator]
    # Results are yielded in input order as they complete.
    results = Parallel(n_jobs=n_jobs, return_as='generator')(
        delayed(func)(item) for item in items
    )
    return list(tqdm(results, total=len(items), desc=desc, disable=not progress))
