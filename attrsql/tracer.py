import inspect
import logging
import time
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Iterator

##############################
# Statement timing
##############################

SLOW_THRESHOLD_MS = 1000.0

logger = logging.getLogger("SqlTracer")


@contextmanager
def timer(op_name: str, **params: Any) -> Iterator[None]:
    """
    Log the duration of a block. Runs slower than SLOW_THRESHOLD_MS are
    logged at WARNING, everything else at DEBUG.
    """
    logger.debug(f"Running {op_name} {params}")
    start = time.perf_counter()
    try:
        yield
    finally:
        duration = (time.perf_counter() - start) * 1000.0
        if duration > SLOW_THRESHOLD_MS:
            logger.warning(f"Ran {op_name} in {duration:.3f} msecs {params}")
        else:
            logger.debug(f"Ran {op_name} in {duration:.3f} msecs")


def traced(op_name: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator form of `timer`. Works with both sync and async functions.
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                with timer(op_name):
                    return await func(*args, **kwargs)
            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            with timer(op_name):
                return func(*args, **kwargs)
        return sync_wrapper

    return decorator
