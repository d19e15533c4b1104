# campus_biometrics/decorators.py
import functools
import inspect
import logging
import time

logger = logging.getLogger("app")


def log_call(name: str = None):
    """Декоратор: логируем вход/выход функции/метода с таймингом. Понимает и async."""
    def deco(fn):
        display = name or fn.__qualname__

        if inspect.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def async_wrapper(*args, **kwargs):
                start = time.perf_counter()
                logger.info("CALL %s", display)
                try:
                    res = await fn(*args, **kwargs)
                except Exception as e:
                    logger.error("ERR %s: %s (%.1f ms)", display, e, (time.perf_counter() - start) * 1000)
                    raise
                logger.info("OK %s (%.1f ms)", display, (time.perf_counter() - start) * 1000)
                return res
            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            logger.info("CALL %s", display)
            try:
                res = fn(*args, **kwargs)
            except Exception as e:
                logger.error("ERR %s: %s (%.1f ms)", display, e, (time.perf_counter() - start) * 1000)
                raise
            logger.info("OK %s (%.1f ms)", display, (time.perf_counter() - start) * 1000)
            return res
        return wrapper
    return deco
