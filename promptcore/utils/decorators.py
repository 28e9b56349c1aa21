import functools
import logging
import time

logger = logging.getLogger("promptcore.decorators")


def monitor_action(
    *,
    name: str | None = None,
    log_args: bool = False,
):
    """
    异步 耗时统计装饰器。

    只负责记录耗时与异常日志，异常原样向上抛出。
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            action = name or func.__name__
            start = time.perf_counter()
            try:
                if log_args:
                    logger.debug("[ARGS] %s args=%s kwargs=%s", action, args, kwargs)
                result = await func(*args, **kwargs)

                cost = (time.perf_counter() - start) * 1000
                logger.info(
                    "[DONE] %s | cost: %.2fms",
                    action,
                    cost,
                    extra={"action": action, "cost_ms": round(cost, 2)},
                )
                return result
            except Exception as e:
                cost = (time.perf_counter() - start) * 1000
                details = getattr(e, "details", None) or {}
                logger.error(
                    "[FAIL] %s | cost: %.2fms | error: %s",
                    action,
                    cost,
                    e,
                    extra={
                        "action": action,
                        "cost_ms": round(cost, 2),
                        "stage": details.get("stage"),
                        "error_type": type(e).__name__,
                    },
                )
                raise

        return wrapper

    return decorator
