from .retry import compute_backoff, retry_async, schedule_retry

__all__ = ["compute_backoff", "retry_async", "schedule_retry"]
