"""Resource download with retry and caching."""

from roomrelay.fetch.fetcher import ResourceFetcher, backoff_delay_ms, infer_extension

__all__ = ["ResourceFetcher", "backoff_delay_ms", "infer_extension"]
