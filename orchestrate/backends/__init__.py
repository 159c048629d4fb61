"""
Completion backends for Orchestrate.
OpenRouter streaming with an optional retry wrapper for transient failures.

Usage:
    from orchestrate.backends import make_backend
    backend = make_backend(get_config())
"""
from orchestrate.backends.base import BaseBackend
from orchestrate.backends.openrouter import OpenRouterBackend
from orchestrate.backends.retry_wrapper import RetryableBackendWrapper


def make_backend(cfg: dict):
    """
    Build the configured backend, wrapped for retries unless
    backend.max_retries is 0.
    """
    backend_cfg = cfg.get("backend", {})
    backend = OpenRouterBackend.from_config(cfg)
    max_retries = int(backend_cfg.get("max_retries", 2))
    if max_retries <= 0:
        return backend
    return RetryableBackendWrapper(
        backend,
        max_retries=max_retries,
        backoff_base=float(backend_cfg.get("backoff_base", 1.5)),
        backoff_max=float(backend_cfg.get("backoff_max", 10.0)),
    )


__all__ = [
    "BaseBackend",
    "OpenRouterBackend",
    "RetryableBackendWrapper",
    "make_backend",
]
