"""
envorchestra - Disposable environment lifecycle orchestrator

Creates interdependent cloud resources in dependency order, waits for each
to become ready, retries transient failures with backoff, rolls back what
an aborted run created, and tears environments down in reverse order.
"""

__version__ = "0.1.0"


__all__ = ["EnvorchestraConfig", "load_config", "get_envorchestra_home"]

from .config import EnvorchestraConfig, load_config, get_envorchestra_home
