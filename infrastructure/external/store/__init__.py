"""
Checkout store adapters.
"""

from core.config import StoreSettings

from .memory import InMemoryCheckoutStore
from .rpc_client import RpcStoreClient


def create_store(config: StoreSettings) -> "RpcStoreClient | InMemoryCheckoutStore":
    """RPC client when a store URL is configured, otherwise the in-memory store."""
    if config.url:
        return RpcStoreClient(
            config.url,
            config.api_key,
            timeout=config.timeout,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
        )
    return InMemoryCheckoutStore()


__all__ = ["InMemoryCheckoutStore", "RpcStoreClient", "create_store"]
