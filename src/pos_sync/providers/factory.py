"""
Factory for creating POS adapters.
"""

from typing import Dict, Optional, Type

import httpx

from pos_sync.providers.base import PosAdapter
from pos_sync.providers.clover_client import CloverAdapter
from pos_sync.providers.square_client import SquareAdapter
from pos_sync.utils.config import ProviderConfig
from pos_sync.utils.exceptions import ConfigurationError
from pos_sync.utils.logger import get_logger
from pos_sync.utils.rate_limiting import RateLimiter

logger = get_logger(__name__)

ADAPTERS: Dict[str, Type[PosAdapter]] = {
    "square": SquareAdapter,
    "clover": CloverAdapter,
}


def create_adapter(config: ProviderConfig, access_token: Optional[str] = None,
                   merchant_id: Optional[str] = None, location_id: Optional[str] = None,
                   rate_limiter: Optional[RateLimiter] = None,
                   http_client: Optional[httpx.AsyncClient] = None) -> PosAdapter:
    """
    Create the adapter for ``config.provider``.

    Args:
        config: Explicit provider configuration
        access_token: Decrypted access token, if already connected
        merchant_id: External merchant id
        location_id: External location id
        rate_limiter: The Integration's limiter
        http_client: Optional shared httpx client

    Returns:
        Concrete PosAdapter

    Raises:
        ConfigurationError: If the provider is not supported
    """
    adapter_class = ADAPTERS.get(config.provider)
    if adapter_class is None:
        raise ConfigurationError(f"Unsupported POS provider: {config.provider}",
                                 {"provider": config.provider})

    logger.debug(f"Creating {config.provider} adapter ({config.environment})")
    return adapter_class(
        config,
        access_token=access_token,
        merchant_id=merchant_id,
        location_id=location_id,
        rate_limiter=rate_limiter,
        http_client=http_client,
    )
