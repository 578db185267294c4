from app.services.cache.local_cache import LocalTTLCache
from app.services.cache.two_tier_cache import TwoTierCache

__all__ = ["LocalTTLCache", "TwoTierCache"]
