from stackharness.services.cache import CacheService
from stackharness.services.database import DatabaseService
from stackharness.services.object_store import ObjectStoreService

__all__ = ["CacheService", "DatabaseService", "ObjectStoreService"]
