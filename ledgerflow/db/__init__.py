from .store import EntityRepository, EntityStore

__all__ = [
    "EntityStore",
    "EntityRepository",
]
