"""Collection orchestrator."""

from service.collection_service import CollectionService, CollectorHealth

__all__ = ['CollectionService', 'CollectorHealth']
