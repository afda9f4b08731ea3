from functools import lru_cache

from fastapi import Header

from retrieval_service.features.knowledge.service import (
    KnowledgeBaseCoordinator,
    create_knowledge_coordinator,
)


@lru_cache(maxsize=1)
def get_coordinator() -> KnowledgeBaseCoordinator:
    """Provide a singleton knowledge coordinator for request handlers."""
    return create_knowledge_coordinator()


def get_caller_id(x_user_id: str = Header(..., alias="X-User-ID")) -> str:
    """Opaque caller id; authentication happens in front of this service."""
    return x_user_id
