"""Persistence — MongoClient, Repository implementations."""

from proposal_engine.persistence.mongo_client import MongoClient
from proposal_engine.persistence.repository import (
    InMemoryRepository,
    MongoRepository,
    Repository,
    get_repository,
)

__all__ = ["MongoClient", "Repository", "InMemoryRepository", "MongoRepository", "get_repository"]
