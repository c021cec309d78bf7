"""Clients for external systems: git, GitHub and scratch object storage."""

from .git_fetcher import GitFetcher
from .github_client import GitHubClient
from .object_store import LocalObjectStore, ObjectStore, S3ObjectStore, create_object_store

__all__ = [
    "GitFetcher",
    "GitHubClient",
    "LocalObjectStore",
    "ObjectStore",
    "S3ObjectStore",
    "create_object_store",
]
