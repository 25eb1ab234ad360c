"""
Storage module: keyed record stores for baselines, assignments and overrides.
"""

from .repositories import FileKeyValueStore, InMemoryKeyValueStore, KeyValueStore, ModelRepository

__all__ = [
	"KeyValueStore",
	"InMemoryKeyValueStore",
	"FileKeyValueStore",
	"ModelRepository",
]
