"""
Realtime Sync

Bridges server-pushed database change events to the client-side read
cache shared by every screen.

Architecture:
    change_feed transport -> ChannelRegistry -> [OptimisticPatcher, InvalidationBatcher] -> QueryCache

Components:
    - registry: one refcounted transport subscription per topic
    - batcher:  leading-edge rate limiter for cache invalidations
    - patcher:  optimistic merge of new rows ahead of the refresh
    - lease:    per-consumer mount/unmount glue
    - cache:    key-addressed read cache with prefix invalidation
    - topics:   topic catalog (filters, cache keys, windows)
"""
from realtime_sync.batcher import InvalidationBatcher
from realtime_sync.cache import QueryCache
from realtime_sync.lease import LeaseState, LiveSubscription
from realtime_sync.patcher import OptimisticPatcher, merge_optimistic
from realtime_sync.registry import Channel, ChannelRegistry, Lease, RegistryStats
from realtime_sync.topics import OptimisticSpec, TopicCatalog, TopicSpec, default_catalog

__all__ = [
    "Channel",
    "ChannelRegistry",
    "InvalidationBatcher",
    "Lease",
    "LeaseState",
    "LiveSubscription",
    "OptimisticPatcher",
    "OptimisticSpec",
    "QueryCache",
    "RegistryStats",
    "TopicCatalog",
    "TopicSpec",
    "default_catalog",
    "merge_optimistic",
]
