"""Realtime infrastructure (Socket.IO, cross-node relay, presence).

This package holds the per-node connection registry, the Redis pub/sub relay
that keeps several stateless nodes in step, and the join/send protocols that
sit between a client connection and the shared presence store.
"""
