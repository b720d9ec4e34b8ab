"""
Data Models

This package defines the pydantic models shared by the resolution, content and
chat layers.

Key Models:
- network.py: NetworkConfig, NetworkEndpoints and the ordered NetworkRegistry
- record.py: Identity, Record, ChatMessage, RecordPage and RepoDescription
- health.py: HealthGauge, the error-burst gauge behind the readiness probe

Records are treated as immutable snapshots: the same URI may point at a
different CID over time, but a (uri, cid) pair always names the same content.
Models produced by the loaders are owned by the caller; only the TTL cache
keeps copies.
"""
