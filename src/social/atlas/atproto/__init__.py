"""
AT Protocol Content Access

This package fetches repository content over XRPC and from the local mirror.

Key Components:
- xrpc.py: XRPC method names, URL building and bounded JSON/bytes requests
- cache.py: TTL cache with in-memory and Redis backends
- snapshot.py: Read-only access to the local mirror, on disk or over HTTP
- content.py: ContentLoader for profiles, records, listings, blobs and chat logs
- sync.py: Copies a repository collection into the local mirror layout

Lookup order for every read:
1. The local mirror
2. Nothing further for local-only identities
3. The TTL cache
4. The repository host that owns the DID
"""
