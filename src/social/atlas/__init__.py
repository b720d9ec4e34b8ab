"""
Atlas - federated AT Protocol identity and record resolution

Atlas resolves handles and DIDs across several independently operated AT
Protocol networks, each with its own directory, profile API and repository
hosts, and serves records, profiles and blobs from a local mirror or from the
owning repository host.

Key Components:
- app: Web application layer with request handlers and server configuration
- atproto: XRPC helpers, the TTL cache, the local mirror and the content loader
- chat: Thread reconstruction over a chat log spread across two repositories
- lexicon: Lexicon schema discovery over DNS and record validation
- model: Pydantic models for networks, identities and records
- resolve: Handle, DID and repository host resolution

Architecture Overview:
1. Identity Resolution:
   - Handles are resolved against each registered network in order
   - DID documents come from the network directories, or the DID's own host
     for did:web
   - describeRepo on each network is the last resort for a repository host

2. Content Loading:
   - The local mirror is always consulted first
   - Identities marked local-only are never fetched remotely
   - Remote responses are cached briefly and evicted on write

3. Schema Validation:
   - The NSID authority's _lexicon TXT record names the publishing DID
   - The schema is a record in that DID's repository
"""
