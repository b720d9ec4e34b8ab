"""
Identity Resolution

This package resolves AT Protocol identifiers (DIDs, handles) across the
registered networks.

Key Components:
- handle.py: IdentityResolver and the host to network mapping
- __main__.py: CLI interface for resolution

Resolution Types:
1. Handle Resolution
   - com.atproto.identity.resolveHandle against each network's profile API,
     pinned networks first

2. DID Resolution
   - did:plc documents from each distinct network directory
   - did:web documents from the DID's host
   - com.atproto.repo.describeRepo as a fallback for the repository host

Every attempt is bounded by a timeout; a failed or timed out attempt moves on
to the next network. Only when every network fails is ResolutionFailed raised.
"""
