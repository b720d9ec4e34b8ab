"""Typed failures for identity resolution and schema validation.

Absence of a record, profile or blob is not an error and is never raised;
loaders return ``None`` or an empty collection instead.
"""


class ResolutionFailed(Exception):
    """
    No registered network could resolve a handle, DID document or repository host.

    This is fatal to the current operation and is surfaced to callers as
    "could not resolve".
    """

    @staticmethod
    def handle(handle: str) -> "ResolutionFailed":
        """Every network failed to resolve the handle to a DID."""
        return ResolutionFailed(
            f"error-resolve-1000 Could not resolve handle: {handle}"
        )

    @staticmethod
    def did_document(did: str) -> "ResolutionFailed":
        """Every directory failed to return a DID document."""
        return ResolutionFailed(
            f"error-resolve-1001 Could not resolve DID document: {did}"
        )

    @staticmethod
    def repo_host(did: str) -> "ResolutionFailed":
        """Neither directories nor describeRepo produced a repository host."""
        return ResolutionFailed(
            f"error-resolve-1002 Could not resolve repository host: {did}"
        )

    @staticmethod
    def unsupported_did(did: str) -> "ResolutionFailed":
        """The DID method is not did:plc or did:web."""
        return ResolutionFailed(f"error-resolve-1003 Unsupported DID method: {did}")

    @staticmethod
    def invalid_subject(subject: str) -> "ResolutionFailed":
        """The input is neither a handle nor a DID."""
        return ResolutionFailed(
            f"error-resolve-1004 Invalid handle or DID: {subject!r}"
        )


class SchemaDiscoveryFailed(Exception):
    """
    A stage of schema discovery failed before validation could run.

    Carries the stage name so operators can tell whether DNS, the directory or
    the schema repository is misconfigured.
    """

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"{stage}: {reason}")
        self.stage = stage
        self.reason = reason


class ValidationFailed(Exception):
    """A record does not match its lexicon schema.

    ``path`` points at the offending field (``$`` is the record itself).
    ``blob`` is set when the failure concerns a blob field.
    """

    def __init__(self, path: str, reason: str, blob: bool = False) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
        self.blob = blob
