"""Materialise a repository into the local snapshot layout.

Used to pre-sync the service's own identities so that they can be served with
``local_only`` and no network access at request time.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from social.atlas.atproto.content import ContentLoader, avatar_cid
from social.atlas.atproto.snapshot import safe_component
from social.atlas.model.record import PROFILE_COLLECTION, PROFILE_RKEY
from social.atlas.resolve.handle import IdentityResolver

logger = logging.getLogger(__name__)


class SyncResult(BaseModel):
    did: str
    handle: str
    repo_host: str
    collection: str
    records: int = 0
    files: List[str] = Field(default_factory=list)


def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as fd:
        json.dump(data, fd, indent=2, ensure_ascii=False)


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


async def sync_to_local(
    loader: ContentLoader,
    resolver: IdentityResolver,
    subject: str,
    collection: str,
    output: str | Path,
    page_size: int = 100,
) -> SyncResult:
    """Download a repository's description, profile, avatar and one collection.

    Reads always go to the repository host, never to an existing snapshot, so
    the loader passed in should not be configured with one.

    Raises:
        ResolutionFailed: if the subject cannot be resolved
        ValueError: if the collection name cannot be used as a directory
    """
    if not safe_component(collection):
        raise ValueError(f"Invalid collection: {collection!r}")

    identity = await resolver.resolve_identity(subject)
    did = identity.did
    did_dir = Path(output) / did
    result = SyncResult(
        did=did,
        handle=identity.handle,
        repo_host=identity.repo_host,
        collection=collection,
    )
    logger.info("Syncing %s (%s) from %s", identity.handle, did, identity.repo_host)

    description = await loader.describe_repo(did)
    if description is not None:
        path = did_dir / "describe.json"
        await asyncio.to_thread(
            _write_json,
            path,
            {
                "did": description.did,
                "handle": description.handle,
                "collections": description.collections,
            },
        )
        result.files.append(str(path))

    profile = await loader.get_profile(did)
    if profile is not None:
        path = did_dir / PROFILE_COLLECTION / f"{PROFILE_RKEY}.json"
        await asyncio.to_thread(_write_json, path, profile.model_dump(exclude_none=True))
        result.files.append(str(path))

        cid = avatar_cid(profile)
        if cid is not None and safe_component(cid):
            blob = await loader.get_blob(did, cid)
            if blob is not None:
                path = did_dir / "blob" / cid
                await asyncio.to_thread(_write_bytes, path, blob)
                result.files.append(str(path))
            else:
                logger.warning("Failed to download avatar %s for %s", cid, did)

    rkeys: List[str] = []
    cursor: Optional[str] = None
    seen = set()
    while True:
        page = await loader.list_records(did, collection, limit=page_size, cursor=cursor)
        for record in page.records:
            rkey = record.rkey
            if not safe_component(rkey):
                logger.warning("Skipping record with unusable key: %s", record.uri)
                continue
            path = did_dir / collection / f"{rkey}.json"
            await asyncio.to_thread(_write_json, path, record.model_dump(exclude_none=True))
            result.files.append(str(path))
            rkeys.append(rkey)
        if page.cursor is None or page.cursor in seen:
            break
        seen.add(page.cursor)
        cursor = page.cursor

    if len(rkeys) > 0:
        path = did_dir / collection / "index.json"
        await asyncio.to_thread(_write_json, path, rkeys)
        result.files.append(str(path))

    result.records = len(rkeys)
    logger.info("Synced %d records from %s", len(rkeys), collection)
    return result
