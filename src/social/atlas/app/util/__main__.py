import argparse
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from social.atlas.atproto.content import ContentLoader
from social.atlas.atproto.sync import sync_to_local
from social.atlas.lexicon.resolve import DEFAULT_DOH_URL, SchemaResolver
from social.atlas.model.network import NetworkRegistry
from social.atlas.model.record import DEFAULT_CHAT_COLLECTION
from social.atlas.resolve.handle import IdentityResolver

logger = logging.getLogger(__name__)


def load_registry(networks_file: Optional[str]) -> NetworkRegistry:
    if networks_file:
        return NetworkRegistry.from_file(networks_file)
    return NetworkRegistry.default()


async def syncRepo(
    registry: NetworkRegistry,
    subject: str,
    collection: str,
    output: str,
) -> None:
    async with aiohttp.ClientSession() as http_session:
        resolver = IdentityResolver(http_session, registry)
        loader = ContentLoader(http_session, resolver)
        result = await sync_to_local(loader, resolver, subject, collection, output)
        print(
            f"{result.handle} ({result.did}) from {result.repo_host}: "
            f"{result.records} records, {len(result.files)} files written"
        )


async def validateRecord(
    registry: NetworkRegistry,
    collection: str,
    record_file: str,
    dns_backend: str,
    doh_url: str,
) -> None:
    with open(record_file) as fd:
        record: Dict[str, Any] = json.load(fd)

    async with aiohttp.ClientSession() as http_session:
        resolver = IdentityResolver(http_session, registry)
        schema_resolver = SchemaResolver(
            http_session, resolver, dns_backend=dns_backend, doh_url=doh_url
        )
        outcome = await schema_resolver.validate(collection, record)
        print(json.dumps(outcome.model_dump(mode="json", exclude_none=True), indent=2))


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="atlasutil", description="Atlas utilities")

    parser.add_argument(
        "--networks-file",
        default=None,
        help="JSON file of networks to resolve against, in order.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser(
        "sync", help="Copy a repository collection into a local content mirror"
    )
    sync.add_argument("subject", help="The handle or DID to sync.")
    sync.add_argument(
        "--collection",
        default=DEFAULT_CHAT_COLLECTION,
        help="The collection to copy.",
    )
    sync.add_argument("--output", default="content", help="The mirror root directory.")

    validate = subparsers.add_parser(
        "validate", help="Validate a record against its published lexicon"
    )
    validate.add_argument("collection", help="The NSID of the record's collection.")
    validate.add_argument("record", help="Path to a JSON file holding the record.")
    validate.add_argument("--dns-backend", choices=["doh", "system"], default="doh")
    validate.add_argument("--doh-url", default=DEFAULT_DOH_URL)

    args = vars(parser.parse_args())
    command = args.get("command", None)
    registry = load_registry(args.get("networks_file"))

    if command == "sync":
        await syncRepo(registry, args["subject"], args["collection"], args["output"])
    elif command == "validate":
        await validateRecord(
            registry,
            args["collection"],
            args["record"],
            args["dns_backend"],
            args["doh_url"],
        )


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
