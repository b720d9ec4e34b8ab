from typing import Dict, List
import argparse
import aiohttp
import asyncio
import logging

from social.atlas.errors import ResolutionFailed
from social.atlas.model.network import NetworkRegistry
from social.atlas.resolve.handle import IdentityResolver

logger = logging.getLogger(__name__)


def parse_pins(pins: List[str]) -> Dict[str, str]:
    pinned: Dict[str, str] = {}
    for pin in pins:
        handle, sep, network = pin.partition("=")
        if len(sep) == 0 or len(handle) == 0 or len(network) == 0:
            raise argparse.ArgumentTypeError(f"expected handle=network, got {pin!r}")
        pinned[handle] = network
    return pinned


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="resolve", description="Resolve handles")
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--networks-file",
        default=None,
        help="JSON file of networks to resolve against, in order.",
    )
    parser.add_argument(
        "--pin",
        action="append",
        default=[],
        help="Resolve a handle against a network first, as handle=network.",
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])
    networks_file = args.get("networks_file")
    registry = (
        NetworkRegistry.from_file(networks_file)
        if networks_file
        else NetworkRegistry.default()
    )

    async with aiohttp.ClientSession() as session:
        resolver = IdentityResolver(
            session, registry, pinned_handles=parse_pins(args.get("pin", []))
        )
        for subject in subjects:
            try:
                identity = await resolver.resolve_identity(subject)
            except ResolutionFailed as e:
                print(f"{subject}: {e}")
                continue
            endpoints = resolver.endpoints_for(identity.repo_host)
            print(f"{subject}: {identity.model_dump_json()}")
            print(f"  network: {endpoints.model_dump_json()}")


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
