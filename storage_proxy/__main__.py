"""
Command-line bootstrap for the storage proxy.

Usage:
    python -m storage_proxy --bucket my-bucket [--address 0.0.0.0] [--port 8080]
        [--prefix v1/] [--strip-path-prefix /microservices/]

Every flag defaults to the matching environment setting (BUCKET_NAME,
LISTEN_ADDRESS, PORT, DEFAULT_PREFIX, STRIP_PATH_PREFIX), so a .env file
works as well.
"""

import argparse
import logging
import sys
from typing import Optional, Sequence

from .config.settings import get_settings
from .main import ProxyServeError, serve

logger = logging.getLogger("storage_proxy")


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="storage-proxy",
        description="Serve objects from a bucket over plain HTTP",
    )
    parser.add_argument("--address", default=settings.listen_address, help="Address to listen on")
    parser.add_argument("--port", type=int, default=settings.port, help="Port to serve")
    parser.add_argument("--bucket", default=settings.bucket_name, help="Bucket name")
    parser.add_argument(
        "--prefix",
        default=settings.default_prefix,
        help="Optional general object prefix (e.g. version directory).",
    )
    parser.add_argument(
        "--strip-path-prefix",
        default=settings.strip_path_prefix,
        help="Runtime path prefix to strip from incoming requests (e.g. '/microservices/').",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if not args.bucket:
        logger.error("Please specify the bucket name (--bucket or BUCKET_NAME)")
        return 1

    settings = get_settings().model_copy(
        update={
            "listen_address": args.address,
            "port": args.port,
            "bucket_name": args.bucket,
            "default_prefix": args.prefix,
            "strip_path_prefix": args.strip_path_prefix,
        }
    )

    try:
        serve(args.address, args.port, settings=settings)
    except (ProxyServeError, ValueError) as e:
        logger.error("Failed to start proxy: %s", e)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
