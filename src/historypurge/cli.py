"""Command-line interface for historypurge."""

import argparse
import asyncio
import os
import sys
from typing import Optional, Sequence

from . import __version__
from .batch import DEFAULT_BATCH_SIZE
from .checkpoint import DEFAULT_AUTOSAVE_INTERVAL
from .client import DEFAULT_REQUEST_DELAY, load_client_factory
from .errors import StartupError
from .purger import async_main

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_ABORTED = 130


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="historypurge - Resumable bulk purge of file version history in remote document stores",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "site",
        help="Site to purge (e.g. https://example.sharepoint.com/sites/team)",
    )

    parser.add_argument(
        "--username",
        default=os.getenv("HISTORYPURGE_USERNAME", ""),
        help="Identity the remote client authenticates as (also keys the checkpoint)",
    )

    parser.add_argument(
        "--client-factory",
        default=os.getenv("HISTORYPURGE_CLIENT_FACTORY"),
        help="'module:callable' returning a remote client for (site, username)",
    )

    parser.add_argument(
        "--workers",
        type=int,
        default=int(os.getenv("HISTORYPURGE_WORKERS", "0")),
        help="Worker connections for parallel purging (0 = single connection, max 64)",
    )

    parser.add_argument(
        "--batch-size",
        type=int,
        default=int(os.getenv("HISTORYPURGE_BATCH_SIZE", str(DEFAULT_BATCH_SIZE))),
        help="Maximum files per remote request",
    )

    parser.add_argument(
        "--request-delay",
        type=float,
        default=float(os.getenv("HISTORYPURGE_REQUEST_DELAY", str(DEFAULT_REQUEST_DELAY))),
        help="Seconds to sleep after every remote request",
    )

    parser.add_argument(
        "--autosave-interval",
        type=float,
        default=float(os.getenv("HISTORYPURGE_AUTOSAVE_INTERVAL", str(DEFAULT_AUTOSAVE_INTERVAL))),
        help="Seconds between periodic checkpoint saves",
    )

    parser.add_argument(
        "--state-dir",
        default=os.getenv("HISTORYPURGE_STATE_DIR", "."),
        help="Directory holding checkpoint files",
    )

    parser.add_argument(
        "--checkpoint",
        default=os.getenv("HISTORYPURGE_CHECKPOINT"),
        help="Explicit checkpoint file (overrides the name derived from site and username)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=os.getenv("HISTORYPURGE_DRY_RUN", "").lower() in ("1", "true", "yes"),
        help="Don't delete anything, just report what would be deleted",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=os.getenv("HISTORYPURGE_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"historypurge {__version__}",
    )

    args = parser.parse_args(argv)
    if not args.client_factory:
        parser.error("--client-factory is required (or set HISTORYPURGE_CLIENT_FACTORY)")
    return args


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point for the CLI."""
    args = parse_args(argv)

    try:
        client_factory = load_client_factory(args.client_factory, args.site, args.username)

        stats = asyncio.run(
            async_main(
                site=args.site,
                username=args.username,
                client_factory=client_factory,
                state_dir=args.state_dir,
                workers=args.workers,
                batch_size=args.batch_size,
                request_delay=args.request_delay,
                autosave_interval=args.autosave_interval,
                dry_run=args.dry_run,
                log_level=args.log_level,
                checkpoint_path=args.checkpoint,
            )
        )

    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        sys.exit(EXIT_ABORTED)
    except StartupError as e:
        print(f"Startup failed: {e}", file=sys.stderr)
        sys.exit(EXIT_FATAL)
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(EXIT_FATAL)

    sys.exit(EXIT_ABORTED if stats.get("aborted") else EXIT_OK)


if __name__ == "__main__":
    main()
