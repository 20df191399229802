"""
Certificate Worker CLI entry point.

Usage:
    python -m certificate_pipeline.worker [OPTIONS]

Options:
    --poll-interval N   Seconds between polls (default: from config)
    --claim-limit N     Rows to claim per poll (default: from config)
    --concurrency N     Rows generated in parallel (default: from config)
"""
from __future__ import annotations

import argparse
import sys

from .loop import run_worker


def main() -> int:
    """Main entry point for worker CLI."""
    parser = argparse.ArgumentParser(
        description="Certificate Worker - generates certificates for paid claims",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with default settings
    python -m certificate_pipeline.worker

    # Poll every 10 seconds, two documents at a time
    python -m certificate_pipeline.worker --poll-interval 10 --concurrency 2
        """,
    )

    parser.add_argument(
        "--poll-interval",
        type=int,
        default=None,
        help="Seconds between poll cycles (default: from config)",
    )
    parser.add_argument(
        "--claim-limit",
        type=int,
        default=None,
        help="Max rows to claim per poll cycle (default: from config)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Rows generated in parallel (default: from config)",
    )

    args = parser.parse_args()

    print("Starting Certificate Worker...")
    print(f"  Poll interval: {args.poll_interval or 'from config'}")
    print(f"  Claim limit: {args.claim_limit or 'from config'}")
    print(f"  Concurrency: {args.concurrency or 'from config'}")
    print()

    try:
        run_worker(
            poll_interval=args.poll_interval,
            claim_limit=args.claim_limit,
            concurrency=args.concurrency,
        )
        return 0
    except KeyboardInterrupt:
        print("\nWorker stopped by user")
        return 0
    except Exception as e:
        print(f"Worker error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
