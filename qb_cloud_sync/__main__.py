"""
Main entry point for the qb-cloud-sync application.

Exit codes:
    0    success, or a daemon stopped by a signal
    1    unexpected or task database errors
    2    invalid configuration or archiving rules
    3    another process is already processing the task database
    4    qBittorrent was unreachable or rejected the login (including an
         aborted ``once`` cycle)
    130  interrupted with Ctrl+C outside the daemon's own signal handling
"""

import asyncio
import logging
import os
import sys

from rich.console import Console

from qb_cloud_sync.cli.app import app
from qb_cloud_sync.cli.formatters import format_error_with_suggestions
from qb_cloud_sync.exceptions import EXIT_FAILURE, EXIT_INTERRUPTED, QbCloudSyncError


def main() -> None:
    if os.name == "nt":
        try:
            sys.stdout.reconfigure(encoding="utf-8")
            sys.stderr.reconfigure(encoding="utf-8")
        except (TypeError, AttributeError):
            pass

    log = logging.getLogger("qb_cloud_sync")
    console = Console(stderr=True)

    try:
        app()
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]⚠️  Interrupted; tasks left mid-attempt are retried on the next start.[/yellow]")
        sys.exit(EXIT_INTERRUPTED)
    except QbCloudSyncError as e:
        console.print(f"\n{format_error_with_suggestions(e)}")
        log.debug("Full traceback:", exc_info=True)
        sys.exit(e.exit_code)
    except Exception as e:
        console.print(f"\n{format_error_with_suggestions(e, {'type': 'Unexpected'})}")
        log.debug("Full traceback:", exc_info=True)
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
