# src/task_lifecycle/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs the console REPL in the main thread.
"""

from __future__ import annotations

import logging

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()

    # choose console log level from settings.log_level
    console_level = getattr(logging, settings.log_level, logging.INFO)
    audit_path = setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s (db=%s, audit=%s)...", settings.app_name, settings.db_path, audit_path)

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)
    logger.info("Store holds %d task(s).", state.task_store.count_tasks())

    try:
        run_console_loop(state)
    finally:
        state.task_store.close()
        logger.info("Bye.")


if __name__ == "__main__":
    main()
