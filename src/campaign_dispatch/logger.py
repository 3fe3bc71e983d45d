# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the campaign dispatcher.

Handlers, level and format are configured once with ``logging.basicConfig()``
in the entry point (see :func:`configure_logging`); modules only fetch
named loggers.

Example:
    Typical usage in a module::

        from campaign_dispatch.logger import get_logger

        logger = get_logger("JobQueue")
        logger.info("Claimed job %s", job_id)
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "CampaignDispatch") -> logging.Logger:
    """Retrieve a named logger.

    Args:
        name: The logger name. Defaults to "CampaignDispatch".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for CLI and server entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
