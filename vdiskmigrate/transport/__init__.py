# SPDX-License-Identifier: LGPL-3.0-or-later
from .nbd_server import NBDServer, NBDServerFactory, parse_fraction, server_factory
from .progress import LoggingProgressReporter, ProgressReporter, RichProgressReporter, make_progress_reporter

__all__ = [
    "LoggingProgressReporter",
    "NBDServer",
    "NBDServerFactory",
    "ProgressReporter",
    "RichProgressReporter",
    "make_progress_reporter",
    "parse_fraction",
    "server_factory",
]
