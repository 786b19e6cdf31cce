# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
from .commands import EXIT_FAILED, EXIT_OK, EXIT_USAGE, cmd_convert, cmd_inspect
from .parser import build_parser, parse_args_with_config

COMMANDS = {
    "convert": cmd_convert,
    "inspect": cmd_inspect,
}

__all__ = [
    "COMMANDS",
    "EXIT_FAILED",
    "EXIT_OK",
    "EXIT_USAGE",
    "build_parser",
    "cmd_convert",
    "cmd_inspect",
    "parse_args_with_config",
]
