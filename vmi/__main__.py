# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/__main__.py
from __future__ import annotations

import sys
import traceback
from typing import Optional, Sequence

from .cli import COMMANDS, EXIT_FAILED, parse_args_with_config
from .core.exceptions import Fatal, format_exception_for_cli


def _print_stderr(msg: str) -> None:
    print(msg, file=sys.stderr)


def _safe_log(logger, level: str, msg: str) -> None:
    if logger is None:
        _print_stderr(msg)
        return
    fn = getattr(logger, level, None)
    if callable(fn):
        fn(msg)
    else:
        _print_stderr(msg)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logger = None

    # Phase 1: parse + config (argparse exits 2 on bad usage by itself)
    try:
        args, config, logger = parse_args_with_config(argv)
    except Fatal as e:
        _print_stderr(f"💥 ERROR    {format_exception_for_cli(e)}")
        return e.code
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        return 130

    # Phase 2: run the command
    try:
        return COMMANDS[args.command](args, config, logger)
    except Fatal as e:
        _safe_log(logger, "error", format_exception_for_cli(e, verbose=config.logging.verbose))
        return e.code
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        return 130
    except Exception as e:
        _safe_log(logger, "error", f"💥 UNHANDLED {type(e).__name__}: {e}")
        _safe_log(logger, "debug", traceback.format_exc())
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
