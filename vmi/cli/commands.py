# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/cli/commands.py
"""
Command handlers. Each returns the process exit code:
0 success, 1 conversion/inspect failure, 2 invalid arguments or config.
"""
from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Any, Dict

from rich.console import Console
from rich.table import Table
from rich.text import Text

from ..cloud.models import CloudImageHandle
from ..config import Config
from ..core.exceptions import Fatal, VmiError, format_exception_for_cli
from ..core.utils import U
from ..formats.descriptor import FormatTag
from ..inspect import Metadata, inspect
from ..pipeline.endpoints import parse_destination, parse_source
from ..pipeline.job import ConversionJob, Failed
from ..pipeline.pipeline import ConversionPipeline
from ..pipeline.progress import create_progress_reporter

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _exit_code(e: BaseException) -> int:
    return EXIT_USAGE if isinstance(e, Fatal) else EXIT_FAILED


def _source_options(args: argparse.Namespace) -> Dict[str, Any]:
    opts: Dict[str, Any] = {"verify": args.verify}
    if args.disk_index is not None:
        opts["disk_index"] = args.disk_index
    return opts


def cmd_convert(args: argparse.Namespace, config: Config, logger: logging.Logger) -> int:
    try:
        source = parse_source(args.src, config, fmt=args.source_format)
        destination = parse_destination(args.dst, config, fmt=args.format)
    except VmiError as e:
        # bad locations or format names are usage errors
        logger.error("%s", format_exception_for_cli(e, verbose=config.logging.verbose))
        return EXIT_USAGE

    options = {
        k: v
        for k, v in {
            "variant": args.dest_variant,
            "disk_format": args.disk_format,
            "manifest_algorithm": args.manifest_algorithm,
            "name": args.name,
        }.items()
        if v is not None
    }
    if args.format and args.format.lower() in ("ova", "ovf"):
        # the OVF codec writes both; the name given on the command line picks one
        options["package"] = args.format.lower()
    job = ConversionJob(source, destination, options, _source_options(args))
    pipeline = ConversionPipeline(
        config,
        progress=lambda: create_progress_reporter(
            logger, show_progress=args.progress and not args.json, quiet=config.logging.quiet > 0
        ),
        logger=logger,
    )

    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGINT, lambda *_: job.cancel.cancel())
    try:
        outcome = pipeline.run(job)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    if isinstance(outcome, Failed):
        err = outcome.error
        if err is not None:
            logger.error("%s", format_exception_for_cli(err, verbose=config.logging.verbose + 1))
        return _exit_code(err) if err is not None else EXIT_FAILED

    result = outcome.result
    summary: Dict[str, Any] = {
        "bytes_written": outcome.bytes_written,
        "checksum": outcome.checksum,
        "algorithm": outcome.algorithm,
        "states": [s.value for s in job.states],
    }
    if isinstance(result, CloudImageHandle):
        summary["image"] = result.ref
        summary["status"] = result.status.value
    elif result is not None:
        summary["output"] = str(result)
    if args.json:
        print(U.json_dump(summary))
    else:
        target = summary.get("image") or summary.get("output")
        print(f"{target}: {U.human_bytes(outcome.bytes_written)} written, {outcome.algorithm} {outcome.checksum}")
    return EXIT_OK


def render_table(md: Metadata) -> Table:
    table = Table(title=Text(md.source), show_header=False, title_style="bold cyan")
    table.add_column("field", style="bold")
    table.add_column("value")
    table.add_row("format", Text(md.format))
    table.add_row(
        "virtual size",
        f"{U.human_bytes(md.virtual_size)} ({md.virtual_size} bytes)" if md.virtual_size is not None else "unknown",
    )
    if md.extents is not None:
        e = md.extents
        table.add_row("extents", f"{e.count} ({e.data} data, {e.zero} zero, {e.sparse} sparse)")
        table.add_row("allocated", U.human_bytes(e.allocated_bytes))
        table.add_row("sparse ratio", f"{e.sparse_ratio:.3f}")
    if md.geometry:
        table.add_row("geometry", "cylinders={},heads={},sectors={}".format(*md.geometry))
    for key in sorted(md.fields):
        value = md.fields[key]
        if key == "geometry":
            continue
        table.add_row(key, Text(value if isinstance(value, str) else U.json_dump(value)))
    return table


def cmd_inspect(args: argparse.Namespace, config: Config, logger: logging.Logger) -> int:
    try:
        if args.format:
            FormatTag.parse(args.format)
    except VmiError as e:
        logger.error("%s", format_exception_for_cli(e, verbose=config.logging.verbose))
        return EXIT_USAGE
    try:
        md = inspect(args.source, fmt=args.format, config=config, options=_source_options(args))
    except VmiError as e:
        logger.error("%s", format_exception_for_cli(e, verbose=config.logging.verbose + 1))
        return _exit_code(e)

    if args.json:
        print(U.json_dump(md.to_dict()))
    else:
        Console().print(render_table(md))
    return EXIT_OK
