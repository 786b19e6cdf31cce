# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/pipeline/pipeline.py
"""
Conversion pipeline.

    Idle -> Reading -> Transforming -> Writing -> Done | Failed

Reading opens the source (codec or cloud export) into a DiskImage.
Transforming rewrites the extent list for the destination (size alignment).
Writing runs a producer thread that reads blocks in offset order into a
bounded queue; the destination writer consumes them on the calling thread
while a running checksum is taken over the logical disk content.

Jobs are never retried here; a failure is recorded on the job and partially
written destination files are removed.
"""
from __future__ import annotations

import hashlib
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from ..cloud.adapter import CloudAdapter
from ..cloud.models import CloudImageHandle, CloudTarget, ProviderTag
from ..config import Config
from ..core.exceptions import Cancelled, ErrorKind, Fatal, MalformedLayout
from ..core.logger import Log
from ..core.utils import U
from ..disk.extent import Block, DiskImage
from ..formats.descriptor import FormatDescriptor
from ..formats.registry import FormatRegistry
from .endpoints import AdapterResolver
from .job import ConversionJob, JobState, Outcome, Succeeded
from .progress import NoopProgressReporter, ProgressReporter
from .transform import prepare

LOG = logging.getLogger(__name__)


class _Done:
    pass


class _Raised:
    def __init__(self, error: BaseException):
        self.error = error


_DONE = _Done()


class BlockFeed:
    """
    Producer side of the Writing phase: a thread pulls `image.blocks()` into
    a queue of at most `depth` entries, so the reader never runs more than
    `depth` blocks ahead of the writer.
    """

    def __init__(self, image: DiskImage, *, chunk_size: int, depth: int, cancel: Any):
        self.image = image
        self.chunk_size = chunk_size
        self.cancel = cancel
        self.max_queued = 0
        self._q: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, depth))
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._produce, name="vmi-reader", daemon=True)

    def _put(self, item: Any) -> bool:
        while not self._stop.is_set():
            try:
                self._q.put(item, timeout=0.1)
            except queue.Full:
                continue
            self.max_queued = max(self.max_queued, self._q.qsize())
            return True
        return False

    def _produce(self) -> None:
        try:
            for block in self.image.blocks(self.chunk_size):
                if self.cancel.is_set():
                    break
                if not self._put(block):
                    return
            self._put(_DONE)
        except BaseException as e:  # handed to the consumer
            self._put(_Raised(e))

    def __iter__(self) -> Iterator[Block]:
        self._thread.start()
        while True:
            if self.cancel.is_set():
                raise Cancelled(msg="conversion cancelled")
            try:
                item = self._q.get(timeout=0.1)
            except queue.Empty:
                continue
            if item is _DONE:
                return
            if isinstance(item, _Raised):
                raise item.error
            yield item

    def close(self) -> None:
        self._stop.set()
        # unblock a producer waiting on a full queue
        while True:
            try:
                self._q.get_nowait()
            except queue.Empty:
                break
        if self._thread.is_alive():
            self._thread.join(timeout=5.0)


class ConversionPipeline:
    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        registry: Optional[FormatRegistry] = None,
        adapters: Optional[Mapping[ProviderTag, CloudAdapter]] = None,
        progress: Optional[Callable[[], ProgressReporter]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or Config()
        self.registry = registry or FormatRegistry.default(zero_block_size=self.config.pipeline.zero_block_size)
        self.adapter_for = AdapterResolver(self.config, adapters)
        self.progress = progress or NoopProgressReporter
        self.logger = logger or LOG

    # ------------------------------------------------------------------
    # phases
    # ------------------------------------------------------------------

    def _read(self, job: ConversionJob) -> DiskImage:
        src = job.source
        if isinstance(src, CloudImageHandle):
            return self.adapter_for(src.provider).export_image(src, cancel=job.cancel)
        if isinstance(src, FormatDescriptor):
            if src.path is None:
                raise MalformedLayout(msg="source descriptor has no path")
            return self.registry.open(src.path, src.tag, **job.source_options)
        raise TypeError(f"unsupported source endpoint {src!r}")

    def _checksummed(self, job: ConversionJob, feed: BlockFeed, h: Any, reporter: ProgressReporter) -> Iterator[Block]:
        for block in feed:
            if block.data is not None:
                h.update(block.data)
            else:
                U.update_zeros(h, block.length)
            job.progress.bytes_done += block.length
            reporter.update(block.length)
            yield block

    def _plan_output(self, job: ConversionJob, image: DiskImage) -> Tuple[Dict[str, Any], List[Path]]:
        """
        Writer options with the VMDK variant pinned, and the files the writer
        is going to (re)create. Refuses destinations that would overwrite a
        file the source is read from.
        """
        dst = job.destination
        options = dict(job.options)
        if not isinstance(dst, FormatDescriptor):
            return options, []
        if dst.path is None or dst.tag is None:
            raise MalformedLayout(msg="destination descriptor needs a path and a format")
        codec = self.registry.resolve(dst.tag)
        variant_for = getattr(codec, "variant_for", None)
        if variant_for is not None:
            options["variant"] = variant_for(image, options.get("variant"))
        outputs = [Path(p) for p in codec.artifacts(dst.path, **options)]
        targets = outputs if Path(dst.path) in outputs else outputs + [Path(dst.path)]
        sources = image.source_paths()
        for target in targets:
            for src in sources:
                if U.same_file(target, src):
                    raise Fatal(
                        code=2,
                        msg=f"destination {target} would overwrite source file {src}",
                        context={"destination": str(dst.path)},
                    )
        return options, outputs

    def _write(
        self, job: ConversionJob, image: DiskImage, blocks: Iterator[Block], options: Dict[str, Any]
    ) -> Tuple[int, Any]:
        dst = job.destination
        if isinstance(dst, CloudTarget):
            name = job.options.get("name") or _default_name(job.source)
            handle = self.adapter_for(dst.provider).import_image(
                image, dst, blocks=blocks, cancel=job.cancel, name=name
            )
            return int(handle.details.get("bytes_uploaded", 0)), handle
        if isinstance(dst, FormatDescriptor):
            codec = self.registry.resolve(dst.tag)
            written = codec.create(image, dst.path, blocks=blocks, **options)
            return written, dst.path
        raise TypeError(f"unsupported destination endpoint {dst!r}")

    def _remove_partial(self, outputs: Sequence[Path]) -> None:
        for p in outputs:
            if p.exists():
                self.logger.info("Removing partial output %s", p)
                U.safe_unlink(p)

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def run(self, job: ConversionJob) -> Outcome:
        log = Log.bind(self.logger, src=_describe(job.source), dst=_describe(job.destination))
        cfg = self.config.pipeline
        image: Optional[DiskImage] = None
        feed: Optional[BlockFeed] = None
        reporter = self.progress()
        started = False
        outputs: List[Path] = []
        try:
            job.transition(JobState.READING)
            Log.step(log, "Reading source")
            image = self._read(job)
            log.debug("Read %r", image)

            job.transition(JobState.TRANSFORMING)
            out = prepare(image, job.destination)
            options, outputs = self._plan_output(job, out)
            job.progress.bytes_total = out.virtual_size

            job.transition(JobState.WRITING)
            Log.step(log, "Writing destination")
            h = hashlib.new(cfg.checksum_algo)
            feed = BlockFeed(out, chunk_size=cfg.chunk_size, depth=cfg.queue_depth, cancel=job.cancel)
            reporter.start(f"{_describe(job.source)} -> {_describe(job.destination)}", out.virtual_size)
            started = True
            written, result = self._write(job, out, self._checksummed(job, feed, h, reporter), options)
            if job.cancel.is_set():
                raise Cancelled(msg="conversion cancelled")
            if job.progress.bytes_done != out.virtual_size:
                raise MalformedLayout(
                    msg=f"writer consumed {job.progress.bytes_done} of {out.virtual_size} bytes",
                )
            job.progress.max_queued = feed.max_queued
            job.succeed(Succeeded(written, h.hexdigest(), cfg.checksum_algo, result))
            Log.ok(log, f"Conversion done: {U.human_bytes(written)} written, {cfg.checksum_algo} {h.hexdigest()}")
        except Exception as e:
            if job.state == JobState.WRITING:
                self._remove_partial(outputs)
            outcome = job.fail(e)
            if outcome.kind == ErrorKind.CANCELLED:
                Log.warn(log, "Conversion cancelled")
            else:
                Log.fail(log, "Conversion failed: " + (" <- ".join(outcome.chain) or outcome.message))
        finally:
            if feed is not None:
                job.progress.max_queued = max(job.progress.max_queued, feed.max_queued)
                feed.close()
            if started:
                reporter.finish()
            if image is not None:
                image.close()
        assert job.outcome is not None
        return job.outcome

    def run_many(self, jobs: Sequence[ConversionJob], max_workers: int = 4) -> List[Outcome]:
        """Run independent jobs concurrently; outcomes are returned in job order."""
        with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="vmi-job") as pool:
            return list(pool.map(self.run, jobs))


def _describe(ep: Any) -> str:
    if isinstance(ep, CloudImageHandle):
        return ep.ref
    if isinstance(ep, CloudTarget):
        scheme = "aws" if ep.provider == ProviderTag.AWS else "gce"
        return f"{scheme}://{ep.location}" + (f"/{ep.name}" if ep.name else "")
    if isinstance(ep, FormatDescriptor):
        return str(ep.path)
    return repr(ep)


def _default_name(source: Any) -> str:
    if isinstance(source, FormatDescriptor) and source.path is not None:
        stem = source.path.name.split(".")[0].lower()
        cleaned = "".join(ch if ch.isalnum() or ch == "-" else "-" for ch in stem).strip("-")
        if cleaned and cleaned[0].isalpha():
            return cleaned[:63]
    if isinstance(source, CloudImageHandle):
        return source.image_id
    return "vmi-image"
