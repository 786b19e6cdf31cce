# SPDX-License-Identifier: LGPL-3.0-or-later
"""
End-to-end scenarios: sparse conversion, geometry reporting, a flaky cloud
upload and a tampered OVF manifest
"""

import pytest

from fakes.fake_cloud import FakeImageService, FakeObjectStore, no_sleep
from fakes.images import memory_image, pattern, write_raw
from vmi.cloud.gcp import GceImageAdapter
from vmi.cloud.models import CloudTarget, ImageStatus, ProviderTag
from vmi.core.exceptions import ErrorKind, IntegrityViolation
from vmi.disk.extent import ExtentKind
from vmi.formats.descriptor import FormatDescriptor
from vmi.formats.ovf.codec import OvfCodec
from vmi.inspect import inspect
from vmi.pipeline.job import ConversionJob, JobState
from vmi.pipeline.pipeline import ConversionPipeline

pytestmark = pytest.mark.integration

MIB = 1024 * 1024


def test_raw_with_zero_tail_to_sparse_vmdk(tmp_path):
    src = tmp_path / "disk.img"
    chunk = pattern(MIB)
    with open(src, "wb") as f:
        for _ in range(60):
            f.write(chunk)
        # explicit zeros, not a hole
        f.write(bytes(40 * MIB))
    assert src.stat().st_size == 100 * MIB

    dst = tmp_path / "disk.vmdk"
    outcome = ConversionPipeline().run(ConversionJob(FormatDescriptor(None, src), FormatDescriptor(None, dst)))
    assert outcome.ok, outcome
    assert dst.stat().st_size < 100 * MIB

    md = inspect(str(dst))
    assert md.format == "vmdk"
    assert md.virtual_size == 100 * MIB
    assert md.sparse_ratio >= 0.4


def test_vmdk_geometry_reported_exactly(tmp_path):
    write_raw(tmp_path / "geo-flat.vmdk", 504000 * 512, [(0, pattern(4096))])
    desc = tmp_path / "geo.vmdk"
    desc.write_text(
        "# Disk DescriptorFile\n"
        "version=1\n"
        "CID=fffffffe\n"
        "parentCID=ffffffff\n"
        'createType="monolithicFlat"\n'
        "\n"
        '# Extent description\nRW 504000 FLAT "geo-flat.vmdk" 0\n'
        "\n"
        '# The Disk Data Base\nddb.adapterType = "lsilogic"\n'
        'ddb.geometry.cylinders = "500"\n'
        'ddb.geometry.heads = "16"\n'
        'ddb.geometry.sectors = "63"\n'
    )
    md = inspect(str(desc))
    assert md.geometry == (500, 16, 63)
    assert md.fields["adapter_type"] == "lsilogic"


def test_gce_import_survives_one_failed_part(tmp_path):
    store = FakeObjectStore(fail_parts={1: 1})
    service = FakeImageService(store, image_id="web-01")
    adapter = GceImageAdapter(store, service, compress_level=1, sleep=no_sleep)
    image = memory_image((ExtentKind.DATA, pattern(MIB)), (ExtentKind.SPARSE, 3 * MIB))

    handle = adapter.import_image(image, CloudTarget(ProviderTag.GCP, "my-project", "web-01"))

    assert handle.status == ImageStatus.AVAILABLE
    assert handle.ref == "gce://my-project/web-01"
    # the compressed payload fits one part: one failure, one success
    assert len(store.attempts) == 2
    assert store.part_attempts(1) == 2
    assert store.aborted == []


def test_corrupted_ovf_manifest_is_rejected(tmp_path):
    ovf = tmp_path / "vm.ovf"
    OvfCodec().create(memory_image((ExtentKind.DATA, pattern(MIB)), (ExtentKind.ZERO, MIB)), ovf)
    mf = tmp_path / "vm.mf"
    lines = mf.read_text().splitlines()
    i = next(n for n, line in enumerate(lines) if "disk1" in line)
    digest = lines[i].rsplit(" ", 1)[1]
    lines[i] = lines[i][: -len(digest)] + ("0" if digest[0] != "0" else "1") + digest[1:]
    mf.write_text("\n".join(lines) + "\n")

    with pytest.raises(IntegrityViolation, match="disk1"):
        OvfCodec().open(ovf)

    dst = tmp_path / "out.img"
    job = ConversionJob(FormatDescriptor(None, ovf), FormatDescriptor(None, dst))
    outcome = ConversionPipeline().run(job)
    assert outcome.kind == ErrorKind.INTEGRITY_VIOLATION
    assert job.states == [JobState.IDLE, JobState.READING, JobState.FAILED]
    assert not dst.exists()


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
