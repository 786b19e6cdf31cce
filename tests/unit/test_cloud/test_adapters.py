# SPDX-License-Identifier: LGPL-3.0-or-later
"""
Unit tests for the AWS and GCP adapters against in-memory provider fakes
"""

import io
import logging
import tarfile
import threading

import pytest

from fakes.fake_cloud import FakeImageService, FakeObjectStore, no_sleep
from fakes.images import dense, memory_image, pattern
from vmi.cloud.adapter import TransferSettings, load_client_factory
from vmi.cloud.aws import AwsAmiAdapter
from vmi.cloud.gcp import GIB, GceImageAdapter
from vmi.cloud.models import CloudImageHandle, CloudTarget, ImageStatus, ImportStatus, ProviderTag
from vmi.core.exceptions import Cancelled, Fatal, ImageNotFound, ImportRejected
from vmi.disk.extent import ExtentKind
from vmi.formats.vmdk.codec import VmdkCodec

MIB = 1024 * 1024
AMI = "ami-0123456789abcdef0"


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def log_records():
    logger = logging.getLogger("test.adapters")
    logger.setLevel(logging.DEBUG)
    handler = ListHandler()
    logger.addHandler(handler)
    yield logger, handler.records
    logger.removeHandler(handler)


@pytest.fixture
def image():
    return memory_image(
        (ExtentKind.DATA, pattern(MIB)),
        (ExtentKind.SPARSE, 2 * MIB),
        (ExtentKind.DATA, pattern(4096, seed=3)),
        (ExtentKind.ZERO, MIB - 4096),
    )


def _aws(store, service, **kw):
    settings = TransferSettings(part_size=16 * 1024, poll_interval_s=1.0, poll_timeout_s=60.0)
    return AwsAmiAdapter(store, service, settings=settings, sleep=no_sleep, **kw)


@pytest.mark.unit
class TestAwsImport:
    def test_streams_vmdk_and_waits_for_available(self, tmp_path, image):
        store = FakeObjectStore()
        service = FakeImageService(store, import_statuses=[
            ImportStatus(ImageStatus.PENDING, progress=5.0),
            ImportStatus(ImageStatus.PENDING, progress=60.0),
            ImportStatus(ImageStatus.AVAILABLE, image_id=AMI),
        ])
        adapter = _aws(store, service, role_name="vmimport")
        handle = adapter.import_image(image, CloudTarget(ProviderTag.AWS, "us-east-1", "web"))

        assert handle.status == ImageStatus.AVAILABLE
        assert handle.ref == f"aws://us-east-1/{AMI}"
        assert service.polls == 3

        imp = service.imports[0]
        assert imp["key"] == "vmi/web.vmdk"
        assert imp["disk_format"] == "vmdk"
        assert imp["meta"] == {"name": "web", "role_name": "vmimport"}
        assert handle.details["bytes_uploaded"] == len(imp["payload"])
        # the staging object is gone afterwards
        assert store.deleted == ["vmi/web.vmdk"]

        payload = tmp_path / "payload.vmdk"
        payload.write_bytes(imp["payload"])
        back = VmdkCodec().open(payload)
        assert back.descriptor.metadata["create_type"] == "streamOptimized"
        assert dense(back) == dense(image)

    def test_raw_payload(self, image):
        store = FakeObjectStore()
        service = FakeImageService(store)
        adapter = _aws(store, service, disk_format="raw")
        adapter.import_image(image, CloudTarget(ProviderTag.AWS, "us-east-1"), name="fallback")
        imp = service.imports[0]
        assert imp["key"] == "vmi/fallback.raw"
        assert imp["payload"] == dense(image)

    def test_bad_disk_format(self):
        store = FakeObjectStore()
        with pytest.raises(Fatal) as ei:
            AwsAmiAdapter(store, FakeImageService(store), disk_format="vhd")
        assert ei.value.code == 2

    def test_part_failure_is_retried(self, image):
        store = FakeObjectStore(fail_parts={1: 1})
        service = FakeImageService(store)
        handle = _aws(store, service).import_image(image, CloudTarget(ProviderTag.AWS, "us-east-1", "web"))
        assert handle.status == ImageStatus.AVAILABLE
        assert store.part_attempts(1) == 2

    def test_rejected_import(self, image):
        store = FakeObjectStore()
        service = FakeImageService(store, import_statuses=[
            ImportStatus(ImageStatus.PENDING),
            ImportStatus(ImageStatus.FAILED, message="ClientError: Unknown OS / Missing OS files."),
        ])
        with pytest.raises(ImportRejected) as ei:
            _aws(store, service).import_image(image, CloudTarget(ProviderTag.AWS, "us-east-1", "web"))
        assert "Unknown OS" in ei.value.provider_message

    def test_cancel_while_pending(self, image):
        cancel = threading.Event()

        class CancellingService(FakeImageService):
            def poll_import(self, task_id):
                cancel.set()
                return ImportStatus(ImageStatus.PENDING)

        store = FakeObjectStore()
        service = CancellingService(store)
        with pytest.raises(Cancelled):
            _aws(store, service).import_image(image, CloudTarget(ProviderTag.AWS, "us-east-1", "web"), cancel=cancel)
        assert len(service.imports) == 1

    def test_staging_delete_failure_only_warns(self, image, log_records):
        logger, records = log_records
        store = FakeObjectStore(fail_delete=True)
        service = FakeImageService(store)
        adapter = _aws(store, service, logger=logger)
        handle = adapter.import_image(image, CloudTarget(ProviderTag.AWS, "us-east-1", "web"))
        assert handle.status == ImageStatus.AVAILABLE
        warnings = [r.getMessage() for r in records if r.levelno == logging.WARNING]
        assert any("vmi/web.vmdk" in w for w in warnings)


@pytest.mark.unit
class TestAwsExport:
    def test_missing_image(self, tmp_path):
        store = FakeObjectStore()
        adapter = _aws(store, FakeImageService(store))
        handle = CloudImageHandle(ProviderTag.AWS, "ami-deadbeef", "us-east-1")
        with pytest.raises(ImageNotFound):
            adapter.describe(handle)
        with pytest.raises(ImageNotFound):
            adapter.export_image(handle)

    def test_export_round_trip(self, tmp_path, image):
        buf = io.BytesIO()
        VmdkCodec().write_stream(image, buf)
        store = FakeObjectStore()
        service = FakeImageService(store)
        service.add_image(AMI, buf.getvalue(), name="web")
        settings = TransferSettings(work_dir=tmp_path / "work", download_chunk=64 * 1024)
        adapter = AwsAmiAdapter(store, service, settings=settings, sleep=no_sleep)

        handle = CloudImageHandle(ProviderTag.AWS, AMI, "us-east-1")
        assert adapter.describe(handle) == {"name": "web"}
        exported = adapter.export_image(handle)
        assert service.exports[0]["key"] == f"vmi/export/{AMI}.vmdk"
        assert store.deleted == [f"vmi/export/{AMI}.vmdk"]
        assert dense(exported) == dense(image)

        downloads = list((tmp_path / "work").iterdir())
        assert len(downloads) == 1
        exported.close()
        assert not downloads[0].exists()


@pytest.mark.unit
class TestGce:
    def test_payload_is_gzip_tar_padded_to_gib(self, image):
        store = FakeObjectStore()
        service = FakeImageService(store, image_id="web-01")
        adapter = GceImageAdapter(store, service, family="web", compress_level=1, sleep=no_sleep)
        handle = adapter.import_image(image, CloudTarget(ProviderTag.GCP, "my-project", "web-01"))
        assert handle.ref == "gce://my-project/web-01"

        imp = service.imports[0]
        assert imp["key"] == "vmi/web-01.tar.gz"
        assert imp["disk_format"] == "tar.gz"
        assert imp["meta"] == {"name": "web-01", "family": "web"}
        with tarfile.open(fileobj=io.BytesIO(imp["payload"]), mode="r:gz") as tar:
            members = tar.getmembers()
            assert [(m.name, m.size) for m in members] == [("disk.raw", GIB)]
            head = tar.extractfile(members[0]).read(image.virtual_size)
        assert head == dense(image)

    def test_export_round_trip(self, tmp_path, image):
        store = FakeObjectStore()
        service = FakeImageService(store, image_id="web-01")
        settings = TransferSettings(work_dir=tmp_path)
        adapter = GceImageAdapter(store, service, compress_level=1, settings=settings, sleep=no_sleep)
        adapter.import_image(image, CloudTarget(ProviderTag.GCP, "my-project", "web-01"))

        exported = adapter.export_image(CloudImageHandle(ProviderTag.GCP, "web-01", "my-project"))
        assert exported.virtual_size == GIB
        assert exported.read_at(0, image.virtual_size) == dense(image)
        assert exported.is_unallocated(image.virtual_size, GIB - image.virtual_size)
        exported.close()
        assert list(tmp_path.iterdir()) == []


@pytest.mark.unit
class TestClientFactory:
    def test_resolves_callable(self):
        assert load_client_factory("fakes.fake_cloud:no_sleep") is no_sleep

    @pytest.mark.parametrize("dotted", ["", "fakes.fake_cloud", "no.such.module:x", "fakes.fake_cloud:missing"])
    def test_bad_references(self, dotted):
        with pytest.raises(Fatal):
            load_client_factory(dotted)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
