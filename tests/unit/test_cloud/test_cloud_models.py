# SPDX-License-Identifier: LGPL-3.0-or-later
import unittest

from vmi.cloud.models import (
    CloudImageHandle,
    ImageStatus,
    ProviderTag,
    is_cloud_ref,
    parse_cloud_ref,
    parse_cloud_target,
)
from vmi.core.exceptions import Fatal


class TestCloudRefs(unittest.TestCase):
    """Parsing of aws:// and gce:// references."""

    def test_aws_ref(self):
        h = parse_cloud_ref("aws://us-east-1/ami-0123456789abcdef0")
        self.assertEqual(h.provider, ProviderTag.AWS)
        self.assertEqual(h.location, "us-east-1")
        self.assertEqual(h.image_id, "ami-0123456789abcdef0")
        self.assertEqual(h.ref, "aws://us-east-1/ami-0123456789abcdef0")

    def test_bare_ami_needs_region(self):
        h = parse_cloud_ref("ami-0123abcd", default_region="eu-west-1")
        self.assertEqual(h.location, "eu-west-1")
        with self.assertRaises(Fatal) as cm:
            parse_cloud_ref("ami-0123abcd")
        self.assertEqual(cm.exception.code, 2)

    def test_gce_ref(self):
        h = parse_cloud_ref("gce://my-project/web-01")
        self.assertEqual(h.provider, ProviderTag.GCP)
        self.assertEqual(h.ref, "gce://my-project/web-01")

    def test_bad_refs(self):
        for bad in (
            "aws://us-east-1",
            "aws://us-east-1/not-an-ami",
            "s3://bucket/key",
            "aws://",
            "gce://a/b/c",
            "disk.vmdk",
        ):
            with self.subTest(ref=bad):
                with self.assertRaises(Fatal):
                    parse_cloud_ref(bad)

    def test_targets(self):
        t = parse_cloud_target("gce://proj/new-image")
        self.assertEqual((t.provider, t.location, t.name), (ProviderTag.GCP, "proj", "new-image"))
        t = parse_cloud_target("aws://us-west-2")
        self.assertIsNone(t.name)
        with self.assertRaises(Fatal):
            parse_cloud_target("gce://proj/Bad_Name")

    def test_is_cloud_ref(self):
        self.assertTrue(is_cloud_ref("aws://r/ami-12345678"))
        self.assertTrue(is_cloud_ref("GCE://p/i"))
        self.assertTrue(is_cloud_ref("ami-12345678"))
        self.assertFalse(is_cloud_ref("/tmp/disk.vmdk"))
        self.assertFalse(is_cloud_ref("https://example.com/disk.img"))


class TestHandle(unittest.TestCase):
    def test_identifier_required(self):
        with self.assertRaises(Fatal):
            CloudImageHandle(ProviderTag.AWS, "", "us-east-1")
        with self.assertRaises(Fatal):
            CloudImageHandle(ProviderTag.GCP, "img", "")

    def test_with_status_merges_details(self):
        h = CloudImageHandle(ProviderTag.AWS, "ami-12345678", "us-east-1", details={"a": 1})
        h2 = h.with_status(ImageStatus.AVAILABLE, b=2)
        self.assertEqual(h2.status, ImageStatus.AVAILABLE)
        self.assertEqual(h2.details, {"a": 1, "b": 2})
        self.assertEqual(h.status, ImageStatus.PENDING)
        self.assertEqual(h.details, {"a": 1})


if __name__ == "__main__":
    unittest.main()
