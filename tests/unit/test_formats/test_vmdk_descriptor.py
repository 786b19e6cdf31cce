# SPDX-License-Identifier: LGPL-3.0-or-later
"""
Unit tests for VMDK descriptor parsing and rendering
"""

import pytest

from vmi.core.exceptions import MalformedLayout
from vmi.formats.vmdk.descriptor import (
    ExtentLine,
    Geometry,
    VmdkDescriptor,
    build_descriptor,
    default_geometry,
    looks_like_descriptor,
)

SAMPLE = """\
# Disk DescriptorFile
version=1
encoding="UTF-8"
CID=fffffffe
parentCID=ffffffff
isNativeSnapshot="no"
createType="monolithicFlat"

# Extent description
RW 504000 FLAT "disk-flat.vmdk" 0

# The Disk Data Base
#DDB

ddb.adapterType = "lsilogic"
ddb.geometry.cylinders = "500"
ddb.geometry.heads = "16"
ddb.geometry.sectors = "63"
ddb.uuid = "60 00 C2 9b 1c 5e 2f 4a-8d 91 0e 2f 8c 64 9a 31"
ddb.virtualHWVersion = "14"
"""


@pytest.mark.unit
class TestDescriptorParse:
    def test_fields(self):
        d = VmdkDescriptor.parse(SAMPLE)
        assert d.create_type == "monolithicFlat"
        assert d.adapter_type == "lsilogic"
        assert d.geometry == Geometry(500, 16, 63)
        assert d.capacity_sectors == 504000
        assert not d.has_parent
        assert d.extents[0] == ExtentLine("RW", 504000, "FLAT", "disk-flat.vmdk", 0)

    def test_render_keeps_key_order_and_opaque_entries(self):
        """Unknown keys and ddb.* entries survive a parse/render cycle in order."""
        d = VmdkDescriptor.parse(SAMPLE)
        again = VmdkDescriptor.parse(d.render())
        assert again.keys() == d.keys()
        assert again.get("isNativeSnapshot") == "no"
        assert again.get("ddb.uuid") == d.get("ddb.uuid")
        assert again.extents == d.extents

    def test_parent_link_detected(self):
        d = VmdkDescriptor.parse(SAMPLE.replace("parentCID=ffffffff", "parentCID=1a2b3c4d"))
        assert d.has_parent

    def test_missing_create_type(self):
        with pytest.raises(MalformedLayout, match="createType"):
            VmdkDescriptor.parse(SAMPLE.replace('createType="monolithicFlat"\n', ""))

    def test_missing_extents(self):
        with pytest.raises(MalformedLayout, match="extent"):
            VmdkDescriptor.parse(SAMPLE.replace('RW 504000 FLAT "disk-flat.vmdk" 0\n', ""))

    def test_garbage_line(self):
        with pytest.raises(MalformedLayout):
            VmdkDescriptor.parse(SAMPLE + "this is not a descriptor line\n")

    def test_bad_extent_lines(self):
        with pytest.raises(MalformedLayout):
            ExtentLine.parse("RW many FLAT \"x\" 0")
        with pytest.raises(MalformedLayout):
            ExtentLine.parse("RW 100 FLAT")
        assert ExtentLine.parse("RW 100 ZERO").filename is None

    def test_non_numeric_geometry(self):
        d = VmdkDescriptor.parse(SAMPLE.replace('cylinders = "500"', 'cylinders = "lots"'))
        with pytest.raises(MalformedLayout):
            _ = d.geometry


@pytest.mark.unit
class TestBuildDescriptor:
    def test_fresh_descriptor(self):
        d = build_descriptor(2048, "monolithicSparse", [ExtentLine("RW", 2048, "SPARSE", "x.vmdk")])
        assert d.create_type == "monolithicSparse"
        assert d.get("parentCID") == "ffffffff"
        assert d.adapter_type == "ide"
        assert len(d.get("CID")) == 8
        text = d.render()
        assert text.startswith("# Disk DescriptorFile")
        assert 'RW 2048 SPARSE "x.vmdk"' in text

    def test_cid_is_deterministic(self):
        ext = [ExtentLine("RW", 2048, "SPARSE", "x.vmdk")]
        assert build_descriptor(2048, "monolithicSparse", ext).get("CID") == \
            build_descriptor(2048, "monolithicSparse", ext).get("CID")

    def test_base_keeps_geometry_and_ddb(self):
        """Writers starting from a source descriptor keep its geometry and opaque keys."""
        base = VmdkDescriptor.parse(SAMPLE)
        d = build_descriptor(504000, "streamOptimized", [ExtentLine("RW", 504000, "SPARSE", "d.vmdk")], base=base)
        assert d.create_type == "streamOptimized"
        assert d.geometry == Geometry(500, 16, 63)
        assert d.get("ddb.uuid") == base.get("ddb.uuid")
        assert d.get("CID") == "fffffffe"
        assert d.adapter_type == "lsilogic"

    def test_base_geometry_dropped_when_too_large(self):
        base = VmdkDescriptor.parse(SAMPLE)
        d = build_descriptor(1008, "monolithicSparse", [ExtentLine("RW", 1008, "SPARSE", "d.vmdk")], base=base)
        assert d.geometry != Geometry(500, 16, 63)
        assert d.geometry.heads == 255  # lsilogic


@pytest.mark.unit
class TestGeometryAndSniffing:
    def test_default_geometry(self):
        assert default_geometry(504000, "ide") == Geometry(500, 16, 63)
        assert default_geometry(16065 * 10, "lsilogic") == Geometry(10, 255, 63)
        assert default_geometry(100, "ide").cylinders == 1
        assert default_geometry(10 ** 12, "ide").cylinders == 16383

    def test_looks_like_descriptor(self):
        assert looks_like_descriptor(SAMPLE.encode())
        assert looks_like_descriptor(b'version=1\ncreateType="vmfs"\n')
        assert not looks_like_descriptor(b"\x00\x01\x02KDMV")
        assert not looks_like_descriptor("héllo".encode("utf-8"))


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
