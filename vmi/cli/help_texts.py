# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/cli/help_texts.py
from __future__ import annotations

# Pure help text for the argparse epilog; keep it copy/paste runnable.

YAML_EXAMPLE = r"""# vmi configuration (YAML); every key is optional
#
#   vmi --config vmi.yaml convert --from disk.vmdk --to disk.ova
#   VMI_CONFIG=vmi.yaml vmi inspect disk.ova
#
# pipeline:
#   chunk_size: 1M          # read size for data blocks
#   queue_depth: 8          # blocks buffered between reader and writer
#   zero_block_size: 64K    # raw zero-run detection granularity
#   checksum_algo: sha256   # running checksum over the logical disk
#   work_dir: /var/tmp/vmi  # cloud export downloads
#
# transfer:
#   part_size: 8M
#   max_concurrency: 4
#   part_retries: 3
#
# poll:
#   interval_s: 15
#   timeout_s: 3600
#
# aws:
#   region: us-east-1
#   bucket: vm-import-staging
#   disk_format: vmdk       # vmdk | raw
#   role_name: vmimport
#   client_factory: mysite.vmi_clients:aws
#
# gcp:
#   project: my-project
#   bucket: gce-image-staging
#   family: debian-custom
#   client_factory: mysite.vmi_clients:gcp
"""

EXAMPLES = r"""Examples:
  vmi convert --from disk.img --to disk.vmdk
  vmi convert --from disk.vmdk --to appliance.ova --disk-format vmdk
  vmi convert --from appliance.ova --to aws://us-east-1/my-image
  vmi convert --from gce://my-project/my-image --to disk.raw
  vmi inspect disk.vmdk --json
"""
