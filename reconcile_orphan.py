#!/usr/bin/env python
"""
Release ciphertext left pinned by a publish or rekey whose registry write
failed. The gateway reports such uploads as `orphan_content_id` in its 500
responses.

    python reconcile_orphan.py <content_id> [network_id]

The content is unpinned only when no dataset on the network references it,
either as its id or as its current content id.
"""
import os
import sys

import django


def reconcile(content_id, network_id=None):
    """Returns 'unpinned', 'referenced' or 'failed'."""
    from datasets.content_store import get_content_store
    from datasets.registry import get_registry

    if get_registry(network_id).find_by_content_id(content_id) is not None:
        return 'referenced'
    return 'unpinned' if get_content_store().unpin(content_id) else 'failed'


def main(argv):
    if len(argv) < 2:
        print(__doc__)
        return 2
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'synergy.settings')
    django.setup()
    from datasets.errors import EnvelopeError

    content_id = argv[1]
    network_id = argv[2] if len(argv) > 2 else None
    try:
        result = reconcile(content_id, network_id)
    except EnvelopeError as exc:
        print(f"❌ Error: could not check the registry for {content_id}: {exc.message}")
        return 1

    if result == 'referenced':
        print(f"Content {content_id} is still referenced by the registry, leaving it pinned")
    elif result == 'unpinned':
        print(f"✅ Unpinned orphan content {content_id}")
    else:
        print(f"❌ Error: the content store refused to unpin {content_id}, try again later")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv))
