from __future__ import annotations

import hashlib
from typing import Mapping


CHECKSUM_ANNOTATION = "tenantstore.io/checksum"


def calculate_checksum(data: Mapping[str, bytes | str]) -> str:
    # Hash values in key order so the digest is independent of map ordering.
    digest = hashlib.md5()
    for key in sorted(data):
        value = data[key]
        digest.update(value.encode("utf-8") if isinstance(value, str) else value)
    return digest.hexdigest()
