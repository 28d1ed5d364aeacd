"""Conservative part-flag patch for CASP (CAS part) resources.

CASP payloads do not have a fixed offset for the part flags, so the patch
scans the decompressed payload for the one field that looks like them:

- 4-byte aligned little-endian u32 with the target bit set,
- the value itself is a small bitfield (``<= 0xFFFF``),
- the following u32 (the second flag word) is small as well.

Exactly one candidate is patched.  No candidate means no change, and more
than one candidate is refused because guessing would corrupt the resource.
"""

from __future__ import annotations

import logging
import struct
from typing import List, Optional

from dbpf import ResourceKey, TransformResult

logger = logging.getLogger(__name__)

RESTRICT_OPPOSITE_GENDER = 0x00002000
SMALL_FIELD_LIMIT = 0x0000FFFF

FLAG_PAIR = struct.Struct("<II")
U32 = struct.Struct("<I")


def find_candidates(payload: bytes | bytearray, flag: int = RESTRICT_OPPOSITE_GENDER) -> List[int]:
    """Return the offsets of every u32 that looks like a part-flag field."""

    offsets: List[int] = []
    for offset in range(0, len(payload) - FLAG_PAIR.size + 1, 4):
        value, following = FLAG_PAIR.unpack_from(payload, offset)
        if not value & flag:
            continue
        if value > SMALL_FIELD_LIMIT or following > SMALL_FIELD_LIMIT:
            continue
        offsets.append(offset)
    return offsets


class FlagClearPatch:
    """Payload transform clearing *flag* from the single part-flag candidate."""

    def __init__(self, flag: int = RESTRICT_OPPOSITE_GENDER) -> None:
        if not flag or flag > SMALL_FIELD_LIMIT:
            raise ValueError(f"flag 0x{flag:X} cannot be found in a small bitfield")
        self.flag = flag

    def __call__(self, payload: bytearray, key: Optional[ResourceKey] = None) -> TransformResult:
        candidates = find_candidates(payload, self.flag)
        if not candidates:
            return TransformResult(False)

        if len(candidates) > 1:
            logger.warning(
                "refusing to patch %s: %d candidate flag fields",
                key if key is not None else "payload",
                len(candidates),
            )
            return TransformResult(False, candidates=len(candidates))

        offset = candidates[0]
        value = U32.unpack_from(payload, offset)[0]
        U32.pack_into(payload, offset, value & ~self.flag)
        logger.debug("cleared 0x%X at payload offset 0x%X", self.flag, offset)
        return TransformResult(True, candidates=1, patched=1)


patch_restrict_opposite_gender = FlagClearPatch()
