import struct
import sys
import unittest
from pathlib import Path
from typing import List

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import dbpf
from casp import RESTRICT_OPPOSITE_GENDER, FlagClearPatch
from package_builder import Resource, build_package, casp_payload


def _payload_of(package: bytes, key: dbpf.ResourceKey) -> bytes:
    header = dbpf.read_header(package)
    for entry in dbpf.read_index(package, header.index_offset, header.index_count):
        if entry.key == key:
            return bytes(dbpf.extract_payload(package, entry))
    raise KeyError(key)


class RecordingTransform:
    def __init__(self) -> None:
        self.keys: List[dbpf.ResourceKey] = []

    def __call__(self, payload: bytearray, key: dbpf.ResourceKey) -> dbpf.TransformResult:
        self.keys.append(key)
        return dbpf.TransformResult(False)


class PatchArchiveTests(unittest.TestCase):
    def test_single_candidate_is_patched(self) -> None:
        original = casp_payload((0x2041, 0x0004))
        other = Resource(0x00B2D882, 0, 7, b"unrelated texture")
        package = build_package([Resource(dbpf.TYPE_CASP, 0, 0x99, original), other])

        result = dbpf.patch_archive(package, FlagClearPatch())

        self.assertEqual(result.state, dbpf.ArchiveState.REBUILT)
        self.assertTrue(result.changed)
        self.assertEqual(len(result.reports), 1)
        report = result.reports[0]
        self.assertTrue(report.applied)
        self.assertEqual((report.candidates, report.patched), (1, 1))

        patched = _payload_of(result.data, dbpf.ResourceKey(dbpf.TYPE_CASP, 0, 0x99))
        self.assertEqual(len(patched), len(original))
        differing = [i for i, (a, b) in enumerate(zip(original, patched)) if a != b]
        self.assertEqual(differing, [9])
        self.assertEqual(struct.unpack_from("<I", patched, 8)[0], 0x0041)
        self.assertEqual(_payload_of(result.data, other[:3]), b"unrelated texture")

    def test_no_matching_type(self) -> None:
        package = build_package([Resource(0x00B2D882, 0, 1, casp_payload((0x2000, 0)))])

        result = dbpf.patch_archive(package, FlagClearPatch())

        self.assertEqual(result.state, dbpf.ArchiveState.NO_CHANGE)
        self.assertIsNone(result.data)
        self.assertEqual(result.reports, [])

    def test_ambiguous_candidates_are_refused(self) -> None:
        payload = casp_payload((0x2000, 0x0001), (0x2002, 0x0000))
        package = build_package([Resource(dbpf.TYPE_CASP, 0, 1, payload)])

        with self.assertLogs("casp", level="WARNING"):
            result = dbpf.patch_archive(package, FlagClearPatch())

        self.assertEqual(result.state, dbpf.ArchiveState.NO_CHANGE)
        self.assertIsNone(result.data)
        self.assertEqual(result.reports[0].candidates, 2)
        self.assertFalse(result.reports[0].applied)

    def test_custom_resource_type(self) -> None:
        package = build_package([Resource(0x12345678, 0, 1, casp_payload((0x2000, 0)))])

        result = dbpf.patch_archive(package, FlagClearPatch(), resource_type=0x12345678)

        self.assertEqual(result.state, dbpf.ArchiveState.REBUILT)

    def test_uncompressed_resources_stay_uncompressed(self) -> None:
        key = dbpf.ResourceKey(dbpf.TYPE_CASP, 0, 1)
        package = build_package(
            [Resource(*key, casp_payload((0x2000, 0x10)), compression=dbpf.COMPRESSION_NONE)]
        )

        result = dbpf.patch_archive(package, FlagClearPatch())

        header = dbpf.read_header(result.data)
        entry = dbpf.read_index(result.data, header.index_offset, 1)[0]
        self.assertEqual(entry.compression, dbpf.COMPRESSION_NONE)
        self.assertEqual(entry.compressed_size, entry.uncompressed_size)
        self.assertEqual(struct.unpack_from("<I", _payload_of(result.data, key), 8)[0], 0)

    def test_deleted_and_opaque_entries_never_reach_the_transform(self) -> None:
        package = build_package(
            [
                Resource(dbpf.TYPE_CASP, 0, 1, b"deleted", dbpf.COMPRESSION_DELETED),
                Resource(dbpf.TYPE_CASP, 0, 2, b"internal", 0xFFFE),
                Resource(dbpf.TYPE_CASP, 0, 3, b"live"),
            ]
        )
        transform = RecordingTransform()

        result = dbpf.patch_archive(package, transform)

        self.assertEqual(transform.keys, [dbpf.ResourceKey(dbpf.TYPE_CASP, 0, 3)])
        self.assertEqual(result.state, dbpf.ArchiveState.NO_CHANGE)

    def test_corrupt_resource_does_not_stop_the_archive(self) -> None:
        package = bytearray(
            build_package(
                [
                    Resource(dbpf.TYPE_CASP, 0, 1, casp_payload((0x2000, 0))),
                    Resource(dbpf.TYPE_CASP, 0, 2, casp_payload((0x2000, 0))),
                ]
            )
        )
        header = dbpf.read_header(package)
        first = dbpf.read_index(package, header.index_offset, 2)[0]
        package[first.data_offset : first.data_offset + 4] = b"JUNK"

        with self.assertLogs("dbpf", level="WARNING"):
            result = dbpf.patch_archive(bytes(package), FlagClearPatch())

        self.assertEqual(len(result.errors), 1)
        key, error = result.errors[0]
        self.assertEqual(key.instance, 1)
        self.assertIsInstance(error, dbpf.DecompressionFailedError)
        self.assertEqual(result.state, dbpf.ArchiveState.REBUILT)
        self.assertEqual([r.key.instance for r in result.reports if r.applied], [2])
        # The corrupt resource is carried over byte for byte.
        new_header = dbpf.read_header(result.data)
        new_first = dbpf.read_index(result.data, new_header.index_offset, 2)[0]
        self.assertEqual(
            dbpf.stored_bytes(result.data, new_first), dbpf.stored_bytes(package, first)
        )

    def test_transform_exception_is_scoped_to_the_resource(self) -> None:
        inner = FlagClearPatch()

        def fussy(payload: bytearray, key: dbpf.ResourceKey) -> dbpf.TransformResult:
            if key.instance == 1:
                raise ValueError("unexpected layout")
            return inner(payload, key)

        package = build_package(
            [
                Resource(dbpf.TYPE_CASP, 0, 1, casp_payload((0x2000, 0))),
                Resource(dbpf.TYPE_CASP, 0, 2, casp_payload((0x2000, 0))),
            ]
        )

        with self.assertLogs("dbpf", level="WARNING"):
            result = dbpf.patch_archive(package, fussy)

        self.assertEqual(result.state, dbpf.ArchiveState.REBUILT)
        self.assertEqual(len(result.errors), 1)
        key, error = result.errors[0]
        self.assertEqual(key.instance, 1)
        self.assertIsInstance(error, dbpf.TransformError)
        self.assertIsInstance(error.__cause__, ValueError)
        self.assertEqual([r.key.instance for r in result.reports if r.applied], [2])

    def test_out_of_bounds_resource_is_skipped(self) -> None:
        package = bytearray(build_package([Resource(dbpf.TYPE_CASP, 0, 1, casp_payload((0x2000, 0)))]))
        header = dbpf.read_header(package)
        entry_offset = header.index_offset + 4
        # Size field of the only entry.
        struct.pack_into("<I", package, entry_offset + 20, dbpf.EXTENDED_FLAG | 0xFFFFFF)

        result = dbpf.patch_archive(bytes(package), FlagClearPatch())

        self.assertEqual(result.state, dbpf.ArchiveState.NO_CHANGE)
        self.assertEqual(result.errors, [])

    def test_strict_size_refuses_growing_resources(self) -> None:
        def grow(payload: bytearray, key: dbpf.ResourceKey) -> dbpf.TransformResult:
            payload.extend(bytes(range(256)) * 4)
            return dbpf.TransformResult(True, 1, 1)

        package = build_package([Resource(dbpf.TYPE_CASP, 0, 1, b"\x00" * 64)])

        with self.assertLogs("dbpf", level="WARNING"):
            strict = dbpf.patch_archive(package, grow, strict_size=True)
        relaxed = dbpf.patch_archive(package, grow)

        self.assertEqual(strict.state, dbpf.ArchiveState.NO_CHANGE)
        self.assertIn("stored size", strict.reports[0].note)
        self.assertEqual(relaxed.state, dbpf.ArchiveState.REBUILT)
        payload = _payload_of(relaxed.data, dbpf.ResourceKey(dbpf.TYPE_CASP, 0, 1))
        self.assertEqual(len(payload), 64 + 1024)

    def test_flag_constant(self) -> None:
        self.assertEqual(RESTRICT_OPPOSITE_GENDER, 0x2000)


if __name__ == "__main__":
    unittest.main()
