#!/usr/bin/env python
"""
test_delta.py - Checksum, Delta and Integrity Collaborator Tests
================================================================

Covers the content hash that addresses deltas, .df5 generation and
application, and the segment index check that gates every commit.
"""

import hashlib
import os
import shutil
import tempfile
import unittest

from segment_base import (
    CancelToken,
    DeltaError,
    IntegrityError,
    LoggingProgressListener,
    SyncInterrupted,
)
from segment_delta import (
    ChecksumType,
    CompressionType,
    DeltaCopy,
    DeltaHeader,
    DeltaLiteral,
    apply_delta,
    check_file_integrity,
    compute_instructions,
    file_digest,
    generate_delta,
    read_delta,
)
from segment_fixtures import RecordingListener, corrupt_segment, random_segment


class TempDirTestCase(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def write(self, name, data):
        path = os.path.join(self.test_dir, name)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def read(self, path):
        with open(path, 'rb') as f:
            return f.read()


class TestFileDigest(TempDirTestCase):

    def test_md5_matches_hashlib(self):
        """Test: default digest is lowercase hex MD5"""
        data = os.urandom(3 * 1024 * 1024 + 17)
        path = self.write("seg.rd5", data)
        self.assertEqual(file_digest(path), hashlib.md5(data).hexdigest())

    def test_all_checksum_types(self):
        """Test: every algorithm yields a stable hex digest"""
        path = self.write("seg.rd5", b"Hello, World!" * 100)
        for checksum_type in ChecksumType:
            first = file_digest(path, checksum_type)
            self.assertEqual(first, file_digest(path, checksum_type))
            int(first, 16)

    def test_cancelled_hash_raises(self):
        """Test: hashing observes the cancel flag"""
        path = self.write("seg.rd5", b"x" * 100)
        token = CancelToken()
        token.cancel()
        with self.assertRaises(SyncInterrupted):
            file_digest(path, listener=LoggingProgressListener(token))


class TestComputeInstructions(unittest.TestCase):

    def test_identical_input_is_single_copy(self):
        """Test: identical files reduce to one copy instruction"""
        data = os.urandom(8192)
        self.assertEqual(compute_instructions(data, data, 1024), [DeltaCopy(0, 8192)])

    def test_unrelated_input_is_literal(self):
        """Test: nothing matches between unrelated files"""
        instructions = compute_instructions(b"a" * 10, b"b" * 3000, 1024)
        self.assertTrue(all(isinstance(i, DeltaLiteral) for i in instructions))
        self.assertEqual(b"".join(i.data for i in instructions), b"b" * 3000)

    def test_insertion_keeps_following_blocks(self):
        """Test: an insertion only costs the inserted bytes plus a partial block"""
        base = os.urandom(16 * 1024)
        target = base[:5000] + b"INSERTED" + base[5000:]
        instructions = compute_instructions(base, target, 1024)

        literal_bytes = sum(len(i.data) for i in instructions if isinstance(i, DeltaLiteral))
        self.assertLess(literal_bytes, 2 * 1024 + 8)

    def test_invalid_block_size(self):
        """Test: block size must be positive"""
        with self.assertRaises(ValueError):
            compute_instructions(b"a", b"b", 0)


class TestDeltaRoundTrip(TempDirTestCase):

    def test_generate_then_apply(self):
        """Test: applying a generated delta rebuilds the target"""
        base = random_segment(20000, seed=1)
        target = bytearray(base)
        target[300:310] = b"0123456789"
        target = bytes(target) + b"appended tail"

        base_path = self.write("old.rd5", base)
        target_path = self.write("new.rd5", target)
        delta_path = os.path.join(self.test_dir, "old.df5")
        out_path = os.path.join(self.test_dir, "out.rd5")

        stats = generate_delta(base_path, target_path, delta_path)
        self.assertGreater(stats.efficiency, 0.5)
        self.assertLess(stats.delta_size, len(target))

        written = apply_delta(base_path, delta_path, out_path)
        self.assertEqual(written, len(target))
        self.assertEqual(self.read(out_path), target)

    def test_every_compression_type(self):
        """Test: each compression codec decodes back to the same instructions"""
        base_path = self.write("old", b"abc" * 2000)
        target_path = self.write("new", b"abc" * 1500 + b"xyz" * 10)
        for comp in CompressionType:
            delta_path = os.path.join(self.test_dir, f"d.{comp.value}")
            generate_delta(base_path, target_path, delta_path, block_size=256, compression=comp)
            header, _ = read_delta(delta_path)
            self.assertEqual(header.compression, comp)
            out = os.path.join(self.test_dir, f"out.{comp.value}")
            apply_delta(base_path, delta_path, out)
            self.assertEqual(self.read(out), self.read(target_path))

    def test_progress_reported_during_apply(self):
        """Test: apply reports (target_size, written) progress"""
        base_path = self.write("old", os.urandom(4096))
        target_path = self.write("new", self.read(base_path) + b"more")
        delta_path = os.path.join(self.test_dir, "d")
        generate_delta(base_path, target_path, delta_path)

        listener = RecordingListener()
        apply_delta(base_path, delta_path, os.path.join(self.test_dir, "out"), listener)
        self.assertEqual(listener.progress[-1], (4100, 4100))


class TestDeltaFailures(TempDirTestCase):

    def setUp(self):
        super().setUp()
        self.base_path = self.write("old", os.urandom(5000))
        self.target_path = self.write("new", self.read(self.base_path)[:4000] + os.urandom(500))
        self.delta_path = os.path.join(self.test_dir, "d.df5")
        self.out_path = os.path.join(self.test_dir, "out")
        generate_delta(self.base_path, self.target_path, self.delta_path)

    def test_wrong_base_file(self):
        """Test: a delta refuses a base of the wrong size"""
        other = self.write("other", b"short")
        with self.assertRaises(DeltaError):
            apply_delta(other, self.delta_path, self.out_path)

    def test_bad_magic(self):
        """Test: a file that is not a delta is rejected"""
        bogus = self.write("bogus.df5", b"<html>Not Found</html>" * 5)
        with self.assertRaises(DeltaError):
            apply_delta(self.base_path, bogus, self.out_path)

    def test_truncated_delta(self):
        """Test: truncation is reported as DeltaError"""
        raw = self.read(self.delta_path)
        for cut in (10, DeltaHeader.size() + 3, len(raw) - 2):
            truncated = self.write("cut.df5", raw[:cut])
            with self.assertRaises(DeltaError):
                apply_delta(self.base_path, truncated, self.out_path)

    def test_modified_base_detected(self):
        """Test: same-size but different base fails the target checksum"""
        with open(self.base_path, 'r+b') as f:
            f.write(b"\x00" * 100)
        with self.assertRaises(DeltaError):
            apply_delta(self.base_path, self.delta_path, self.out_path)

    def test_cancel_during_apply(self):
        """Test: apply observes the cancel flag"""
        listener = RecordingListener()
        listener.cancelled = True
        with self.assertRaises(SyncInterrupted):
            apply_delta(self.base_path, self.delta_path, self.out_path, listener)


class TestIntegrityCheck(TempDirTestCase):

    def test_valid_segment(self):
        """Test: a well-formed segment passes"""
        check_file_integrity(self.write("ok.rd5", random_segment(5000, seed=3)))

    def test_empty_body_segment(self):
        """Test: a header-only segment is still consistent"""
        check_file_integrity(self.write("empty.rd5", random_segment(0, seed=3)))

    def test_too_short(self):
        """Test: files shorter than the index are rejected"""
        with self.assertRaises(IntegrityError):
            check_file_integrity(self.write("short.rd5", b"\x00" * 50))

    def test_inconsistent_index(self):
        """Test: decreasing offsets are rejected"""
        with self.assertRaises(IntegrityError):
            check_file_integrity(self.write("bad.rd5", corrupt_segment()))

    def test_trailing_garbage(self):
        """Test: bytes past the last indexed offset are rejected"""
        with self.assertRaises(IntegrityError):
            check_file_integrity(self.write("tail.rd5", random_segment(1000, seed=4) + b"x"))


if __name__ == '__main__':
    unittest.main(verbosity=2)
