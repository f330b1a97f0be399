#!/usr/bin/env python
"""
test_cli.py - Command Line Interface Tests
==========================================

Exit codes and output of the segment-sync subcommands.
"""

import io
import os
import shutil
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest import mock

from segment_sync import (
    BatchOutcome,
    BatchResult,
    Config,
    ConsoleProgressListener,
    SegmentOutcome,
    SyncInterrupted,
    create_parser,
    main,
)
from segment_delta import file_digest
from segment_fixtures import corrupt_segment, md5_hex, random_segment


class CliTestCase(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        Config.USE_COLORS = False

    def tearDown(self):
        Config.reset_defaults()
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def write(self, name, data):
        path = os.path.join(self.test_dir, name)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def run_main(self, argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(argv)
        return code, out.getvalue(), err.getvalue()


class TestParser(CliTestCase):

    def test_sync_arguments(self):
        """Test: sync takes a base directory and one or more segments"""
        args = create_parser().parse_args(
            ['sync', '/data', 'E5_N50', 'E10_N50', '--no-throttle',
             '--segment-url', 'https://m/segments4'])
        self.assertEqual(args.base_dir, '/data')
        self.assertEqual(args.segments, ['E5_N50', 'E10_N50'])
        self.assertTrue(args.no_throttle)
        self.assertEqual(args.segment_url, 'https://m/segments4')

    def test_command_required(self):
        """Test: running without a subcommand is a usage error"""
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                create_parser().parse_args([])
        self.assertEqual(ctx.exception.code, 2)


class TestLocalCommands(CliTestCase):

    def test_checksum(self):
        """Test: checksum prints the MD5 used to address deltas"""
        data = b"segment bytes" * 100
        path = self.write("a.rd5", data)
        code, out, _ = self.run_main(['checksum', path])
        self.assertEqual(code, 0)
        self.assertTrue(out.startswith(md5_hex(data)))

    def test_checksum_missing_file(self):
        """Test: checksum of a missing file exits 1"""
        code, _, err = self.run_main(['checksum', os.path.join(self.test_dir, "nope")])
        self.assertEqual(code, 1)
        self.assertIn("[ERROR]", err)

    def test_diff_patch_verify(self):
        """Test: diff, patch and verify work end to end on real files"""
        old = random_segment(8000, seed=1)
        new = bytearray(old)
        new[500:510] = b"XXXXXXXXXX"
        old_path = self.write("old.rd5", old)
        new_path = self.write("new.rd5", bytes(new))
        delta_path = os.path.join(self.test_dir, "old.df5")
        out_path = os.path.join(self.test_dir, "out.rd5")

        code, out, _ = self.run_main(['diff', old_path, new_path, '-o', delta_path])
        self.assertEqual(code, 0)
        self.assertIn("Delta saved to", out)

        code, _, _ = self.run_main(['patch', old_path, delta_path, '-o', out_path])
        self.assertEqual(code, 0)
        self.assertEqual(file_digest(out_path), md5_hex(bytes(new)))

        code, out, _ = self.run_main(['verify', out_path])
        self.assertEqual(code, 0)
        self.assertIn("[OK]", out)

    def test_patch_with_bad_delta(self):
        """Test: patch with a corrupt delta exits 1"""
        base = self.write("base", b"x" * 100)
        bad = self.write("bad.df5", b"nope")
        code, _, err = self.run_main(['patch', base, bad, '-o', os.path.join(self.test_dir, "o")])
        self.assertEqual(code, 1)
        self.assertIn("Patch failed", err)

    def test_verify_corrupt(self):
        """Test: verify of a corrupt segment exits 1"""
        code, _, err = self.run_main(['verify', self.write("bad.rd5", corrupt_segment())])
        self.assertEqual(code, 1)
        self.assertIn("[ERROR]", err)


class TestSyncCommand(CliTestCase):

    def test_success(self):
        """Test: a successful batch exits 0 and lists outcomes"""
        result = BatchResult(BatchOutcome.SUCCESS,
                             {"E5_N50": SegmentOutcome.UPDATED_VIA_DELTA})
        with mock.patch('segment_sync.sync_segments', return_value=result) as sync:
            code, out, _ = self.run_main(['sync', self.test_dir, 'E5_N50', '--no-throttle'])

        self.assertEqual(code, 0)
        self.assertIn("updated-via-delta", out)
        _, kwargs = sync.call_args
        self.assertFalse(kwargs['throttle'])

    def test_failure_exit_code(self):
        """Test: a failed batch exits 1"""
        result = BatchResult(BatchOutcome.FAILURE, error=RuntimeError("boom"))
        with mock.patch('segment_sync.sync_segments', return_value=result):
            code, _, err = self.run_main(['sync', self.test_dir, 'E5_N50'])
        self.assertEqual(code, 1)
        self.assertIn("boom", err)

    def test_cancelled_exit_code(self):
        """Test: a cancelled batch exits 130"""
        result = BatchResult(BatchOutcome.FAILURE, cancelled=True, error=SyncInterrupted())
        with mock.patch('segment_sync.sync_segments', return_value=result):
            code, _, _ = self.run_main(['sync', self.test_dir, 'E5_N50'])
        self.assertEqual(code, 130)

    def test_url_overrides(self):
        """Test: command line URLs override the server config"""
        result = BatchResult(BatchOutcome.SUCCESS)
        with mock.patch('segment_sync.sync_segments', return_value=result) as sync:
            self.run_main(['sync', self.test_dir, 'E5_N50',
                           '--segment-url', 'https://mirror/segments4',
                           '--profiles-url', 'https://mirror/profiles2'])
        server_config = sync.call_args[1]['server_config']
        self.assertEqual(server_config.segment_url, 'https://mirror/segments4/')
        self.assertEqual(server_config.profiles_url, 'https://mirror/profiles2/')

    def test_bad_config_file(self):
        """Test: an unreadable server config exits 2"""
        code, _, err = self.run_main(['sync', self.test_dir, 'E5_N50',
                                      '--config', os.path.join(self.test_dir, "missing.txt")])
        self.assertEqual(code, 2)
        self.assertIn("Cannot read server config", err)


class TestConsoleProgress(CliTestCase):

    def test_percentage_redrawn_only_on_change(self):
        """Test: known-length progress redraws once per percent"""
        stream = io.StringIO()
        listener = ConsoleProgressListener(stream=stream)
        for current in (1, 2, 3, 500, 1000):
            listener.update_progress(1000, current)

        self.assertEqual(stream.getvalue().count("\r"), 3)
        self.assertIn("100%", stream.getvalue())

    def test_unknown_length_keeps_counting(self):
        """Test: without a total the byte counter still advances"""
        stream = io.StringIO()
        listener = ConsoleProgressListener(stream=stream)
        step = ConsoleProgressListener.REDRAW_BYTES
        for current in (4096, 8192, step + 4096, 3 * step):
            listener.update_progress(-1, current)

        frames = stream.getvalue().split("\r")[1:]
        self.assertEqual(len(frames), 3)
        self.assertIn("192.00 KB", frames[-1])

    def test_new_transfer_after_finish_line(self):
        """Test: a status line resets the counter for the next transfer"""
        stream = io.StringIO()
        listener = ConsoleProgressListener(stream=stream)
        listener.update_progress(-1, 500000)
        listener.update_status("E5_N50 (2/2)")
        listener.update_progress(-1, 4096)

        self.assertTrue(stream.getvalue().rstrip().endswith("4.00 KB"))


if __name__ == '__main__':
    unittest.main(verbosity=2)
