import io
import os
import json
import shutil
import tempfile
import unittest
from contextlib import redirect_stdout

import qsh_converter as qc
import fake_qsh


class CliTest(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="qsh_cli_")
        self.source = os.path.join(self.tempdir, "src")
        self.output = os.path.join(self.tempdir, "out")
        os.makedirs(self.source)
        self._orig_log_dir, self._orig_log_file = qc.LOG_DIR, qc.LOG_FILE
        qc.LOG_DIR = os.path.join(self.tempdir, "logs")
        qc.LOG_FILE = os.path.join(qc.LOG_DIR, "converter.log")
        deals = [fake_qsh.deal(i, 100 + i, 1, f"2016-10-24T10:0{i}:00") for i in range(4)]
        fake_qsh.write_fixture(os.path.join(self.source, "Si-12.16.2016-10-24.Deals.qsh"), fake_qsh.make_security(), deals=deals)

    def tearDown(self):
        qc.shutdown_logging()
        qc.LOG_DIR, qc.LOG_FILE = self._orig_log_dir, self._orig_log_file
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def _convert_args(self, *extra):
        return ["--quiet", "convert", "--source", self.source, "--output", self.output,
                "--kind", "deals", "--decoder", "fake_qsh:open_reader", *extra]

    def test_convert_status_audit(self):
        rc = qc.main(self._convert_args("--timeframes", "1m", "2m", "--organize"))
        self.assertEqual(rc, 0)
        # --organize moved the loose file into its date folder before converting
        self.assertTrue(os.path.isfile(os.path.join(self.source, "2016-10-24", "Si-12.16.2016-10-24.Deals.qsh")))
        self.assertTrue(os.path.exists(os.path.join(self.output, "SiZ6", "candles", "2m", "2016-10-24.parquet")))

        buf = io.StringIO()
        with redirect_stdout(buf):
            rc = qc.main(["--quiet", "status", "--output", self.output])
        self.assertEqual(rc, 0)
        status = json.loads(buf.getvalue())
        self.assertEqual(status["file_count"], 3)

        self.assertEqual(qc.main(["--quiet", "audit", "--output", self.output]), 0)
        with open(os.path.join(self.output, "SiZ6", "trades", "2016-10-24.parquet"), "ab") as f:
            f.write(b"garbage")
        self.assertEqual(qc.main(["--quiet", "audit", "--output", self.output]), 3)

    def test_failed_file_gives_non_zero_exit(self):
        fake_qsh.write_fixture(
            os.path.join(self.source, "Bad.Deals.qsh"),
            fake_qsh.make_security(),
            deals=[fake_qsh.deal(1, 100, 1, "2016-10-24T10:00:00")],
            fail_after=0,
        )
        self.assertEqual(qc.main(self._convert_args()), 1)

    def test_kind_is_required(self):
        with self.assertRaises(SystemExit):
            qc.main(["convert", "--source", self.source])

    def test_invalid_timeframe(self):
        with self.assertRaises(ValueError):
            qc.main(self._convert_args("--timeframes", "abc"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
