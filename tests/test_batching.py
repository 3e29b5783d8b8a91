import os
import shutil
import tempfile
import unittest

import qsh_converter as qc


class MakeBatchesTest(unittest.TestCase):
    def _files(self, n):
        return [f"f{i:05d}.Deals.qsh" for i in range(n)]

    def test_batch_sizes(self):
        cases = {0: [], 5: [5], 700: [700], 701: [700, 1], 1400: [700, 700], 1401: [700, 700, 1]}
        for n, sizes in cases.items():
            batches = qc.make_batches(self._files(n), 700)
            self.assertEqual([len(b) for b in batches], sizes, f"n={n}")

    def test_order_preserved_and_complete(self):
        files = self._files(23)
        batches = qc.make_batches(files, 4)
        self.assertEqual([f for b in batches for f in b], files)
        self.assertTrue(all(1 <= len(b) <= 4 for b in batches))

    def test_rejects_non_positive_size(self):
        with self.assertRaises(ValueError):
            qc.make_batches(self._files(3), 0)


class DiscoveryTest(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="qsh_discover_")
        for rel in (
            "2016-10-24/Si-12.16.2016-10-24.OrdLog.qsh",
            "2016-10-24/Si-12.16.2016-10-24.Deals.qsh",
            "2016-10-25/deep/RTS-12.16.2016-10-25.Deals.QSH",
            "notes.txt",
            "Si-12.16.2016-10-26.OrdLog.qsh",
        ):
            path = os.path.join(self.tempdir, rel)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write("{}")

    def tearDown(self):
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def test_discovers_recursively_case_insensitive(self):
        found = [os.path.relpath(p, self.tempdir).replace(os.sep, "/") for p in qc.discover_qsh_files(self.tempdir)]
        self.assertEqual(found, sorted(found))
        self.assertEqual(len(found), 4)
        self.assertNotIn("notes.txt", found)
        self.assertIn("2016-10-25/deep/RTS-12.16.2016-10-25.Deals.QSH", found)

    def test_kind_filter(self):
        found = qc.discover_qsh_files(self.tempdir)
        deals = [os.path.basename(p) for p in found if qc.matches_data_kind(p, qc.DataKind.DEALS)]
        ordlog = [os.path.basename(p) for p in found if qc.matches_data_kind(p, "ordlog")]
        self.assertEqual(sorted(deals), ["RTS-12.16.2016-10-25.Deals.QSH", "Si-12.16.2016-10-24.Deals.qsh"])
        self.assertEqual(sorted(ordlog), ["Si-12.16.2016-10-24.OrdLog.qsh", "Si-12.16.2016-10-26.OrdLog.qsh"])
        with self.assertRaises(ValueError):
            qc.matches_data_kind(found[0], "quotes")

    def test_missing_directory(self):
        with self.assertRaises(NotADirectoryError):
            qc.discover_qsh_files(os.path.join(self.tempdir, "nope"))


class OrganizeByDateTest(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="qsh_organize_")
        self.log_dir = os.path.join(self.tempdir, "logs")
        self._orig_log_dir, self._orig_log_file = qc.LOG_DIR, qc.LOG_FILE
        qc.LOG_DIR = self.log_dir
        qc.LOG_FILE = os.path.join(self.log_dir, "converter.log")
        self.logger = qc.setup_logging(verbose=False)
        self.source = os.path.join(self.tempdir, "src")
        os.makedirs(self.source)
        for name in ("Si-12.16.2016-10-24.OrdLog.qsh", "Si-12.16.2016-10-25.Deals.qsh", "README.qsh", "Si.2016-10-24.Quotes.qsh"):
            with open(os.path.join(self.source, name), "w", encoding="utf-8") as f:
                f.write("{}")

    def tearDown(self):
        qc.shutdown_logging()
        qc.LOG_DIR, qc.LOG_FILE = self._orig_log_dir, self._orig_log_file
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def test_moves_into_date_folders(self):
        moved = qc.organize_by_date(self.source, self.logger)
        self.assertEqual(moved, 2)
        self.assertTrue(os.path.isfile(os.path.join(self.source, "2016-10-24", "Si-12.16.2016-10-24.OrdLog.qsh")))
        self.assertTrue(os.path.isfile(os.path.join(self.source, "2016-10-25", "Si-12.16.2016-10-25.Deals.qsh")))
        # files of other kinds are left where they are
        self.assertTrue(os.path.isfile(os.path.join(self.source, "README.qsh")))
        self.assertTrue(os.path.isfile(os.path.join(self.source, "Si.2016-10-24.Quotes.qsh")))
        # second run finds nothing loose
        self.assertEqual(qc.organize_by_date(self.source, self.logger), 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
