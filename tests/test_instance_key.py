"""Unit tests for instance keys (scan, unified id, location)."""

import hashlib
import unittest

from app.services.instance_key import instance_key, location, normalize_path
from helpers import make_finding, make_sca_finding


class TestNormalizePath(unittest.TestCase):
    def test_backslashes_and_leading_segments(self) -> None:
        self.assertEqual(normalize_path(" .\\src\\db.py "), "src/db.py")
        self.assertEqual(normalize_path("/src/db.py"), "src/db.py")
        self.assertEqual(normalize_path("././src/db.py"), "src/db.py")

    def test_empty(self) -> None:
        self.assertEqual(normalize_path(None), "")


class TestLocation(unittest.TestCase):
    def test_file_based(self) -> None:
        self.assertEqual(location(make_finding(file_path="./a.py", line_start=10)), "a.py:10")

    def test_file_based_defaults(self) -> None:
        self.assertEqual(location(make_finding(file_path=None, line_start=None)), "unknown:0")

    def test_package_based(self) -> None:
        self.assertEqual(location(make_sca_finding("4.17.20")), "lodash:4.17.20")

    def test_package_based_defaults(self) -> None:
        self.assertEqual(location(make_sca_finding(metadata={})), "unknown:unknown")


class TestInstanceKey(unittest.TestCase):
    def test_hash_of_scan_unified_and_location(self) -> None:
        expected = hashlib.sha256(b"scan-1|7|a.py:10").hexdigest()
        self.assertEqual(instance_key("scan-1", make_finding(file_path="a.py", line_start=10), 7), expected)

    def test_equivalent_paths_share_a_key(self) -> None:
        a = make_finding(file_path="src\\db.py")
        b = make_finding(file_path="./src/db.py", scanner="bandit")
        self.assertEqual(instance_key("scan-1", a, 1), instance_key("scan-1", b, 1))

    def test_scan_line_and_unified_id_distinguish_keys(self) -> None:
        f = make_finding()
        keys = {
            instance_key("scan-1", f, 1),
            instance_key("scan-2", f, 1),
            instance_key("scan-1", f, 2),
            instance_key("scan-1", make_finding(line_start=11), 1),
        }
        self.assertEqual(len(keys), 4)

    def test_package_version_distinguishes_keys(self) -> None:
        self.assertNotEqual(
            instance_key("scan-1", make_sca_finding("4.17.20"), 1),
            instance_key("scan-1", make_sca_finding("4.17.21"), 1),
        )


if __name__ == "__main__":
    unittest.main()
