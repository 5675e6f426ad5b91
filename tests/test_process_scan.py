"""CLI entrypoint: load findings from JSON, process a scan, optionally resolve, print stats."""

import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

from app.core.database import session_scope
from app.process_scan import load_findings, main
from helpers import make_session_factory


def _write(tmp: str, data: Any, name: str = "findings.json") -> Path:
    path = Path(tmp) / name
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


FINDINGS = [
    {"type": "sast", "rule_id": "sql-injection", "cwe": "CWE-89", "file_path": "a.py", "line_start": 1},
    {"type": "secret", "rule_id": "generic-api-key", "file_path": ".env", "line_start": 3},
]


class TestLoadFindings(unittest.TestCase):
    def test_array_and_object_forms(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            as_array = load_findings(_write(tmp, FINDINGS, "a.json"))
            as_object = load_findings(_write(tmp, {"findings": FINDINGS}, "b.json"))
        self.assertEqual(as_array, as_object)
        self.assertEqual(as_array[1].type, "secrets")
        self.assertEqual(as_array[0].cwe, ["CWE-89"])

    def test_invalid_input_raises_value_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ValueError):
                load_findings(_write(tmp, [{"rule_id": "missing-type"}]))
            with self.assertRaises(ValueError):
                load_findings(_write(tmp, "not a list"))
            with self.assertRaises(ValueError):
                load_findings(Path(tmp) / "absent.json")


class TestMain(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()

    def _run(self, argv: list[str]) -> tuple[int, str]:
        out = io.StringIO()
        with patch("app.process_scan.session_scope", lambda: session_scope(self.factory)), \
                patch("app.process_scan.get_title_generator", MagicMock(return_value=None)), \
                redirect_stdout(out):
            code = main(argv)
        return code, out.getvalue()

    def test_process_and_resolve(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = _write(tmp, FINDINGS)
            code, output = self._run([
                str(path), "--scan-id", "scan-1", "--workspace-id", "W1", "--repository-id", "R1", "--resolve",
            ])
        self.assertEqual(code, 0)
        result = json.loads(output)
        self.assertEqual(result["stats"]["unified_created"], 2)
        self.assertEqual(result["stats"]["instances_created"], 2)
        self.assertEqual(result["resolution"], {"fixed_count": 0, "previous_scan_id": None})

    def test_bad_file_exits_1(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            code, output = self._run([
                str(Path(tmp) / "absent.json"), "--scan-id", "s", "--workspace-id", "W1", "--repository-id", "R1",
            ])
        self.assertEqual(code, 1)
        self.assertEqual(output, "")


if __name__ == "__main__":
    unittest.main()
