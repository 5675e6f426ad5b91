"""Deduplication orchestrator against an in-memory catalog: merge, idempotence, conflicts and failures."""

import asyncio
import hashlib
import unittest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.exc import OperationalError

from app.core.config import Settings
from app.models import UnifiedVulnerability, VulnerabilityInstance
from app.schemas.findings import ScanBatch
from app.schemas.processing import ProcessingStats
from app.services.deduplication import VulnerabilityLookupError, process_batch
from app.services.store import VulnerabilityStore
from helpers import NOW, make_batch, make_finding, make_sca_finding, make_session


def _db_error() -> OperationalError:
    return OperationalError("statement", {}, Exception("database is unavailable"))


class DeduplicationTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session = make_session()
        self.store = VulnerabilityStore(self.session)
        self.settings = Settings()

    def tearDown(self) -> None:
        self.session.close()

    def run_batch(
        self,
        batch: ScanBatch,
        generator: MagicMock | None = None,
        settings: Settings | None = None,
    ) -> ProcessingStats:
        return asyncio.run(process_batch(batch, self.store, generator, settings or self.settings))

    def unified_rows(self) -> list[UnifiedVulnerability]:
        return self.session.query(UnifiedVulnerability).order_by(UnifiedVulnerability.id).all()

    def instance_rows(self) -> list[VulnerabilityInstance]:
        return self.session.query(VulnerabilityInstance).order_by(VulnerabilityInstance.id).all()


class TestEmptyBatch(unittest.TestCase):
    def test_zeroed_stats_without_touching_store(self) -> None:
        store = MagicMock()
        stats = asyncio.run(process_batch(make_batch([]), store, None, Settings()))
        self.assertEqual(stats, ProcessingStats())
        store.fetch_unified_ids.assert_not_called()


class TestMerge(DeduplicationTestCase):
    def test_cross_file_merge(self) -> None:
        """Same rule and CWE in two files: one unified row, two instances."""
        findings = [
            make_finding(file_path="a.py", line_start=10),
            make_finding(file_path="b.py", line_start=20),
        ]
        stats = self.run_batch(make_batch(findings))

        self.assertEqual(stats.unified_created, 1)
        self.assertEqual(stats.instances_created, 2)
        rows = self.unified_rows()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].fingerprint, hashlib.sha256(b"R1|sql-injection|CWE-89").hexdigest()[:32])
        self.assertEqual(rows[0].status, "open")
        self.assertEqual(rows[0].file_path, "a.py")
        self.assertEqual({i.file_path for i in self.instance_rows()}, {"a.py", "b.py"})
        self.assertEqual({i.vulnerability_id for i in self.instance_rows()}, {rows[0].id})

    def test_cross_scan_package_merge(self) -> None:
        """Package version changes between scans: same unified row, one instance per scan."""
        first = self.run_batch(make_batch([make_sca_finding("4.17.20")], scan_id="scan-1"))
        second = self.run_batch(
            make_batch([make_sca_finding("4.17.21")], scan_id="scan-2", now=NOW + timedelta(hours=1))
        )

        self.assertEqual(first.unified_created, 1)
        self.assertEqual(second.unified_created, 0)
        self.assertEqual(second.unified_updated, 1)
        self.assertEqual(second.instances_created, 1)
        self.assertEqual(len(self.unified_rows()), 1)
        instances = self.instance_rows()
        self.assertEqual([i.package_version for i in instances], ["4.17.20", "4.17.21"])
        self.assertEqual([i.scan_id for i in instances], ["scan-1", "scan-2"])

    def test_distinct_rules_are_distinct_vulnerabilities(self) -> None:
        findings = [
            make_finding(),
            make_finding(rule_id="xss", cwe=["CWE-79"], title="Reflected cross-site scripting in template"),
            make_sca_finding(),
        ]
        stats = self.run_batch(make_batch(findings))
        self.assertEqual(stats.unified_created, 3)
        self.assertEqual(stats.instances_created, 3)

    def test_same_location_twice_in_batch_is_one_instance(self) -> None:
        findings = [make_finding(scanner="semgrep"), make_finding(scanner="bandit", file_path="./src/db.py")]
        stats = self.run_batch(make_batch(findings))
        self.assertEqual(stats.instances_created, 1)
        self.assertEqual(stats.instances_skipped_duplicate, 1)

    def test_small_chunks(self) -> None:
        findings = [make_finding(rule_id=f"rule-{i}") for i in range(5)]
        stats = self.run_batch(make_batch(findings), settings=Settings(DEDUP_INSERT_CHUNK_SIZE=2))
        self.assertEqual(stats.unified_created, 5)
        self.assertEqual(stats.instances_created, 5)


class TestIdempotence(DeduplicationTestCase):
    def test_replay_creates_nothing(self) -> None:
        batch = make_batch([
            make_finding(file_path="a.py", line_start=10),
            make_finding(file_path="b.py", line_start=20),
            make_sca_finding(),
        ])
        first = self.run_batch(batch)
        second = self.run_batch(batch)

        self.assertEqual(second.unified_created, 0)
        self.assertEqual(second.unified_updated, first.unified_created)
        self.assertEqual(second.instances_created, 0)
        self.assertEqual(second.instances_already_existed, first.instances_created)
        self.assertEqual(second.instances_failed, 0)
        self.assertEqual(len(self.unified_rows()), 2)
        self.assertEqual(len(self.instance_rows()), 3)


class TestTimestamps(DeduplicationTestCase):
    def test_last_seen_bumped_and_first_detected_kept(self) -> None:
        later = NOW + timedelta(days=1)
        self.run_batch(make_batch([make_finding()], scan_id="scan-1"))
        self.run_batch(make_batch([make_finding()], scan_id="scan-2", now=later))

        row = self.unified_rows()[0]
        self.session.refresh(row)
        self.assertEqual(row.first_detected_at.replace(tzinfo=None), NOW.replace(tzinfo=None))
        self.assertEqual(row.last_seen_at.replace(tzinfo=None), later.replace(tzinfo=None))

    def test_last_seen_never_moves_back(self) -> None:
        later = NOW + timedelta(days=1)
        self.run_batch(make_batch([make_finding()], scan_id="scan-2", now=later))
        stats = self.run_batch(make_batch([make_finding()], scan_id="scan-1", now=NOW))

        self.assertEqual(stats.unified_updated, 0)
        self.assertEqual(stats.instances_created, 1)

        row = self.unified_rows()[0]
        self.session.refresh(row)
        self.assertEqual(row.last_seen_at.replace(tzinfo=None), later.replace(tzinfo=None))


class TestConflicts(DeduplicationTestCase):
    def test_concurrent_insert_is_adopted(self) -> None:
        """A fingerprint created after the lookup is adopted, not duplicated or failed."""
        self.run_batch(make_batch([make_finding()], scan_id="scan-1"))
        existing_id = self.unified_rows()[0].id

        with patch.object(self.store, "fetch_unified_ids", return_value={}):
            stats = self.run_batch(make_batch([make_finding()], scan_id="scan-2"))

        self.assertEqual(stats.unified_created, 0)
        self.assertEqual(stats.unified_adopted, 1)
        self.assertEqual(stats.unified_failed, 0)
        self.assertEqual(stats.instances_created, 1)
        self.assertEqual(len(self.unified_rows()), 1)
        self.assertEqual(self.instance_rows()[-1].vulnerability_id, existing_id)

    def test_lookup_failure_aborts_batch(self) -> None:
        with patch.object(self.store, "fetch_unified_ids", side_effect=_db_error()):
            with self.assertRaises(VulnerabilityLookupError) as ctx:
                self.run_batch(make_batch([make_finding()]))
        self.assertIsInstance(ctx.exception.cause, OperationalError)
        self.assertEqual(self.unified_rows(), [])

    def test_unified_write_failure_is_counted(self) -> None:
        with patch.object(self.store, "insert_unified_batch", side_effect=_db_error()), \
                patch.object(self.store, "insert_unified", side_effect=_db_error()):
            stats = self.run_batch(make_batch([make_finding()]))

        self.assertEqual(stats.unified_failed, 1)
        self.assertEqual(stats.findings_unresolved, 1)
        self.assertEqual(stats.instances_created, 0)

    def test_instance_write_failure_is_counted(self) -> None:
        findings = [make_finding(file_path="a.py"), make_finding(file_path="b.py")]
        with patch.object(self.store, "insert_instance_batch", side_effect=_db_error()), \
                patch.object(self.store, "insert_instance", side_effect=_db_error()):
            stats = self.run_batch(make_batch(findings))

        self.assertEqual(stats.unified_created, 1)
        self.assertEqual(stats.instances_failed, 2)
        self.assertEqual(stats.instances_created, 0)


class TestReopen(DeduplicationTestCase):
    def _fix_existing(self) -> None:
        self.run_batch(make_batch([make_finding()], scan_id="scan-1"))
        self.store.mark_fixed([self.unified_rows()[0].id], NOW)

    def test_fixed_stays_fixed_by_default(self) -> None:
        self._fix_existing()
        stats = self.run_batch(make_batch([make_finding()], scan_id="scan-2", now=NOW + timedelta(hours=1)))
        self.assertEqual(stats.unified_reopened, 0)
        row = self.unified_rows()[0]
        self.session.refresh(row)
        self.assertEqual(row.status, "fixed")

    def test_reopen_on_rediscovery(self) -> None:
        self._fix_existing()
        stats = self.run_batch(
            make_batch([make_finding()], scan_id="scan-2", now=NOW + timedelta(hours=1)),
            settings=Settings(REOPEN_ON_REDISCOVERY=True),
        )
        self.assertEqual(stats.unified_reopened, 1)
        row = self.unified_rows()[0]
        self.session.refresh(row)
        self.assertEqual(row.status, "open")
        self.assertIsNone(row.resolved_at)


class TestTitlesAndRecords(DeduplicationTestCase):
    def test_ai_titles_counted_and_stored(self) -> None:
        generator = MagicMock()
        generator.accepts.return_value = True
        generator.generate_title = AsyncMock(return_value="Unsanitized Input In Database Query")
        stats = self.run_batch(make_batch([make_finding(), make_sca_finding()]), generator)

        self.assertEqual(stats.titles_from_ai, 2)
        self.assertEqual(stats.titles_from_fallback, 0)
        self.assertEqual({r.title for r in self.unified_rows()}, {"Unsanitized Input In Database Query"})

    def test_ai_failures_fall_back_and_are_counted(self) -> None:
        generator = MagicMock()
        generator.accepts.return_value = True
        generator.generate_title = AsyncMock(side_effect=TimeoutError("slow"))
        stats = self.run_batch(make_batch([make_finding(), make_sca_finding()]), generator)

        self.assertEqual(stats.titles_from_ai, 0)
        self.assertEqual(stats.titles_from_fallback, 2)
        self.assertEqual(stats.title_errors, 2)
        self.assertEqual(stats.unified_created, 2)

    def test_malformed_finding_gets_literal_title_and_defaults(self) -> None:
        stats = self.run_batch(make_batch([make_finding(rule_id="", title="", description="", cwe=[])]))
        self.assertEqual(stats.titles_from_literal, 1)
        row = self.unified_rows()[0]
        self.assertEqual(row.title, "Unknown Vulnerability")
        self.assertEqual(row.rule_id, "unknown")
        self.assertEqual(row.description, "No description available")
        self.assertIsNone(row.cwe)

    def test_package_metadata_and_raw_finding_recorded(self) -> None:
        self.run_batch(make_batch([make_sca_finding()]))
        row = self.unified_rows()[0]
        self.assertEqual(row.scanner_metadata["package_name"], "lodash")
        self.assertEqual(row.scanner_metadata["fixed_version"], "4.17.21")
        self.assertEqual(row.scanner_metadata["cve"], "CVE-2021-1234")
        self.assertEqual(row.scanner_metadata["scanner"], "osv")
        instance = self.instance_rows()[0]
        self.assertEqual(instance.package_name, "lodash")
        self.assertEqual(instance.raw_finding["rule_id"], "CVE-2021-1234")
        self.assertEqual(instance.raw_finding["title"], row.title)

    def test_oversized_fields_are_cut_to_column_length(self) -> None:
        long_path = "src/" + "a" * 3000 + ".py"
        findings = [
            make_finding(file_path=long_path, scanner="s" * 400),
            make_finding(file_path="src/db.py"),
            make_sca_finding(metadata={"package_name": "p" * 1500, "package_version": "9" * 300}),
        ]
        stats = self.run_batch(make_batch(findings))

        self.assertEqual(stats.unified_created, 2)
        self.assertEqual(stats.instances_created, 3)
        self.assertEqual(stats.findings_unresolved, 0)
        self.assertEqual(stats.unified_failed, 0)
        sast_row = next(r for r in self.unified_rows() if r.scanner_type == "sast")
        self.assertEqual(len(sast_row.file_path), 2048)
        instances = self.instance_rows()
        long_instance = next(i for i in instances if i.file_path and len(i.file_path) == 2048)
        short_instance = next(i for i in instances if i.file_path == "src/db.py")
        package_instance = next(i for i in instances if i.scanner_type == "sca")
        self.assertEqual(long_instance.file_path, long_path[:2048])
        self.assertEqual(len(long_instance.scanner), 255)
        self.assertEqual(short_instance.file_path, "src/db.py")
        self.assertEqual(len(package_instance.package_name), 1024)
        self.assertEqual(len(package_instance.package_version), 255)
        self.assertEqual(len(long_instance.raw_finding["file_path"]), len(long_path))


if __name__ == "__main__":
    unittest.main()
