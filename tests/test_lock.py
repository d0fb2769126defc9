import json
import tempfile
import unittest
from pathlib import Path

from skillpin.errors import SkillpinError
from skillpin.lock import LOCKFILE_VERSION, LockStore


class TestLockStore(unittest.TestCase):
    def test_record_get_all_remove(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "skills.lock"
            lock = LockStore(path)
            self.assertFalse(lock.exists())
            self.assertIsNone(lock.get("pdf"))

            lock.record("pdf", ref="github:acme/skills/pdf@^1.0.0", resolved_version="v1.4.0", commit="a" * 40)
            lock.record("docx", ref="@acme/docx", resolved_version="2.0.0", commit="b" * 40, integrity="sha256-x")

            entry = lock.get("pdf")
            self.assertIsNotNone(entry)
            self.assertEqual(entry.ref, "github:acme/skills/pdf@^1.0.0")
            self.assertEqual(entry.resolved_version, "v1.4.0")
            self.assertTrue(entry.installed_at.endswith("Z"))
            self.assertIsNone(entry.integrity)
            self.assertEqual(sorted(lock.all()), ["docx", "pdf"])
            self.assertTrue(lock.matches("pdf", "github:acme/skills/pdf@^1.0.0", "v1.4.0"))
            self.assertFalse(lock.matches("pdf", "github:acme/skills/pdf@^1.0.0", "v1.5.0"))

            raw = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(raw["lockfileVersion"], LOCKFILE_VERSION)
            self.assertEqual(raw["skills"]["docx"]["integrity"], "sha256-x")
            self.assertNotIn("integrity", raw["skills"]["pdf"])

            self.assertTrue(lock.remove("pdf"))
            self.assertFalse(lock.remove("pdf"))
            self.assertFalse(lock.has("pdf"))
            self.assertTrue(lock.has("docx"))

    def test_malformed_entries_are_skipped(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "skills.lock"
            path.write_text(
                json.dumps({"lockfileVersion": 1, "skills": {"ok": {"ref": "a/b", "resolved_version": "main"}, "bad": "x"}}),
                encoding="utf-8",
            )
            entries = LockStore(path).all()
            self.assertEqual(list(entries), ["ok"])
            self.assertEqual(entries["ok"].commit, "")

    def test_invalid_json(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "skills.lock"
            path.write_text("{nope", encoding="utf-8")
            with self.assertRaises(SkillpinError):
                LockStore(path).all()


if __name__ == "__main__":
    unittest.main()
