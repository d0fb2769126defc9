import io
import tarfile
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import httpx

from skillpin.cache import CacheStore
from skillpin.client import RegistryClient, calculate_integrity
from skillpin.errors import ConflictError, IntegrityError, ReferenceSyntaxError, SkillNotFoundError
from skillpin.lock import LockStore
from skillpin.manager import SkillManager
from skillpin.resolver import RegistryResolver

SHA1 = "1" * 40
SHA2 = "2" * 40

SINGLE = {"SKILL.md": "---\nname: pdf\n---\nbody\n", "README.md": "readme\n"}
MONOREPO = {
    "skills/pdf/SKILL.md": "---\nname: pdf\n---\n",
    "skills/docx/SKILL.md": "---\nname: docx\n---\n",
}


class FakeGit:
    """Stands in for ``shallow_clone``: writes a tree and reports a commit."""

    def __init__(self, tree: dict[str, str], sha: str = SHA1) -> None:
        self.tree = tree
        self.sha = sha
        self.calls: list[tuple[str, str | None]] = []

    def __call__(self, url, dest, ref=None, *, depth=1):
        self.calls.append((url, ref))
        dest = Path(dest)
        for name, text in self.tree.items():
            target = dest / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")
        return self.sha


def _manager(root: Path, **kwargs) -> SkillManager:
    return SkillManager(root / "project", cache=CacheStore(root / "cache"), home=root / "home", **kwargs)


def _tarball(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo("package/" + name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class TestInstallOne(unittest.TestCase):
    def test_git_install_links_locks_and_saves(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            fake = FakeGit(SINGLE)
            with patch("skillpin.cache.shallow_clone", side_effect=fake):
                outcome = _manager(root).install_one("acme/pdf@v1.0.0", agents=["claude-code"])

            self.assertTrue(outcome.ok)
            self.assertFalse(outcome.up_to_date)
            self.assertEqual((outcome.skill, outcome.version, outcome.commit), ("pdf", "v1.0.0", SHA1))
            self.assertEqual(fake.calls, [("https://github.com/acme/pdf.git", "v1.0.0")])

            link = root / "project" / ".claude" / "skills" / "pdf"
            self.assertTrue(link.is_symlink())
            self.assertFalse((link / "README.md").exists())

            entry = LockStore(root / "project" / "skills.lock").get("pdf")
            self.assertEqual((entry.ref, entry.resolved_version, entry.commit), ("acme/pdf@v1.0.0", "v1.0.0", SHA1))

            manager = _manager(root)
            self.assertEqual(manager.manifest.get_skills(), {"pdf": "acme/pdf@v1.0.0"})
            self.assertEqual(manager.defaults.target_agents, ("claude-code",))

    def test_same_reference_twice_is_a_no_op(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            fake = FakeGit(SINGLE)
            with (
                patch("skillpin.cache.shallow_clone", side_effect=fake),
                patch("skillpin.resolver.remote_commit", return_value=SHA1),
            ):
                _manager(root).install_one("acme/pdf@v1.0.0", agents=["claude-code"])
                again = _manager(root).install_one("acme/pdf@v1.0.0", agents=["claude-code"])

            self.assertTrue(again.up_to_date)
            self.assertTrue(again.results["claude-code"].already_installed)
            self.assertEqual(len(fake.calls), 1)

    def test_same_reference_twice_in_copy_mode_without_remote_commit(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            fake = FakeGit(SINGLE)
            with (
                patch("skillpin.cache.shallow_clone", side_effect=fake),
                patch("skillpin.resolver.remote_commit", return_value=""),
            ):
                _manager(root).install_one("acme/pdf@v1.0.0", agents=["claude-code"], mode="copy")
                again = _manager(root).install_one("acme/pdf@v1.0.0", agents=["claude-code"], mode="copy")

            self.assertTrue(again.ok)
            self.assertTrue(again.results["claude-code"].already_installed)
            # second run is served from the cache
            self.assertEqual(len(fake.calls), 1)

    def test_update_skip_and_refresh_for_default_branch(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            fake = FakeGit(SINGLE, SHA1)
            with (
                patch("skillpin.cache.shallow_clone", side_effect=fake),
                patch("skillpin.resolver.default_branch", return_value=("main", SHA1)) as mock_head,
            ):
                _manager(root).install_one("acme/pdf", agents=["claude-code"])
                same = _manager(root).install_one("acme/pdf", agents=["claude-code"])
                self.assertTrue(same.up_to_date)
                self.assertEqual(len(fake.calls), 1)

                mock_head.return_value = ("main", SHA2)
                fake.sha = SHA2
                fake.tree = {"SKILL.md": "---\nname: pdf\n---\nnew\n"}
                moved = _manager(root).install_one("acme/pdf", agents=["claude-code"])

            self.assertFalse(moved.up_to_date)
            self.assertEqual(moved.commit, SHA2)
            self.assertEqual(len(fake.calls), 2)
            self.assertEqual(LockStore(root / "project" / "skills.lock").get("pdf").commit, SHA2)
            skill_md = root / "project" / ".claude" / "skills" / "pdf" / "SKILL.md"
            self.assertIn("new", skill_md.read_text(encoding="utf-8"))

    def test_latest_uses_highest_tag(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            fake = FakeGit(SINGLE, SHA2)
            tags = {"v1.0.0": SHA1, "v1.2.0": SHA2, "v2.0.0-rc.1": "3" * 40}
            with (
                patch("skillpin.cache.shallow_clone", side_effect=fake),
                patch("skillpin.resolver.list_remote_tags", return_value=tags),
            ):
                outcome = _manager(root).install_one("acme/pdf@latest", agents=["claude-code"])
            self.assertEqual(outcome.version, "v1.2.0")
            self.assertEqual(fake.calls[0][1], "v1.2.0")

    def test_conflict_then_force(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            dest = root / "project" / ".claude" / "skills" / "pdf"
            dest.mkdir(parents=True)
            (dest / "SKILL.md").write_text("mine", encoding="utf-8")

            with patch("skillpin.cache.shallow_clone", side_effect=FakeGit(SINGLE)):
                with self.assertRaises(ConflictError):
                    _manager(root).install_one("acme/pdf@v1.0.0", agents=["claude-code"])
                self.assertIsNone(LockStore(root / "project" / "skills.lock").get("pdf"))

                outcome = _manager(root).install_one("acme/pdf@v1.0.0", agents=["claude-code"], force=True)
            self.assertTrue(outcome.ok)
            self.assertTrue(dest.is_symlink())

    def test_stale_cached_branch_is_refetched_in_a_fresh_project(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            fake = FakeGit(SINGLE, SHA1)
            with (
                patch("skillpin.cache.shallow_clone", side_effect=fake),
                patch("skillpin.resolver.remote_commit", return_value=SHA1) as mock_remote,
            ):
                _manager(root).install_one("acme/pdf@branch:main", agents=["claude-code"])

                mock_remote.return_value = SHA2
                fake.sha = SHA2
                fake.tree = {"SKILL.md": "---\nname: pdf\n---\nnew\n"}
                other = SkillManager(root / "other", cache=CacheStore(root / "cache"), home=root / "home")
                outcome = other.install_one("acme/pdf@branch:main", agents=["claude-code"])

            self.assertEqual(outcome.commit, SHA2)
            self.assertEqual(len(fake.calls), 2)
            skill_md = root / "other" / ".claude" / "skills" / "pdf" / "SKILL.md"
            self.assertIn("new", skill_md.read_text(encoding="utf-8"))

    def test_unmanaged_canonical_dir_is_not_overwritten(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            canonical = root / "project" / ".agents" / "skills" / "pdf"
            canonical.mkdir(parents=True)
            (canonical / "SKILL.md").write_text("mine", encoding="utf-8")

            with patch("skillpin.cache.shallow_clone", side_effect=FakeGit(SINGLE)):
                with self.assertRaises(ConflictError):
                    _manager(root).install_one("acme/pdf@v1.0.0", agents=["amp"])
                self.assertEqual((canonical / "SKILL.md").read_text(encoding="utf-8"), "mine")

                outcome = _manager(root).install_one("acme/pdf@v1.0.0", agents=["amp"], force=True)
            self.assertTrue(outcome.ok)
            self.assertIn("body", (canonical / "SKILL.md").read_text(encoding="utf-8"))

    def test_symlink_fallback_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            with (
                patch("skillpin.cache.shallow_clone", side_effect=FakeGit(SINGLE)),
                patch("skillpin.installer.os.symlink", side_effect=OSError("not permitted")),
            ):
                outcome = _manager(root).install_one("acme/pdf@v1.0.0", agents=["claude-code"])
            self.assertTrue(outcome.ok)
            self.assertEqual(outcome.symlink_fallbacks, ["claude-code"])

    def test_skill_selection_in_monorepo(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            with patch("skillpin.cache.shallow_clone", side_effect=FakeGit(MONOREPO)):
                outcome = _manager(root).install_one("acme/skills@v1.0.0#docx", agents=["claude-code"])
                self.assertEqual(outcome.skill, "docx")
                self.assertTrue((root / "project" / ".agents" / "skills" / "docx" / "SKILL.md").is_file())

                with self.assertRaises(SkillNotFoundError):
                    _manager(root).install_one("acme/skills@v1.0.0#missing", agents=["claude-code"])
                with self.assertRaises(SkillNotFoundError):
                    _manager(root).install_one("acme/skills@v1.0.0", agents=["claude-code"])

    def test_no_save_leaves_manifest_alone(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            with patch("skillpin.cache.shallow_clone", side_effect=FakeGit(SINGLE)):
                _manager(root).install_one("acme/pdf@v1.0.0", agents=["claude-code"], save=False)
            self.assertFalse((root / "project" / "skills.json").exists())
            self.assertTrue((root / "project" / "skills.lock").exists())


class TestInstallMany(unittest.TestCase):
    def test_batch_does_not_stop_at_first_failure(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            with patch("skillpin.cache.shallow_clone", side_effect=FakeGit(SINGLE)):
                report = _manager(root).install_many(
                    ["acme/pdf@v1.0.0", "owner/", "acme/docx@v1.0.0"],
                    agents=["claude-code"],
                )

            self.assertFalse(report.ok)
            self.assertEqual([o.skill for o in report.successes], ["pdf", "docx"])
            self.assertEqual(len(report.failures), 1)
            self.assertEqual(report.failures[0].ref, "owner/")
            self.assertIsInstance(report.failures[0].error, ReferenceSyntaxError)


class TestReinstallAll(unittest.TestCase):
    def test_locked_versions_are_used_verbatim(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            lock = LockStore(root / "project" / "skills.lock")
            lock.record("pdf", ref="acme/pdf@^1.0.0", resolved_version="v1.2.0", commit=SHA2)
            fake = FakeGit(SINGLE, SHA2)

            with (
                patch("skillpin.cache.shallow_clone", side_effect=fake),
                patch("skillpin.resolver.list_remote_tags", side_effect=AssertionError("ranges must not be re-resolved")),
            ):
                report = _manager(root).reinstall_all(agents=["claude-code"])

            self.assertTrue(report.ok)
            self.assertEqual(fake.calls, [("https://github.com/acme/pdf.git", SHA2)])
            entry = lock.get("pdf")
            self.assertEqual((entry.resolved_version, entry.commit), ("v1.2.0", SHA2))
            self.assertTrue((root / "project" / ".claude" / "skills" / "pdf").is_symlink())

    def test_reinstall_is_repeatable_and_covers_unlocked_manifest_skills(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            fake = FakeGit(SINGLE)
            with patch("skillpin.cache.shallow_clone", side_effect=fake):
                _manager(root).install_one("acme/pdf@v1.0.0", agents=["claude-code"])
                manager = _manager(root)
                manager.manifest.add_skill("docx", "acme/docx@v2.0.0")
                report = _manager(root).reinstall_all()

            self.assertTrue(report.ok)
            by_name = {o.skill: o for o in report.successes}
            self.assertTrue(by_name["pdf"].up_to_date)
            self.assertFalse(by_name["docx"].up_to_date)
            self.assertEqual(len(fake.calls), 2)


class TestUpdateCheck(unittest.TestCase):
    def test_check_needs_update_compares_commits(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            LockStore(root / "project" / "skills.lock").record(
                "pdf", ref="acme/pdf@branch:main", resolved_version="main", commit=SHA1
            )
            manager = _manager(root)
            with patch("skillpin.resolver.remote_commit", return_value=SHA1):
                self.assertFalse(manager.check_needs_update("pdf"))
            with patch("skillpin.resolver.remote_commit", return_value=SHA2):
                self.assertTrue(manager.check_needs_update("pdf"))
            with self.assertRaises(SkillNotFoundError):
                manager.check_needs_update("ghost")


class TestRegistryInstall(unittest.TestCase):
    def _resolver(self, data: bytes, integrity: str) -> RegistryResolver:
        meta = {"dist-tags": {"latest": "1.0.0"}, "versions": {"1.0.0": {"integrity": integrity}}}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/download"):
                return httpx.Response(200, content=data)
            return httpx.Response(200, json=meta)

        def factory(url, **kwargs):
            return RegistryClient(url, http=httpx.Client(transport=httpx.MockTransport(handler)), **kwargs)

        return RegistryResolver(default_url="https://registry.example.com", client_factory=factory)

    def test_registry_install_records_integrity(self) -> None:
        data = _tarball({"SKILL.md": "---\nname: pdf\n---\n"})
        integrity = calculate_integrity(data)
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            manager = _manager(root, registry_resolver=self._resolver(data, integrity))
            outcome = manager.install_one("pdf", agents=["claude-code"])
            self.assertEqual(outcome.version, "1.0.0")
            entry = manager.lock.get("pdf")
            self.assertEqual(entry.integrity, integrity)
            self.assertEqual(entry.resolved_version, "1.0.0")
            self.assertTrue((root / "project" / ".agents" / "skills" / "pdf" / "SKILL.md").is_file())

    def test_integrity_mismatch_installs_nothing(self) -> None:
        data = _tarball({"SKILL.md": "x"})
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            manager = _manager(root, registry_resolver=self._resolver(data, calculate_integrity(b"other")))
            with self.assertRaises(IntegrityError):
                manager.install_one("pdf", agents=["claude-code"])
            self.assertIsNone(manager.lock.get("pdf"))
            self.assertFalse((root / "project" / ".agents" / "skills" / "pdf").exists())
            self.assertEqual(manager.list_cached(), [])


class TestHousekeeping(unittest.TestCase):
    def test_uninstall_and_cache_clear(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            with patch("skillpin.cache.shallow_clone", side_effect=FakeGit(SINGLE)):
                _manager(root).install_one("acme/pdf@v1.0.0", agents=["claude-code"])

            manager = _manager(root)
            self.assertEqual(list(manager.list_installed()), ["pdf"])
            self.assertEqual(len(manager.list_cached()), 1)

            manager.uninstall("pdf")
            self.assertFalse((root / "project" / ".claude" / "skills" / "pdf").exists())
            self.assertIsNone(manager.lock.get("pdf"))
            self.assertEqual(manager.manifest.get_skills(), {})
            with self.assertRaises(SkillNotFoundError):
                manager.uninstall("pdf")

            manager.clear_cache()
            self.assertEqual(manager.list_cached(), [])


if __name__ == "__main__":
    unittest.main()
