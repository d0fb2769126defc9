import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skillpin.cli import build_parser, cmd_install, main
from skillpin.config import Config
from skillpin.errors import ConflictError, SkillNotFoundError
from skillpin.installer import InstallResult
from skillpin.manager import BatchReport, InstallFailure, InstallOutcome


def _outcome(name: str = "pdf") -> InstallOutcome:
    result = InstallResult(success=True, path=Path(f"/p/.claude/skills/{name}"), mode="symlink")
    return InstallOutcome(skill=name, ref=f"acme/{name}@v1.0.0", version="v1.0.0", commit="a" * 40, results={"claude-code": result})


class TestInstallCommand(unittest.TestCase):
    def test_refs_go_to_install_many(self) -> None:
        args = build_parser().parse_args(["install", "acme/pdf@v1.0.0", "acme/docx", "-a", "claude-code", "-a", "cursor", "--no-save"])
        with (
            patch("skillpin.cli.load_config", return_value=Config()),
            patch("skillpin.cli.SkillManager") as mock_cls,
            patch("sys.stdout", new=io.StringIO()) as stdout,
        ):
            manager = mock_cls.return_value.__enter__.return_value
            manager.install_many.return_value = BatchReport(successes=[_outcome()])
            rc = cmd_install(args)

        self.assertEqual(rc, 0)
        manager.install_many.assert_called_once_with(
            ["acme/pdf@v1.0.0", "acme/docx"],
            agents=["claude-code", "cursor"],
            mode=None,
            force=False,
            save=False,
        )
        self.assertIn("installed: pdf@v1.0.0", stdout.getvalue())

    def test_no_refs_reinstalls_from_lock(self) -> None:
        args = build_parser().parse_args(["install", "--json"])
        with (
            patch("skillpin.cli.load_config", return_value=Config()),
            patch("skillpin.cli.SkillManager") as mock_cls,
            patch("sys.stdout", new=io.StringIO()) as stdout,
        ):
            manager = mock_cls.return_value.__enter__.return_value
            manager.reinstall_all.return_value = BatchReport(successes=[_outcome()])
            rc = cmd_install(args)

        self.assertEqual(rc, 0)
        manager.install_many.assert_not_called()
        payload = json.loads(stdout.getvalue())
        self.assertTrue(payload["ok"])
        self.assertEqual(payload["successes"][0]["targets"]["claude-code"]["mode"], "symlink")
        self.assertEqual(payload["successes"][0]["failed_targets"], {})

    def test_partial_failure_exits_nonzero_with_force_hint(self) -> None:
        args = build_parser().parse_args(["install", "acme/pdf@v1.0.0", "acme/docx"])
        report = BatchReport(
            successes=[_outcome()],
            failures=[InstallFailure(ref="acme/docx", error=ConflictError("destination exists"))],
        )
        with (
            patch("skillpin.cli.load_config", return_value=Config()),
            patch("skillpin.cli.SkillManager") as mock_cls,
            patch("sys.stdout", new=io.StringIO()),
            patch("sys.stderr", new=io.StringIO()) as stderr,
        ):
            mock_cls.return_value.__enter__.return_value.install_many.return_value = report
            rc = cmd_install(args)

        self.assertEqual(rc, 1)
        self.assertIn("acme/docx", stderr.getvalue())
        self.assertIn("--force", stderr.getvalue())

    def test_registry_flag_and_env_reach_the_manager(self) -> None:
        args = build_parser().parse_args(["install", "pdf", "--registry", "https://mirror.example.com"])
        with (
            patch.dict(os.environ, {"SKILLPIN_TOKEN": "env-token"}),
            patch("skillpin.cli.load_config", return_value=Config(registry_url="https://file.example.com")),
            patch("skillpin.cli.SkillManager") as mock_cls,
            patch("sys.stdout", new=io.StringIO()),
        ):
            mock_cls.return_value.__enter__.return_value.install_many.return_value = BatchReport()
            cmd_install(args)

        kwargs = mock_cls.call_args.kwargs
        self.assertEqual(kwargs["registry_url"], "https://mirror.example.com")
        self.assertEqual(kwargs["token"], "env-token")
        self.assertFalse(kwargs["global_"])


class TestMain(unittest.TestCase):
    def test_errors_become_exit_code_one(self) -> None:
        with (
            patch("skillpin.cli.load_config", return_value=Config()),
            patch("skillpin.cli.SkillManager") as mock_cls,
            patch("sys.stderr", new=io.StringIO()) as stderr,
        ):
            mock_cls.return_value.__enter__.return_value.uninstall.side_effect = SkillNotFoundError("pdf is not installed")
            rc = main(["uninstall", "pdf"])
        self.assertEqual(rc, 1)
        self.assertIn("error: pdf is not installed", stderr.getvalue())

    def test_install_end_to_end_from_a_git_reference(self) -> None:
        def fake_clone(url, dest, ref=None, *, depth=1):
            dest = Path(dest)
            dest.mkdir(parents=True)
            (dest / "SKILL.md").write_text("---\nname: pdf\n---\n", encoding="utf-8")
            return "b" * 40

        with tempfile.TemporaryDirectory() as td:
            env = {
                "SKILLPIN_CACHE_DIR": str(Path(td) / "cache"),
                "SKILLPIN_CONFIG_PATH": str(Path(td) / "config.json"),
            }
            project = Path(td) / "project"
            with (
                patch.dict(os.environ, env),
                patch("skillpin.cache.shallow_clone", side_effect=fake_clone),
                patch("sys.stdout", new=io.StringIO()) as stdout,
                patch("sys.stderr", new=io.StringIO()),
            ):
                rc = main(["install", "acme/pdf@v1.0.0", "-a", "claude-code", "--dir", str(project), "--json"])

            self.assertEqual(rc, 0)
            payload = json.loads(stdout.getvalue())
            self.assertEqual(payload["successes"][0]["commit"], "b" * 40)
            self.assertTrue((project / ".claude" / "skills" / "pdf").is_symlink())
            self.assertTrue((project / "skills.lock").is_file())
            self.assertTrue((project / "skills.json").is_file())

    def test_cache_path_and_config_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = {
                "SKILLPIN_CACHE_DIR": str(Path(td) / "cache"),
                "SKILLPIN_CONFIG_PATH": str(Path(td) / "config.json"),
            }
            with patch.dict(os.environ, env), patch("sys.stdout", new=io.StringIO()) as stdout:
                self.assertEqual(main(["cache", "path"]), 0)
                self.assertEqual(main(["config", "set", "--token", "tok_1234567890", "--timeout-s", "5"]), 0)
                self.assertEqual(main(["config", "show"]), 0)

            out = stdout.getvalue()
            self.assertIn(str(Path(td) / "cache"), out)
            self.assertIn("tok_12...7890", out)
            self.assertNotIn("tok_1234567890", out)


if __name__ == "__main__":
    unittest.main()
