import tempfile
import unittest
from pathlib import Path

from skillpin.agents import agent_skills_dir, all_agent_types, detect_installed_agents, get_agent, is_valid_agent
from skillpin.errors import SkillpinError


class TestAgents(unittest.TestCase):
    def test_lookup(self) -> None:
        self.assertIn("claude-code", all_agent_types())
        self.assertTrue(is_valid_agent("cursor"))
        self.assertFalse(is_valid_agent("vim"))
        with self.assertRaises(SkillpinError):
            get_agent("vim")

    def test_skills_dir_for_project_and_global(self) -> None:
        cwd = Path("/work/project")
        home = Path("/home/me")
        self.assertEqual(agent_skills_dir("claude-code", cwd=cwd), cwd / ".claude" / "skills")
        self.assertEqual(
            agent_skills_dir("windsurf", global_=True, home=home),
            home / ".codeium" / "windsurf" / "skills",
        )

    def test_detect_from_project_and_home(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            project = Path(td) / "project"
            home = Path(td) / "home"
            (project / ".cursor").mkdir(parents=True)
            (home / ".claude").mkdir(parents=True)
            self.assertEqual(detect_installed_agents(project, home), ["claude-code", "cursor"])


if __name__ == "__main__":
    unittest.main()
