"""Environment overrides and system prompt loading."""
from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from src.agentic_runtime import system_prompt_loader
from src.agentic_runtime.config import DEFAULT_MAX_ROUNDS, history_db_path
from src.agentic_runtime.loop import TurnOptions


class TestTurnOptionsFromEnv(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            options = TurnOptions.from_env()
        self.assertEqual(options.max_rounds, DEFAULT_MAX_ROUNDS)
        self.assertTrue(options.commentary)

    def test_overrides(self) -> None:
        env = {
            "AGENTIC_MAX_ROUNDS": "3",
            "AGENTIC_TOOL_TIMEOUT": "2.5",
            "AGENTIC_TURN_TIMEOUT": "0",
            "AGENTIC_COMMENTARY": "off",
        }
        with patch.dict(os.environ, env, clear=True):
            options = TurnOptions.from_env()
        self.assertEqual(options.max_rounds, 3)
        self.assertEqual(options.tool_timeout, 2.5)
        self.assertIsNone(options.turn_timeout)
        self.assertFalse(options.commentary)

    def test_garbage_values_fall_back_to_defaults(self) -> None:
        with patch.dict(os.environ, {"AGENTIC_MAX_ROUNDS": "many"}, clear=True):
            self.assertEqual(TurnOptions.from_env().max_rounds, DEFAULT_MAX_ROUNDS)

    def test_history_db_override(self) -> None:
        with patch.dict(os.environ, {"AGENTIC_HISTORY_DB": "/tmp/other.db"}, clear=True):
            self.assertEqual(history_db_path(), "/tmp/other.db")


class TestSystemPrompts(unittest.TestCase):
    def setUp(self) -> None:
        system_prompt_loader.clear_cache()

    def tearDown(self) -> None:
        system_prompt_loader.clear_cache()

    def test_default_prompt_ships_with_the_repo(self) -> None:
        self.assertIn("tools", system_prompt_loader.get_default_system_prompt())

    def test_agent_specific_prompt_wins(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "math.md").write_text("  You only do math.\n", encoding="utf-8")
            self.assertEqual(system_prompt_loader.get_system_prompt("math", Path(tmp)), "You only do math.")
            self.assertEqual(
                system_prompt_loader.get_system_prompt("unknown", Path(tmp)),
                system_prompt_loader.get_default_system_prompt(),
            )

    def test_path_like_agent_ids_are_ignored(self) -> None:
        self.assertEqual(
            system_prompt_loader.get_system_prompt("../secrets"),
            system_prompt_loader.get_default_system_prompt(),
        )


if __name__ == "__main__":
    unittest.main()
