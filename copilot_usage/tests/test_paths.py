import os
import unittest
from pathlib import Path
from unittest.mock import patch

from copilot_usage import paths


class StorageRootTests(unittest.TestCase):
    def test_linux_uses_dot_config(self) -> None:
        roots = paths.default_storage_roots("linux", Path("/home/dev"))
        self.assertEqual(
            roots,
            [
                Path("/home/dev/.config/Code/User/workspaceStorage"),
                Path("/home/dev/.config/Code - Insiders/User/workspaceStorage"),
            ],
        )

    def test_macos_uses_application_support(self) -> None:
        roots = paths.default_log_roots("darwin", Path("/Users/dev"))
        self.assertEqual(roots[0], Path("/Users/dev/Library/Application Support/Code/logs"))

    def test_windows_prefers_appdata(self) -> None:
        with patch.dict(os.environ, {"APPDATA": "/appdata"}):
            self.assertEqual(paths.user_data_base("win32", Path("/home/dev")), Path("/appdata"))
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(paths.user_data_base("win32", Path("/home/dev")), Path("/home/dev/AppData/Roaming"))

    def test_configured_roots_override_defaults(self) -> None:
        with patch.object(paths.config, "STORAGE_ROOTS", [Path("/custom")]):
            self.assertEqual(paths.storage_roots(), [Path("/custom")])
        with patch.object(paths.config, "LOG_ROOTS", []):
            self.assertEqual(len(paths.log_roots()), 2)

    def test_edition_label(self) -> None:
        self.assertEqual(paths.edition_label("/x/Code - Insiders/logs"), "VS Code Insiders")
        self.assertEqual(paths.edition_label(Path("/x/Code/logs")), "VS Code Stable")


if __name__ == "__main__":
    unittest.main()
