import json
import tempfile
import unittest
from pathlib import Path

from copilot_usage.parsers.chat_sessions import ChatSessionScanner


def _session(session_id: str | None, requests: list | None = None, **extra) -> dict:
    payload = {"version": 3, "creationDate": 1755083277000, "initialLocation": "panel", **extra}
    if session_id is not None:
        payload["sessionId"] = session_id
    if requests is not None:
        payload["requests"] = requests
    return payload


class ChatSessionScannerTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name) / "workspaceStorage"
        self.sessions_dir = self.root / "ws-one" / "chatSessions"
        self.sessions_dir.mkdir(parents=True)
        self.scanner = ChatSessionScanner([self.root])

    def _write(self, name: str, payload, directory: Path | None = None) -> Path:
        path = (directory or self.sessions_dir) / name
        path.parent.mkdir(parents=True, exist_ok=True)
        text = payload if isinstance(payload, str) else json.dumps(payload)
        path.write_text(text, encoding="utf-8")
        return path

    def test_invalid_file_is_counted_and_skipped(self) -> None:
        self._write("aaa-111.json", _session("s1", [{"requestId": "r1", "timestamp": 1755083300000}]))
        self._write("bbb-222.json", _session("s2", [{"requestId": "r2"}, {"requestId": "r3"}]))
        self._write("ccc-333.json", "{not json")

        scan = self.scanner.scan_all()

        self.assertEqual(len(scan.results), 2)
        self.assertEqual(scan.stats.scannedFiles, 3)
        self.assertEqual(scan.stats.errorFiles, 1)
        self.assertEqual(scan.stats.totalSessions, 2)
        self.assertEqual(scan.stats.totalRequests, 3)
        self.assertEqual(scan.stats.oldestSession, "2025-08-13T11:07:57.000Z")

    def test_missing_requests_array_yields_empty_list(self) -> None:
        self._write("aaa-111.json", _session("s1"))
        self._write("bbb-222.json", _session("s2", requests="nope"))

        scan = self.scanner.scan_all()

        self.assertEqual(sorted(r.session.sessionId for r in scan.results), ["s1", "s2"])
        self.assertTrue(all(r.session.requests == [] for r in scan.results))
        self.assertEqual(scan.stats.errorFiles, 0)

    def test_non_object_json_is_an_error(self) -> None:
        self._write("aaa-111.json", "[1, 2, 3]")
        self.assertIsNone(self.scanner.parse_file(self.sessions_dir / "aaa-111.json"))

    def test_missing_session_id_falls_back_to_file_stem(self) -> None:
        path = self._write("abc-123.json", _session(None, []))
        result = self.scanner.parse_file(path)

        self.assertIsNotNone(result)
        assert result is not None
        self.assertEqual(result.session.sessionId, "abc-123")

    def test_malformed_requests_are_dropped_individually(self) -> None:
        path = self._write(
            "abc-123.json",
            _session(
                "s1",
                [
                    {"requestId": "r1", "timestamp": "not-a-number"},
                    {"requestId": "r2", "message": {"text": "hi"}, "unknownField": 1},
                    "garbage",
                    {"message": {"text": "no id"}},
                ],
            ),
        )
        result = self.scanner.parse_file(path)

        assert result is not None
        self.assertEqual([r.key for r in result.session.requests], ["r2"])
        self.assertEqual(result.droppedRequests, 3)
        self.assertEqual(result.session.requests[0].model_extra, {"unknownField": 1})

    def test_ignores_non_session_files_and_missing_directories(self) -> None:
        self._write("notes.txt", "hello")
        self._write("has space.json", _session("s1", []))
        (self.root / "ws-two").mkdir()
        (self.root / "stray-file").write_text("x", encoding="utf-8")

        self.assertEqual(self.scanner.find_all_files(), [])

    def test_missing_root_returns_no_results(self) -> None:
        scanner = ChatSessionScanner([self.root / "does-not-exist"])

        scan = scanner.scan_all()

        self.assertEqual(scan.results, [])
        self.assertEqual(scanner.available_roots(), [])

    def test_oversized_files_are_skipped(self) -> None:
        self._write("aaa-111.json", _session("s1", []))
        self.scanner.max_file_bytes = 10

        self.assertEqual(self.scanner.find_all_files(), [])

    def test_oversized_file_change_is_not_parsed(self) -> None:
        path = self._write("aaa-111.json", _session("s1", [{"requestId": "r1"}]))
        self.scanner.max_file_bytes = 10
        received = []
        self.scanner._callbacks.append(received.append)

        with self.assertLogs("copilot_usage.scanner", level="WARNING"):
            self.assertIsNone(self.scanner.parse_file(path))
            self.assertIsNone(self.scanner.handle_change(path))

        self.assertEqual(received, [])

    def test_workspace_info_reports_edition_and_counts(self) -> None:
        self._write("aaa-111.json", _session("s1", []))
        self._write("bbb-222.json", _session("s2", []))

        info = self.scanner.get_workspace_info()

        self.assertEqual(len(info), 1)
        self.assertEqual(info[0]["workspaceId"], "ws-one")
        self.assertEqual(info[0]["edition"], "VS Code Stable")
        self.assertEqual(info[0]["fileCount"], 2)

    def test_handle_change_isolates_callback_failures(self) -> None:
        path = self._write("aaa-111.json", _session("s1", [{"requestId": "r1"}]))
        received = []

        def broken(_result) -> None:
            raise RuntimeError("boom")

        self.scanner._callbacks.extend([broken, received.append])
        with self.assertLogs("copilot_usage.scanner", level="ERROR"):
            result = self.scanner.handle_change(path)

        self.assertEqual(received, [result])

    def test_is_candidate(self) -> None:
        self.assertTrue(self.scanner.is_candidate(self.sessions_dir / "abc-123.json"))
        self.assertFalse(self.scanner.is_candidate(self.sessions_dir / "abc.txt"))
        self.assertFalse(self.scanner.is_candidate(self.root / "ws-one" / "other" / "abc.json"))


if __name__ == "__main__":
    unittest.main()
