"""Tests for the JSONL event logger."""
import json

from spec_loop.logger import LogLevel, LoopLogger


class TestLoopLogger:

    def test_writes_one_json_object_per_line(self, tmp_path):
        logger = LoopLogger("auth", tmp_path / "logs")
        logger.info("run_start", {"loop_index": 1})
        logger.warn("breaker_opened")

        files = list((tmp_path / "logs").glob("auth-*.jsonl"))
        assert len(files) == 1
        lines = files[0].read_text(encoding="utf-8").splitlines()
        first = json.loads(lines[0])
        assert first["event_type"] == "run_start"
        assert first["level"] == "info"
        assert first["spec"] == "auth"
        assert first["data"] == {"loop_index": 1}
        assert first["timestamp"].endswith("Z")
        assert json.loads(lines[1])["data"] == {}

    def test_session_context_tags_entries(self, tmp_path):
        logger = LoopLogger("auth", tmp_path)
        logger.info("before")
        with logger.session_context("s-1"):
            logger.info("inside")
        logger.info("after")

        tagged = logger.read_logs(session_id="s-1")
        assert [entry["event_type"] for entry in tagged] == ["session_start", "inside", "session_end"]
        assert "session_id" not in logger.read_logs(event_type="after")[0]

    def test_read_logs_filters(self, tmp_path):
        logger = LoopLogger("auth", tmp_path)
        logger.debug("a")
        logger.error("b", {"error": "boom"})
        logger.error("c")

        assert [e["event_type"] for e in logger.read_logs(level=LogLevel.ERROR)] == ["b", "c"]
        assert len(logger.read_logs(limit=2)) == 2
        assert logger.read_logs(date="1999-01-01") == []

    def test_non_json_values_are_stringified(self, tmp_path):
        logger = LoopLogger("auth", tmp_path)
        logger.info("path", {"where": tmp_path})
        assert logger.read_logs()[0]["data"]["where"] == str(tmp_path)
