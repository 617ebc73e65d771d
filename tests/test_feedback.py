"""Tests for the preview runtime error feed."""

from __future__ import annotations

from ideaflow.feedback import RuntimeErrorFeed


class TestRuntimeErrorFeed:
    def test_errors_are_per_conversation(self):
        feed = RuntimeErrorFeed()
        feed.report("c1", "boom")
        feed.report("c2", "other")

        assert [e.message for e in feed.errors("c1")] == ["boom"]
        assert feed.has_errors("c2")
        feed.clear_errors("c1")
        assert not feed.has_errors("c1")
        assert feed.has_errors("c2")

    def test_format_for_agent(self):
        feed = RuntimeErrorFeed()
        assert feed.format_for_agent("c1") is None

        feed.report("c1", "x is not defined", source="App.tsx", line=12, column=4)
        feed.report("c1", "Cannot read properties of undefined")
        text = feed.format_for_agent("c1")

        assert text.startswith("The code you created has runtime errors in the preview panel.")
        assert "1. x is not defined in App.tsx at line 12:4" in text
        assert "2. Cannot read properties of undefined\n" in text
        assert "modify_file_lines" in text

    def test_errors_returns_a_copy(self):
        feed = RuntimeErrorFeed()
        feed.report("c1", "boom")
        feed.errors("c1").clear()
        assert feed.has_errors("c1")

    def test_log_file_appended(self, tmp_path):
        log = tmp_path / "logs" / "runtime-errors.log"
        feed = RuntimeErrorFeed(log)
        feed.report("c1", "boom", source="App.tsx", line=3, stack="at App")

        line = log.read_text().splitlines()[0]
        assert "[Idea: c1] boom in App.tsx (line 3)" in line
        assert log.read_text().endswith("  Stack: at App\n")
