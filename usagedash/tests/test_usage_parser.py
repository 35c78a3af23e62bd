import json
import os
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from usagedash.parsers.session_paths import list_session_files, parse_session_identity
from usagedash.parsers.usage_lines import parse_cost_micros, parse_usage_line, to_cost_micros, to_token_count


class UsageLineParserTests(unittest.TestCase):
    def test_parses_usage_payload_variants_and_tool_calls(self) -> None:
        line = json.dumps(
            {
                "createdAt": "2026-02-06T10:00:00.000Z",
                "message": {
                    "usage": {
                        "input": 100,
                        "outputTokens": 80,
                        "cacheRead": 25,
                        "cacheWriteTokens": 5,
                        "totalTokens": 210,
                        "cost": {"total": 0.0025},
                    },
                    "content": [
                        {"type": "toolCall", "name": "read_file"},
                        {"type": "toolCall", "name": "search"},
                    ],
                },
                "model": "claude-sonnet",
            }
        )

        parsed = parse_usage_line(line)
        self.assertIsNotNone(parsed)
        self.assertEqual(parsed.input_tokens, 100)
        self.assertEqual(parsed.output_tokens, 80)
        self.assertEqual(parsed.cache_read_tokens, 25)
        self.assertEqual(parsed.cache_write_tokens, 5)
        self.assertEqual(parsed.total_tokens, 210)
        self.assertEqual(parsed.total_cost_micros, 2500)
        self.assertEqual(parsed.model, "claude-sonnet")
        self.assertEqual(parsed.tool_calls, ["read_file", "search"])
        self.assertEqual(parsed.seen_at, datetime(2026, 2, 6, 10, 0, tzinfo=timezone.utc))
        self.assertTrue(parsed.has_usage)
        self.assertFalse(parsed.has_error)

    def test_marks_line_as_error_when_explicit_error_fields_are_present(self) -> None:
        line = json.dumps({"timestamp": "2026-02-06T10:01:00.000Z", "type": "runner_error", "error": "boom"})

        parsed = parse_usage_line(line)
        self.assertIsNotNone(parsed)
        self.assertTrue(parsed.has_error)
        self.assertFalse(parsed.has_usage)
        self.assertEqual(parsed.total_tokens, 0)

    def test_total_tokens_falls_back_to_component_sum(self) -> None:
        line = json.dumps({"usage": {"input_tokens": 10, "output_tokens": 4, "cache_read_input_tokens": 6}})
        parsed = parse_usage_line(line)
        self.assertEqual(parsed.total_tokens, 20)

    def test_cost_components_are_summed_when_total_missing(self) -> None:
        self.assertEqual(parse_cost_micros({"input": 0.001, "output": 0.002}), 3000)
        self.assertEqual(parse_cost_micros(0.0004), 400)
        self.assertEqual(parse_cost_micros("0.0006"), 600)
        self.assertEqual(parse_cost_micros(None), 0)

    def test_cost_rounds_half_up_and_ignores_non_positive(self) -> None:
        self.assertEqual(to_cost_micros(0.0000005), 1)
        self.assertEqual(to_cost_micros(-1), 0)
        self.assertEqual(to_cost_micros(float("nan")), 0)
        self.assertEqual(to_cost_micros(True), 0)

    def test_out_of_range_numbers_become_zero(self) -> None:
        self.assertEqual(to_cost_micros("1e30"), 0)
        self.assertEqual(to_cost_micros(1e25), 0)
        self.assertEqual(to_cost_micros("1e999999999"), 0)
        self.assertEqual(to_cost_micros("9223372036854"), 9_223_372_036_854_000_000)
        self.assertEqual(to_token_count("1e30"), 0)
        self.assertEqual(to_token_count(2**63), 0)
        self.assertEqual(to_token_count(2**63 - 1), 2**63 - 1)

        parsed = parse_usage_line(json.dumps({"usage": {"input": 1, "cost": 1e25}}))
        self.assertEqual(parsed.input_tokens, 1)
        self.assertEqual(parsed.total_cost_micros, 0)
        parsed = parse_usage_line('{"usage": {"input": 1e40, "output": 2, "cost": "1e30"}}')
        self.assertEqual((parsed.input_tokens, parsed.output_tokens, parsed.total_tokens), (0, 2, 2))

    def test_deeply_nested_line_is_rejected(self) -> None:
        self.assertIsNone(parse_usage_line("[" * 100_000 + "]" * 100_000))
        self.assertIsNone(parse_usage_line('{"usage": ' + "[" * 100_000 + "]" * 100_000 + "}"))

    def test_negative_and_garbage_token_values_become_zero(self) -> None:
        line = json.dumps({"usage": {"input": -5, "output": "abc", "total": 3.9}})
        parsed = parse_usage_line(line)
        self.assertEqual(parsed.input_tokens, 0)
        self.assertEqual(parsed.output_tokens, 0)
        self.assertEqual(parsed.total_tokens, 3)

    def test_lines_without_signal_are_rejected(self) -> None:
        self.assertIsNone(parse_usage_line(""))
        self.assertIsNone(parse_usage_line("   "))
        self.assertIsNone(parse_usage_line("{not json"))
        self.assertIsNone(parse_usage_line("[1, 2, 3]"))
        self.assertIsNone(parse_usage_line(json.dumps({"type": "message", "message": {"role": "user"}})))

    def test_tool_only_line_keeps_repeated_calls_lowercased(self) -> None:
        line = json.dumps(
            {
                "message": {
                    "content": [
                        {"type": "tool_use", "name": "Read"},
                        {"type": "text", "text": "hi"},
                        {"type": "toolUse", "name": "read"},
                        {"toolCall": {"name": "Write"}},
                    ]
                }
            }
        )
        parsed = parse_usage_line(line)
        self.assertEqual(parsed.tool_calls, ["read", "read", "write"])
        self.assertFalse(parsed.has_usage)

    def test_missing_timestamp_uses_supplied_now(self) -> None:
        now = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
        parsed = parse_usage_line(json.dumps({"usage": {"input": 1}}), now=now)
        self.assertEqual(parsed.seen_at, now)

    def test_epoch_millisecond_timestamps_are_accepted(self) -> None:
        parsed = parse_usage_line(json.dumps({"ts": 1770372000000, "usage": {"input": 1}}))
        self.assertEqual(parsed.seen_at, datetime(2026, 2, 6, 10, 0, tzinfo=timezone.utc))

    def test_system_error_message_counts_as_error(self) -> None:
        line = json.dumps({"message": {"role": "system", "content": "Provider Error: overloaded"}})
        parsed = parse_usage_line(line)
        self.assertTrue(parsed.has_error)


class SessionPathTests(unittest.TestCase):
    def test_parses_session_identity_from_session_path(self) -> None:
        identity = parse_session_identity("/tmp/.openclaw/agents/main/sessions/abc123.jsonl")
        self.assertIsNotNone(identity)
        self.assertEqual(identity.source_path, "/tmp/.openclaw/agents/main/sessions/abc123.jsonl")
        self.assertEqual(identity.agent_id, "main")
        self.assertEqual(identity.session_id, "abc123")

    def test_rejects_paths_outside_the_convention(self) -> None:
        self.assertIsNone(parse_session_identity("/tmp/.openclaw/agents/main/logs/abc123.jsonl"))
        self.assertIsNone(parse_session_identity("/tmp/.openclaw/agents/main/sessions/abc123.txt"))
        self.assertIsNone(parse_session_identity(""))

    def test_list_session_files_walks_agents_and_sorts(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            home = Path(tmp)
            for agent, name in (("beta", "s2.jsonl"), ("alpha", "s1.jsonl"), ("alpha", "notes.txt")):
                target = home / "agents" / agent / "sessions"
                target.mkdir(parents=True, exist_ok=True)
                (target / name).write_text("", encoding="utf-8")
            (home / "agents" / "gamma").mkdir(parents=True)

            files = list_session_files(home)
            self.assertEqual(
                files,
                [
                    os.path.join(tmp, "agents", "alpha", "sessions", "s1.jsonl"),
                    os.path.join(tmp, "agents", "beta", "sessions", "s2.jsonl"),
                ],
            )

    def test_missing_home_yields_no_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(list_session_files(Path(tmp) / "missing"), [])


if __name__ == "__main__":
    unittest.main()
