"""
Tests for the wire log and the tap viewer.
Run with: pytest tests/test_wiretap.py
"""

import json

from chatsync.wiretap import WireLog, _format_entry, _matches, clip, live_tap


def _entries(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def test_wirelog_writes_jsonl(tmp_path):
    path = tmp_path / "logs" / "wire.jsonl"
    log = WireLog(str(path))
    log.log("out", "api", "send", role="customer", content="Hello", conversation_id="room1", message_id="tmp_1")
    log.log("in", "push", "messages_read", conversation_id="room1", extra_field=None)
    log.close()

    first, second = _entries(path)
    assert first["dir"] == "out"
    assert first["conv"] == "room1"
    assert first["id"] == "tmp_1"
    assert first["len"] == 5
    assert second["role"] == "system"
    assert "extra_field" not in second


def test_long_content_is_truncated(tmp_path):
    path = tmp_path / "wire.jsonl"
    log = WireLog(str(path))
    log.log("in", "poll", "message", content="x" * 5000)
    log.close()
    entry = _entries(path)[0]
    assert entry["len"] == 5000
    assert "truncated" in entry["content"]
    assert len(entry["content"]) < 5000


def test_format_entry():
    entry = {
        "ts": "2024-05-01T12:00:00+00:00", "dir": "in", "channel": "push", "event": "message",
        "role": "vendor", "conv": "room1", "id": "V1", "content": "Friday at 3?",
    }
    text = _format_entry(entry)
    assert "12:00:00" in text
    assert "VENDOR" in text
    assert "[push:message]" in text
    assert "Friday at 3?" in text
    assert json.loads(_format_entry(entry, raw=True)) == entry


def test_matches_filters():
    entry = {"role": "customer", "conv": "room1"}
    assert _matches(entry, None, None)
    assert _matches(entry, "customer", "room1")
    assert not _matches(entry, "vendor", None)
    assert not _matches(entry, None, "room2")


def test_live_tap_without_follow(tmp_path, capsys):
    path = tmp_path / "wire.jsonl"
    log = WireLog(str(path))
    log.log("out", "api", "send", role="customer", content="first-msg", conversation_id="room1")
    log.log("in", "push", "message", role="vendor", content="second-msg", conversation_id="room2")
    log.close()
    with open(path, "a") as f:
        f.write("not json\n")

    live_tap(str(path), follow=False, conv_filter="room2")
    out = capsys.readouterr().out
    assert "second-msg" in out
    assert "first-msg" not in out


def test_live_tap_missing_log(tmp_path, capsys):
    live_tap(str(tmp_path / "absent.jsonl"), follow=False)
    assert "No wire log found" in capsys.readouterr().out


def test_clip_keeps_head_and_tail():
    assert clip("short", 10) == "short"
    clipped = clip("a" * 10 + "b" * 10 + "c" * 10, 20)
    assert clipped.startswith("a" * 10)
    assert clipped.endswith("c" * 10)
    assert "[10 chars truncated]" in clipped


def test_format_entry_caps_body_lines():
    entry = {"ts": "bad", "dir": "out", "channel": "api", "event": "send",
             "role": "customer", "content": "\n".join(f"line{i}" for i in range(10))}
    text = _format_entry(entry)
    assert "--:--:--" in text
    assert "line5" in text
    assert "line6" not in text
    assert "+4 more lines" in text


def test_live_tap_shows_only_last_entries(tmp_path, capsys):
    path = tmp_path / "wire.jsonl"
    log = WireLog(str(path))
    for i in range(5):
        log.log("in", "poll", "message", role="vendor", content=f"msg-{i}")
    log.close()

    live_tap(str(path), follow=False, last_n=2, raw=True)
    shown = [json.loads(line)["content"] for line in capsys.readouterr().out.splitlines()]
    assert shown == ["msg-3", "msg-4"]
