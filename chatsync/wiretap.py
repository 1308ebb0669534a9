"""
Wiretap — a flight recorder for sync traffic.

WireLog appends one JSON object per line for everything the engine sends or
receives: push frames, poll snapshots, sends, acks, read receipts and typing.
live_tap() replays the tail of that file as a chat-style transcript and can
keep following it while a `chatsync watch` session runs elsewhere.

This is not the debug log. It only answers what crossed the wire, in which
direction, on which channel.
"""

import json
import logging
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, TextIO

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_CHANNEL = "\033[92m"    # green

ROLE_COLORS = {
    "customer": "\033[96m",   # cyan
    "vendor": "\033[95m",     # magenta
    "assistant": "\033[93m",  # yellow
    "system": "\033[90m",     # gray
    "error": "\033[91m",      # red
}

# sent by us / received by us
_ARROWS = {"out": "↑", "in": "↓"}

_STORE_LIMIT = 2000
_SHOW_LIMIT = 280
_SHOW_LINES = 6


def clip(text: str, limit: int) -> str:
    """Keep the head and tail of `text`, dropping the middle beyond `limit` chars."""
    if len(text) <= limit:
        return text
    keep = limit // 2
    return f"{text[:keep]} [{len(text) - 2 * keep} chars truncated] {text[-keep:]}"


class WireLog:
    """
    Append-only JSONL recorder.

        {"ts": "...", "dir": "in|out", "channel": "push|poll|api",
         "event": "...", "role": "...", "conv": "...", "id": "...",
         "len": 12, ..., "content": "..."}

    Extra keyword fields are stored as-is unless empty. `len` is the length
    of the original content; `content` itself is clipped.
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file: TextIO | None = None

    def log(
        self,
        direction: str,
        channel: str,
        event: str,
        role: str = "system",
        content: str = "",
        conversation_id: str = "",
        message_id: str = "",
        **extra,
    ):
        content = content or ""
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "channel": channel,
            "event": event,
            "role": role,
            "conv": conversation_id,
            "id": message_id,
            "len": len(content),
            **{k: v for k, v in extra.items() if v not in (None, "")},
            "content": clip(content, _STORE_LIMIT),
        }
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1, encoding="utf-8")
        self._file.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

    def close(self):
        f, self._file = self._file, None
        if f is not None:
            f.close()


# ---------------------------------------------------------------------------
# Viewer
# ---------------------------------------------------------------------------

def _clock(ts: str) -> str:
    try:
        return datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (TypeError, ValueError):
        return "--:--:--"


def _format_entry(entry: dict, raw: bool = False) -> str:
    """One header line (time, direction, channel:event, role, conv/id), then the body."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    role = entry.get("role") or "system"
    arrow = _ARROWS.get(entry.get("dir"), "·")
    where = "/".join(part for part in (entry.get("conv"), entry.get("id")) if part)

    header = (
        f"{C_DIM}{_clock(entry.get('ts', ''))}{C_RESET} {arrow} "
        f"{C_CHANNEL}[{entry.get('channel', '?')}:{entry.get('event', '?')}]{C_RESET} "
        f"{ROLE_COLORS.get(role, C_RESET)}{C_BOLD}{role.upper()}{C_RESET}"
    )
    if where:
        header += f" {C_DIM}{where}{C_RESET}"

    body = clip(entry.get("content") or "", _SHOW_LIMIT).splitlines()
    lines = [header] + [f"    │ {line}" for line in body[:_SHOW_LINES]]
    if len(body) > _SHOW_LINES:
        lines.append(f"    {C_DIM}│ +{len(body) - _SHOW_LINES} more lines{C_RESET}")
    return "\n".join(lines)


def _matches(entry: dict, role_filter: str | None, conv_filter: str | None) -> bool:
    if role_filter and entry.get("role") != role_filter:
        return False
    if conv_filter and entry.get("conv") != conv_filter:
        return False
    return True


def _parse(lines: Iterable[str]) -> Iterator[dict]:
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping unreadable wire log line: %.80s", line)


def _follow(f: TextIO, poll_interval: float = 0.1) -> Iterator[str]:
    """Yield lines appended after the current end of `f`, forever."""
    f.seek(0, 2)
    while True:
        line = f.readline()
        if line:
            yield line
        else:
            time.sleep(poll_interval)


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    role_filter: str | None = None,
    conv_filter: str | None = None,
    raw: bool = False,
):
    """
    Print the last `last_n` wire log lines, then keep following the file
    when `follow` is set. Filters apply to both phases; `raw` prints JSONL.
    The log path defaults to wiretap.path from config.
    """
    if log_path is None:
        from chatsync.config import get_config
        log_path = get_config().get("wiretap", {}).get("path", "./data/wire.jsonl")

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        print("     Set wiretap.enabled in config.yaml, then run: chatsync watch <conversation>")
        return

    def show(entries: Iterable[dict]):
        for entry in entries:
            if _matches(entry, role_filter, conv_filter):
                print(_format_entry(entry, raw=raw))

    if not raw:
        print(f"{C_BOLD}wiretap{C_RESET} {wire_path}")

    with open(wire_path, encoding="utf-8") as f:
        show(_parse(deque(f, maxlen=last_n)))
        if not follow:
            return
        if not raw:
            print(f"{C_DIM}following, Ctrl+C to stop{C_RESET}")
        try:
            show(_parse(_follow(f)))
        except KeyboardInterrupt:
            pass
