#!/usr/bin/env python3
"""
chatsync CLI — keep both ends of the line in sync.

Every command has a short name and standard aliases:

    NAME            ALIASES         WHAT IT DOES
    --------        --------        ----------------------------------
    watch           follow, open    Run the engine headless on one conversation
    tap             log, tail       Live wiretap — watch the sync traffic
    flash           info, config    Show the effective config at a glance
    tone            banner          Print the banner
"""

import argparse
import asyncio
import sys

__version__ = "0.3.0"

BANNER = r"""
    ╔══════════════════════════════════════════════════╗
    ║                                                  ║
    ║    ┌─┐┬ ┬┌─┐┌┬┐  ┌─┐┬ ┬┌┐┌┌─┐                    ║
    ║    │  ├─┤├─┤ │   └─┐└┬┘││││                      ║
    ║    └─┘┴ ┴┴ ┴ ┴   └─┘ ┴ ┘└┘└─┘                    ║
    ║                                                  ║
    ║   push + poll, one stream.             v""" + __version__ + r"""  ║
    ║                                                  ║
    ╚══════════════════════════════════════════════════╝
"""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _print_message(message, prefix: str = ""):
    from chatsync.wiretap import C_DIM, C_RESET, ROLE_COLORS

    color = ROLE_COLORS.get(message.sender_role.value, C_RESET)
    when = message.created_at.astimezone().strftime("%H:%M:%S")
    body = message.body or (f"[attachment {message.attachment.url}]" if message.attachment else "")
    flags = []
    if message.provisional:
        flags.append(message.delivery.value)
    if message.read:
        flags.append("read")
    tail = f"  {C_DIM}({', '.join(flags)}){C_RESET}" if flags else ""
    print(f"  {prefix}{C_DIM}{when}{C_RESET} {color}{message.sender_role.value:>9}{C_RESET}  {body}{tail}")


async def _watch(args):
    from chatsync.config import get_config, setup_logging
    from chatsync.engine import ChatSyncEngine
    from chatsync.models import parse_role

    cfg = get_config()
    setup_logging(cfg)
    role = parse_role(args.role)
    engine = ChatSyncEngine.from_config(role, local_id=args.id or "", cfg=cfg)

    def on_event(event):
        if event.kind == "messages" and event.conversation_id == args.conversation:
            ids = set(event.payload.get("appended", [])) | set(event.payload.get("reconciled", []))
            for message in engine.messages(args.conversation):
                if message.id in ids:
                    _print_message(message, prefix="+ ")
            if args.mark_read:
                for message_id in engine.store.unread_ids(args.conversation):
                    engine.report_visibility(message_id, 1.0)
        elif event.kind == "typing":
            state = "is typing…" if event.payload.get("typing") else "stopped typing"
            print(f"  · {event.payload.get('peer')} {state}")
        elif event.kind == "connection":
            print(f"  · push channel: {event.payload.get('state')}")
        elif event.kind == "error":
            print(f"  ✗ {event.payload.get('error')}: {event.payload.get('message')}")

    engine.add_listener(on_event)

    print(BANNER)
    print(f"  Watching {args.conversation} as {role.value}")
    print(f"  API:  {cfg['api']['base_url']}")
    print(f"  Push: {cfg['push']['url']}")
    print()

    async with engine:
        await engine.open_conversation(args.conversation)
        for message in engine.messages(args.conversation):
            _print_message(message)
        if args.send:
            await engine.send(args.send)
        try:
            if args.duration:
                await asyncio.sleep(args.duration)
            else:
                await asyncio.Event().wait()
        finally:
            print(f"\n  Unread: {engine.unread_count(args.conversation)}  "
                  f"Connection: {engine.connection_state.value}")


def cmd_watch(args):
    """Run the engine headless and print the merged stream."""
    try:
        asyncio.run(_watch(args))
    except KeyboardInterrupt:
        print("\n  [line disconnected]")


def cmd_tap(args):
    """Live wiretap — watch sync traffic on the wire."""
    from chatsync.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        role_filter=args.role,
        conv_filter=args.conversation,
        raw=args.raw,
    )


def cmd_flash(args):
    """Show the effective config at a glance."""
    from chatsync.config import get_config

    cfg = get_config()
    print(BANNER)
    print("  Endpoints")
    print(f"  ├─ API:       {cfg['api']['base_url']}")
    print(f"  ├─ Push:      {cfg['push']['url']}")
    print(f"  └─ Token:     {'set' if cfg['api'].get('token') else 'not set'}")
    print()
    print("  Timing")
    print(f"  ├─ Poll:      {cfg['polling']['conversation_interval']}s conversation, "
          f"{cfg['polling']['list_interval']}s list")
    print(f"  ├─ Reconnect: {cfg['push']['max_reconnect_attempts']} attempts, "
          f"{cfg['push']['reconnect_delay']}s → {cfg['push']['reconnect_delay_max']}s")
    print(f"  ├─ Receipts:  {cfg['read_receipts']['debounce']}s debounce, "
          f"{cfg['read_receipts']['list_threshold']:.0%} list / {cfg['read_receipts']['detail_threshold']:.0%} detail")
    print(f"  └─ Typing:    {cfg['typing']['timeout']}s expiry, {cfg['typing']['idle']}s idle stop")
    print()
    print("  Reconcile")
    print(f"  ├─ Heuristic: {'on' if cfg['reconcile']['heuristic'] else 'off'}")
    print(f"  └─ Window:    {cfg['reconcile']['match_window']}s")
    print()
    a = cfg["assistant"]
    print("  Assistant")
    print(f"  └─ {'enabled' if a['enabled'] else 'disabled'}"
          f" (after {a['response_delay']}s silence, reply in {a['reply_delay']}s)")
    print()
    w = cfg["wiretap"]
    print("  Wiretap")
    print(f"  └─ {w['path'] if w.get('enabled') else 'off'}")


def cmd_tone(args):
    """Print the banner."""
    print(BANNER)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatsync",
        description="chatsync — push + poll, one stream.",
        epilog=(
            "Each command has standard aliases.\n"
            "Example: 'chatsync tap' and 'chatsync tail' do the same thing.\n"
            "Run 'chatsync <command> --help' for command-specific options."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatsync {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    # watch / follow / open
    def setup_watch(p):
        p.add_argument("conversation", help="Conversation (room) id")
        p.add_argument("--role", choices=["customer", "vendor"], default="customer",
                       help="Which side of the conversation this client is")
        p.add_argument("--id", default=None, help="Local user id (for typing frames)")
        p.add_argument("--send", default=None, help="Send this text once connected")
        p.add_argument("--mark-read", action="store_true",
                       help="Treat every incoming message as seen")
        p.add_argument("--duration", "-t", type=float, default=None,
                       help="Stop after N seconds (default: run until Ctrl+C)")

    _add_command(sub, ["watch", "follow", "open"],
                 "Run the engine headless on one conversation", cmd_watch, setup_watch)

    # tap / log / tail
    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--role", "-r", choices=["customer", "vendor", "assistant", "system"],
                       default=None, help="Filter by sender role")
        p.add_argument("--conversation", "-c", default=None, help="Filter by conversation id")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"],
                 "Live wiretap — watch sync traffic on the wire", cmd_tap, setup_tap)

    # flash / info / config
    _add_command(sub, ["flash", "info", "config"],
                 "Show the effective config at a glance", cmd_flash)

    # tone / banner
    _add_command(sub, ["tone", "banner"], "Print the banner", cmd_tone)

    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        cmd_tone(args)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main(sys.argv[1:])
