#!/usr/bin/env python3
"""
Passkey Ceremony Audit TUI (Textual)

Loads the ceremony JSONL audit log on startup and (by default) follows new lines.

- Table (left): one row per ceremony event
- Details pane (right): readable breakdown of the selected event
- Possible-clone denials are highlighted; they are the events to investigate

Keys
  q        Quit
  p        Pause/Resume follow updates
  c        Clear table
  f, /     Focus filter input (substring)
  Esc      Leave filter input, focus table
  Space    Pin details (inspect current row)
  u        Unpin (resume following latest row)
  h        Toggle hash visibility in details
"""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from textual import events
from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, Vertical
from textual.reactive import reactive
from textual.widgets import DataTable, Footer, Input, Static

__app_name__ = "Passkey Ceremony Audit"
__version__ = "0.1.0"

COLUMNS = ("Time", "Result", "Reason", "Ceremony", "User", "Credential", "IP", "Chain")

FILTER_FIELDS = (
    "ceremony",
    "result",
    "reason",
    "user_id",
    "session",
    "credential_sha3_256",
    "origin",
    "request_ip",
    "user_agent",
)


# -----------------------------
# Utilities
# -----------------------------

def safe_get(d: Dict[str, Any], key: str, default: str = "") -> str:
    """Safe dict get that always returns a string."""
    v = d.get(key, default)
    if v is None:
        return default
    return str(v)


def short(s: str, n: int) -> str:
    if len(s) <= n:
        return s
    return s[: max(0, n - 1)] + "…"


def ts_to_hhmmss(ts: Optional[int]) -> str:
    if not ts:
        return ""
    try:
        return datetime.fromtimestamp(int(ts)).strftime("%H:%M:%S")
    except (TypeError, ValueError, OverflowError, OSError):
        return ""


def is_clone_event(e: Dict[str, Any]) -> bool:
    return safe_get(e, "reason") == "possible_clone"


def match_filter(e: Dict[str, Any], filt: str) -> bool:
    """Case-insensitive substring match across the interesting fields."""
    if not filt:
        return True
    blob = " ".join(safe_get(e, k) for k in FILTER_FIELDS).lower()
    return filt.lower() in blob


@dataclass
class ChainState:
    """prev_hash link check (display only; verify_audit.py recomputes hashes)."""

    last_hash: Optional[str] = None
    ok: bool = True
    breaks: int = 0

    def link(self, e: Dict[str, Any]) -> bool:
        h = safe_get(e, "hash")
        prev = safe_get(e, "prev_hash")
        ok = not (self.last_hash and prev and prev != self.last_hash)
        if not ok:
            self.ok = False
            self.breaks += 1
        if h:
            self.last_hash = h
        return ok


@dataclass
class Counters:
    total: int = 0
    issued: int = 0
    approved: int = 0
    denied: int = 0
    error: int = 0
    clones: int = 0

    def add(self, e: Dict[str, Any]) -> None:
        self.total += 1
        res = safe_get(e, "result").lower()
        if res in ("issued", "approved", "denied", "error"):
            setattr(self, res, getattr(self, res) + 1)
        if is_clone_event(e):
            self.clones += 1


# -----------------------------
# JSONL reader
# -----------------------------

class JsonlReader:
    """Reads JSONL records from a file, reopening on rotation."""

    def __init__(self, path: str, start_at_end: bool = False):
        self.path = path
        self.start_at_end = start_at_end
        self._fp = None
        self._ino = None

    def open(self) -> None:
        self._fp = open(self.path, "r", encoding="utf-8", errors="replace")
        self._ino = os.fstat(self._fp.fileno()).st_ino
        self._fp.seek(0, os.SEEK_END if self.start_at_end else os.SEEK_SET)

    def close(self) -> None:
        if self._fp:
            try:
                self._fp.close()
            finally:
                self._fp = None
                self._ino = None

    def _reopen_if_rotated(self) -> None:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return
        if self._ino is not None and st.st_ino != self._ino:
            self.close()
            self.open()

    def read_one(self) -> Optional[Dict[str, Any]]:
        """One JSON object from the log, or None if no complete new line."""
        if not self._fp:
            self.open()

        self._reopen_if_rotated()

        line = self._fp.readline()
        if not line:
            return None

        line = line.strip()
        if not line:
            return None

        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            return {"result": "error", "reason": "unparseable_line", "raw": line}
        return obj if isinstance(obj, dict) else None


# -----------------------------
# UI Widgets
# -----------------------------

class StatsBar(Static):
    counters: Counters = Counters()
    chain_ok = reactive(True)
    chain_breaks = reactive(0)
    paused = reactive(False)
    filter_text = reactive("")
    tick = reactive(0)

    def render(self) -> str:
        c = self.counters
        parts = [
            f"[b]Events[/b]: {c.total}",
            f"[b]issued[/b]: {c.issued}",
            f"[b]approved[/b]: {c.approved}",
            f"[b]denied[/b]: {c.denied}",
            f"[b]error[/b]: {c.error}",
        ]
        clone_style = "red" if c.clones else "green"
        parts.append(f"[b]clones[/b]: [{clone_style}]{c.clones}[/{clone_style}]")

        chain_style = "green" if self.chain_ok else "red"
        chain = "OK" if self.chain_ok else "BROKEN"
        parts.append(f"[b]chain[/b]: [{chain_style}]{chain}[/{chain_style}] ({self.chain_breaks})")

        if self.paused:
            parts.append("[yellow][b]PAUSED[/b][/yellow]")
        if self.filter_text:
            parts.append(f"[b]filter[/b]: “{short(self.filter_text, 40)}”")
        return "  |  ".join(parts)


def render_details(e: Optional[Dict[str, Any]], show_hashes: bool = True) -> str:
    if not e:
        return "↑↓ select • Space inspect • f / filter • p pause • h hashes • u unpin"

    result = safe_get(e, "result")
    color = {"approved": "green", "issued": "cyan", "denied": "red", "error": "magenta"}.get(result, "white")

    lines: List[str] = [
        f"[b]Result[/b]: [bold {color}]{result}[/bold {color}]",
        f"[b]Reason[/b]: [yellow]{safe_get(e, 'reason')}[/yellow]",
    ]
    if is_clone_event(e):
        lines.append(
            "[bold red]Counter did not advance[/bold red]: "
            f"stored={safe_get(e, 'stored_sign_count')} presented={safe_get(e, 'presented_sign_count')}"
        )
    lines.append("")

    for label, key in (
        ("Time", "ts"),
        ("Ceremony", "ceremony"),
        ("User", "user_id"),
        ("Session", "session"),
        ("Credential", "credential_sha3_256"),
        ("Challenge", "challenge_sha3_256"),
        ("Origin", "origin"),
        ("RP ID", "rp_id"),
        ("IP", "request_ip"),
        ("User-Agent", "user_agent"),
    ):
        if key in e:
            lines.append(f"[b]{label}[/b]: {e[key]}")

    if show_hashes:
        for label, key in (("Hash", "hash"), ("Prev Hash", "prev_hash")):
            if key in e:
                lines.append(f"[b]{label}[/b]: [dim]{e[key]}[/dim]")
    elif "hash" in e:
        lines.append("[dim]Hashes hidden (press h)[/dim]")

    known = {
        "result", "reason", "ts", "ceremony", "user_id", "session", "credential_sha3_256",
        "challenge_sha3_256", "origin", "rp_id", "request_ip", "user_agent", "hash", "prev_hash",
        "stored_sign_count", "presented_sign_count",
    }
    extras = sorted(k for k in e if k not in known)
    if extras:
        lines.append("")
        lines.append("[b]Other[/b]:")
        lines.extend(f"  {k}: [dim]{e[k]}[/dim]" for k in extras)

    return "\n".join(lines)


def row_cells(e: Dict[str, Any], chain_ok: bool) -> tuple:
    return (
        ts_to_hhmmss(e.get("ts")),
        short(safe_get(e, "result"), 10),
        short(safe_get(e, "reason"), 24),
        short(safe_get(e, "ceremony"), 14),
        short(safe_get(e, "user_id"), 12),
        short(safe_get(e, "credential_sha3_256"), 12),
        short(safe_get(e, "request_ip"), 16),
        "OK" if chain_ok else "BROKE",
    )


# -----------------------------
# Main App
# -----------------------------

class AuditTui(App):
    TITLE = f"{__app_name__} v{__version__}"

    CSS = """
    Screen { layout: vertical; }
    #top { height: 3; }
    #body { height: 1fr; }
    #left { width: 3fr; }
    #right { width: 2fr; }
    #filter_row { height: 3; }
    DataTable { height: 1fr; }
    #details { height: 1fr; padding: 1; border: round $accent; }
    #stats { padding: 0 1; }
    #filter { width: 1fr; }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("p", "toggle_pause", "Pause"),
        ("c", "clear", "Clear"),
        ("u", "unpin", "Unpin"),
        ("h", "toggle_hashes", "Hashes"),
        ("f", "focus_filter", "Filter"),
        ("/", "focus_filter", "Filter"),
        ("space", "show_details", "Inspect"),
    ]

    def __init__(self, log_path: str, follow: bool = True, refresh_hz: float = 10.0, max_rows: int = 500):
        super().__init__()
        self.log_path = log_path
        self.follow = follow
        self.refresh_hz = refresh_hz
        self.max_rows = max_rows

        self.paused = False
        self.show_hashes = True
        self._pin_details = False

        self.reader = JsonlReader(log_path, start_at_end=False)
        self.chain = ChainState()
        self.counters = Counters()

        self._events: List[Dict[str, Any]] = []
        self._visible: List[Dict[str, Any]] = []

    def compose(self) -> ComposeResult:
        with Container(id="top"):
            yield StatsBar(id="stats")

        with Horizontal(id="filter_row"):
            yield Static("Filter:")
            yield Input(placeholder="substring (user, reason, ceremony, ip…)", id="filter")

        with Horizontal(id="body"):
            with Vertical(id="left"):
                table = DataTable(id="table")
                table.cursor_type = "row"
                table.add_columns(*COLUMNS)
                yield table
            with Vertical(id="right"):
                yield Static(render_details(None), id="details")

        yield Footer()

    def on_mount(self) -> None:
        self.query_one(StatsBar).counters = self.counters
        self.reader.open()
        self._drain(auto_select=False)
        self._select_latest()
        self.query_one(DataTable).focus()

        if self.follow:
            self.set_interval(1.0 / self.refresh_hz, self._tick_follow)

    # --- helpers

    def _show(self, e: Optional[Dict[str, Any]]) -> None:
        self.query_one("#details", Static).update(render_details(e, self.show_hashes))

    def _current(self) -> Optional[Dict[str, Any]]:
        row = self.query_one(DataTable).cursor_row
        if row is None or not (0 <= row < len(self._visible)):
            return None
        return self._visible[row]

    def _refresh_stats(self) -> None:
        stats = self.query_one(StatsBar)
        stats.chain_ok = self.chain.ok
        stats.chain_breaks = self.chain.breaks
        stats.paused = self.paused
        stats.tick += 1

    def _drain(self, auto_select: bool) -> bool:
        got = False
        for _ in range(500):
            e = self.reader.read_one()
            if e is None:
                break
            got = True
            self._events.append(e)
            self.counters.add(e)
            self._add_row(e, self.chain.link(e), auto_select)
        self._refresh_stats()
        return got

    def _add_row(self, e: Dict[str, Any], chain_ok: bool, auto_select: bool) -> None:
        if not match_filter(e, self.query_one(StatsBar).filter_text):
            return
        table = self.query_one(DataTable)
        self._visible.append(e)
        table.add_row(*row_cells(e, chain_ok))

        if table.row_count > self.max_rows:
            self._rebuild_table()
            return

        if auto_select and not self._pin_details:
            table.move_cursor(row=table.row_count - 1)
            self._show(e)

    def _select_latest(self) -> None:
        table = self.query_one(DataTable)
        if table.row_count <= 0:
            return
        table.move_cursor(row=table.row_count - 1)
        if not self._pin_details:
            self._show(self._visible[-1])

    def _rebuild_table(self) -> None:
        table = self.query_one(DataTable)
        filt = self.query_one(StatsBar).filter_text

        table.clear()
        self._visible.clear()

        matched = [ev for ev in self._events if match_filter(ev, filt)][-self.max_rows:]
        view_chain = ChainState()
        for ev in matched:
            self._visible.append(ev)
            table.add_row(*row_cells(ev, view_chain.link(ev)))

        if table.row_count == 0:
            self._show(None)
        else:
            self._select_latest()

    def _tick_follow(self) -> None:
        if self.paused:
            return
        self._drain(auto_select=True)

    # --- actions

    def action_toggle_pause(self) -> None:
        self.paused = not self.paused
        self._refresh_stats()

    def action_clear(self) -> None:
        self.query_one(DataTable).clear()
        self._events.clear()
        self._visible.clear()
        self.chain = ChainState()
        self.counters = Counters()
        self.query_one(StatsBar).counters = self.counters
        self._refresh_stats()
        self._show(None)

    def action_focus_filter(self) -> None:
        self.query_one(Input).focus()

    def action_show_details(self) -> None:
        self._pin_details = True
        self._show(self._current())

    def action_unpin(self) -> None:
        self._pin_details = False
        self._select_latest()

    def action_toggle_hashes(self) -> None:
        self.show_hashes = not self.show_hashes
        self._show(self._current())

    # --- callbacks

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "filter":
            return
        self.query_one(StatsBar).filter_text = event.value.strip()
        self._rebuild_table()
        self.query_one(DataTable).focus()

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            self.query_one(DataTable).focus()
            self._show(self._current())

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if self._pin_details:
            return
        self._show(self._current())


def main() -> None:
    ap = argparse.ArgumentParser(description="Passkey ceremony audit log viewer (Textual)")
    ap.add_argument("logfile", nargs="?", default=os.path.join("audit", "ceremony_audit.jsonl"))
    ap.add_argument("--no-follow", action="store_true", help="Load once and do NOT follow new lines")
    ap.add_argument("--hz", type=float, default=10.0, help="Follow refresh rate (default: 10)")
    ap.add_argument("--max-rows", type=int, default=500, help="Max visible rows (default: 500)")
    ap.add_argument("--version", action="store_true", help="Print version and exit")
    args = ap.parse_args()

    if args.version:
        print(f"{__app_name__} {__version__}")
        return

    if not os.path.exists(args.logfile):
        raise SystemExit(f"Log file not found: {args.logfile}")

    AuditTui(
        args.logfile,
        follow=not args.no_follow,
        refresh_hz=args.hz,
        max_rows=args.max_rows,
    ).run()


if __name__ == "__main__":
    main()
