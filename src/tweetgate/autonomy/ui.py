from __future__ import annotations

import os
import sys
import textwrap
from typing import Any, Dict, List, Tuple

from .config import Config
from .drafting import normalize_str


def supports_color() -> bool:
    return sys.stdout.isatty() and not bool(os.getenv("NO_COLOR"))


def _ui_palette() -> Dict[str, str]:
    if not supports_color():
        return {"reset": "", "bold": "", "dim": "", "green": "", "red": "", "magenta": "", "cyan": ""}
    return {
        "reset": "\033[0m",
        "bold": "\033[1m",
        "dim": "\033[2m",
        "green": "\033[1;32m",
        "red": "\033[1;31m",
        "magenta": "\033[1;35m",
        "cyan": "\033[1;36m",
    }


def _ui_paint(text: str, tone: str = "", bold: bool = False) -> str:
    palette = _ui_palette()
    reset = palette["reset"]
    if not reset:
        return text
    chunks: List[str] = []
    if bold:
        chunks.append(palette["bold"])
    if tone:
        chunks.append(palette.get(tone, ""))
    chunks.append(text)
    chunks.append(reset)
    return "".join(chunks)


def _ui_wrap_lines(value: Any, width: int) -> List[str]:
    text = normalize_str(value).strip()
    width = max(8, width)
    if not text:
        return [""]
    out: List[str] = []
    for raw_line in text.splitlines():
        line = raw_line.rstrip()
        if not line:
            out.append("")
            continue
        wrapped = textwrap.wrap(line, width=width, break_long_words=True, break_on_hyphens=False)
        out.extend(wrapped or [""])
    return out or [""]


def _ui_print_panel(
    title: str,
    rows: List[Tuple[str, Any]],
    tone: str = "cyan",
    width: int = 74,
) -> None:
    inner = max(30, width - 4)
    border = "+" + ("-" * (inner + 2)) + "+"
    print("")
    print(_ui_paint(border, tone=tone, bold=True))
    title_text = normalize_str(title).strip() or "INFO"
    print(_ui_paint(f"| {title_text:<{inner}} |", tone=tone, bold=True))
    print(_ui_paint(border, tone=tone))
    for key, value in rows:
        label = normalize_str(key).strip()
        value_lines = _ui_wrap_lines(value, width=(inner - (len(label) + 2) if label else inner))
        for idx, line in enumerate(value_lines):
            if label:
                prefix = f"{label}: " if idx == 0 else (" " * (len(label) + 2))
            else:
                prefix = ""
            content = f"{prefix}{line}"
            print(f"| {content:<{inner}} |")
    print(_ui_paint(border, tone=tone))
    print("")


def print_success_banner(action: str, approval_id: str, result_ref: str, url: str, content: str) -> None:
    _ui_print_panel(
        title=f"[SENT] {action.upper()}",
        rows=[
            ("approval_id", approval_id),
            ("result", result_ref),
            ("url", url),
            ("content", content),
        ],
        tone="green",
    )


def print_error_banner(action: str, approval_id: str, reason: str) -> None:
    _ui_print_panel(
        title=f"[ERROR] {action.upper()}",
        rows=[("approval_id", approval_id), ("reason", reason)],
        tone="red",
    )


def print_runtime_banner(cfg: Config) -> None:
    _ui_print_panel(
        title="TWEETGATE AGENT",
        rows=[
            ("account", f"@{cfg.twitter_username or '?'} | dry_run={int(cfg.dry_run)}"),
            ("store", f"{cfg.approval_store} | window={cfg.decision_window_hours:g}h"),
            (
                "timers",
                f"posts/{cfg.post_interval_min_minutes}-{cfg.post_interval_max_minutes}m "
                f"mentions/{cfg.interaction_interval_min_minutes}-{cfg.interaction_interval_max_minutes}m "
                f"decisions/{cfg.poll_seconds_min}-{cfg.poll_seconds_max}s",
            ),
            ("webhook", f"{cfg.webhook_host}:{cfg.webhook_port}" if cfg.webhook_enabled else "disabled"),
        ],
        tone="magenta",
    )
