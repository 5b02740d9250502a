"""
Output collaborators: clipboard and desktop notifications.

Uses system commands: wl-copy (Wayland), xclip (X11) or pbcopy (macOS)
for the clipboard; notify-send or osascript for notifications.
"""

import os
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Mapping, Optional

from .errors import AppError, ErrorCode


CLIPBOARD_TIMEOUT_SECONDS = 2.0

NOTIFY_ICONS = {
    "info": "dialog-information",
    "success": "emblem-default",
    "warning": "dialog-warning",
    "error": "dialog-error",
}


def _escape_for_applescript(text: str) -> str:
    """Escape special characters for AppleScript string."""
    # Order matters: backslash first
    text = text.replace("\\", "\\\\")
    text = text.replace('"', '\\"')
    text = text.replace("\r", "\\r")
    text = text.replace("\n", "\\n")
    text = text.replace("\t", "\\t")
    return text


def clipboard_commands(env: Mapping[str, str], platform: str) -> List[tuple]:
    """(write, read) command pairs to try, best first."""
    if platform == "darwin":
        return [(["pbcopy"], ["pbpaste"])]

    commands = []
    if env.get("WAYLAND_DISPLAY"):
        commands.append((["wl-copy"], ["wl-paste", "--no-newline"]))
    if env.get("DISPLAY"):
        commands.append((
            ["xclip", "-selection", "clipboard"],
            ["xclip", "-selection", "clipboard", "-o"],
        ))
    return commands


class Clipboard:
    """
    Writes transcriptions to the system clipboard.

    If no clipboard tool works, the text is appended to a fallback file
    so it is never lost, and CLIPBOARD_ACCESS_DENIED is raised.
    """

    def __init__(
        self,
        fallback_file: Path,
        env: Optional[Mapping[str, str]] = None,
        platform: str = sys.platform,
    ):
        self.fallback_file = Path(fallback_file)
        self.commands = clipboard_commands(os.environ if env is None else env, platform)

    def read(self) -> str:
        for _, read_cmd in self.commands:
            try:
                result = subprocess.run(
                    read_cmd,
                    capture_output=True,
                    timeout=CLIPBOARD_TIMEOUT_SECONDS,
                )
            except (OSError, subprocess.TimeoutExpired):
                continue
            if result.returncode == 0:
                return result.stdout.decode("utf-8", errors="replace").rstrip("\n")
        return ""

    def write(self, text: str, append: bool = False) -> None:
        """
        Copy text, optionally appending to what is already there.

        Raises:
            AppError: CLIPBOARD_ACCESS_DENIED after saving to the fallback file
        """
        if not text:
            return

        content = text
        if append:
            current = self.read()
            if current:
                content = f"{current}\n{text}"

        for write_cmd, _ in self.commands:
            try:
                # Clipboard owners keep running in the background; don't wait on their pipes
                subprocess.run(
                    write_cmd,
                    input=content.encode("utf-8"),
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    timeout=CLIPBOARD_TIMEOUT_SECONDS,
                    check=True,
                )
                print(f"[Output] Copied {len(text)} chars to clipboard ({write_cmd[0]})")
                return
            except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
                print(f"[Output] {write_cmd[0]} failed: {e}")

        self._save_fallback(text)
        raise AppError(
            ErrorCode.CLIPBOARD_ACCESS_DENIED,
            "Could not write to the clipboard",
            {"fallback_file": str(self.fallback_file)},
        )

    def _save_fallback(self, text: str) -> None:
        try:
            self.fallback_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.fallback_file, "a") as f:
                f.write(f"[{datetime.now().isoformat(timespec='seconds')}] {text}\n")
            print(f"[Output] Saved transcription to {self.fallback_file}")
        except OSError as e:
            print(f"[Output] Failed to save fallback transcription: {e}")


class Notifier:
    """Desktop notifications. Failures are logged, never raised."""

    def __init__(self, enabled: bool = True, app_name: str = "voxd", platform: str = sys.platform):
        self.enabled = enabled
        self.app_name = app_name
        self.platform = platform

    def notify(self, title: str, message: str, kind: str = "info") -> None:
        if not self.enabled:
            return

        try:
            if self.platform == "darwin":
                script = (
                    f'display notification "{_escape_for_applescript(message)}" '
                    f'with title "{_escape_for_applescript(f"{self.app_name}: {title}")}"'
                )
                command = ["osascript"]
                stdin = script.encode("utf-8")
            else:
                command = [
                    "notify-send",
                    "-a", self.app_name,
                    "-i", NOTIFY_ICONS.get(kind, NOTIFY_ICONS["info"]),
                    "-u", "critical" if kind == "error" else "normal",
                    f"{self.app_name}: {title}",
                    message,
                ]
                stdin = None

            subprocess.run(command, input=stdin, capture_output=True, timeout=2.0)
        except (OSError, subprocess.TimeoutExpired) as e:
            print(f"[Output] Notification failed: {e}")

    __call__ = notify
