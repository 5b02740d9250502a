"""
Global hotkey listener.

Translates raw pynput key events into a single edge-triggered "trigger"
intent. Holding the key does not repeat; the key must be released first.
"""

import threading
from typing import Callable, List, Optional, Set, Tuple


MODIFIER_ALIASES = {
    "control": "ctrl",
    "option": "alt",
    "super": "cmd",
    "meta": "cmd",
    "win": "cmd",
}

# Either side of the keyboard satisfies a modifier
MODIFIER_GROUPS = {
    "ctrl": ("ctrl", "ctrl_l", "ctrl_r"),
    "alt": ("alt", "alt_l", "alt_r", "alt_gr"),
    "shift": ("shift", "shift_l", "shift_r"),
    "cmd": ("cmd", "cmd_l", "cmd_r"),
}


def parse_hotkey(hotkey: str) -> Tuple[List[str], str]:
    """
    Split a hotkey into modifiers and the trigger key.

    Examples:
        "ctrl_r" -> ([], "ctrl_r")
        "Ctrl+Shift+Space" -> (["ctrl", "shift"], "space")

    Raises:
        ValueError: empty trigger key
    """
    parts = [p.strip().lower() for p in hotkey.split("+")]
    if not parts or not parts[-1]:
        raise ValueError(f"Invalid hotkey configuration: {hotkey!r}")
    modifiers = [MODIFIER_ALIASES.get(p, p) for p in parts[:-1] if p]
    return modifiers, parts[-1]


def key_name(key) -> Optional[str]:
    """pynput Key -> its enum name, KeyCode -> lowercased char."""
    name = getattr(key, "name", None)
    if isinstance(name, str):
        return name
    char = getattr(key, "char", None)
    if isinstance(char, str) and char:
        return char.lower()
    return None


class HotkeyListener:
    """
    Usage:
        listener = HotkeyListener(config.trigger_key)
        listener.on_trigger = service.handle_trigger
        listener.start()
    """

    def __init__(self, hotkey: str):
        self.hotkey = hotkey
        self.modifiers, self.trigger_name = parse_hotkey(hotkey)
        self.on_trigger: Optional[Callable[[], None]] = None

        self._lock = threading.Lock()
        self._pressed: Set[str] = set()
        self._trigger_down = False
        self._listener = None

    def on_key_press(self, key) -> None:
        name = key_name(key)
        if name is None:
            return

        fire = False
        with self._lock:
            self._pressed.add(name)
            if name == self.trigger_name and not self._trigger_down and self._modifiers_held():
                self._trigger_down = True
                fire = True

        if fire:
            print(f"[Hotkey] Triggered: {self.hotkey}")
            if self.on_trigger:
                self.on_trigger()

    def on_key_release(self, key) -> None:
        name = key_name(key)
        if name is None:
            return

        with self._lock:
            self._pressed.discard(name)
            if name == self.trigger_name:
                self._trigger_down = False

    def _modifiers_held(self) -> bool:
        """All configured modifiers are down (lock held)."""
        for modifier in self.modifiers:
            group = MODIFIER_GROUPS.get(modifier, (modifier,))
            if not any(k in self._pressed for k in group):
                return False
        return True

    def start(self) -> None:
        from pynput import keyboard

        self._listener = keyboard.Listener(
            on_press=self.on_key_press,
            on_release=self.on_key_release,
        )
        self._listener.start()
        print(f"[Hotkey] Listening for {self.hotkey}")

    def stop(self) -> None:
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
            print("[Hotkey] Stopped")
