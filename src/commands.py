"""
Chat command table and dispatch.

Messages that start with the trigger sigil are looked up in the command table
and answered with the stored reply text.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from dlive import ChatEvent, DLiveGateway, GatewayError
from tokens import TokenError

logger = logging.getLogger(__name__)

COMMAND_PREFIX = "!"

DEFAULT_COMMANDS = {
    "!help": "Commands: !help, !ping, !bot",
    "!ping": "Pong!",
    "!bot": "MrLarbin at your service.",
}


def normalize_trigger(name: str, prefix: str = COMMAND_PREFIX) -> str:
    """Strip whitespace and make sure the trigger carries the sigil."""
    name = (name or "").strip()
    if not name or name == prefix:
        raise ValueError("Command name cannot be empty")
    if any(ch.isspace() for ch in name):
        raise ValueError("Command name cannot contain whitespace")
    return name if name.startswith(prefix) else f"{prefix}{name}"


class CommandTable:
    """
    Trigger to reply mapping.

    Lookups try the exact trigger first and fall back to a case-insensitive
    match. When ``path`` is set, every change is written to that JSON file.
    """

    def __init__(self, commands: Optional[Dict[str, str]] = None, path: Optional[str] = None,
                 prefix: str = COMMAND_PREFIX):
        self.prefix = prefix
        self.path = Path(path) if path else None
        self._commands: Dict[str, str] = {}
        for trigger, reply in (commands or {}).items():
            self._commands[normalize_trigger(trigger, prefix)] = reply

    def __len__(self) -> int:
        return len(self._commands)

    def __contains__(self, trigger: str) -> bool:
        return self.lookup(trigger) is not None

    def items(self) -> Iterable[Tuple[str, str]]:
        return list(self._commands.items())

    def as_dict(self) -> Dict[str, str]:
        return dict(self._commands)

    def lookup(self, trigger: str) -> Optional[str]:
        reply = self._commands.get(trigger)
        if reply is not None:
            return reply
        folded = trigger.casefold()
        for key, value in self._commands.items():
            if key.casefold() == folded:
                return value
        return None

    def set(self, trigger: str, reply: str) -> str:
        if not reply or not reply.strip():
            raise ValueError("Reply text cannot be empty")
        trigger = normalize_trigger(trigger, self.prefix)
        # Disk first so a failed write leaves the table unchanged
        updated = {**self._commands, trigger: reply}
        self._write(updated)
        self._commands = updated
        logger.info(f"Command {trigger} set")
        return trigger

    def remove(self, trigger: str) -> bool:
        trigger = normalize_trigger(trigger, self.prefix)
        if trigger not in self._commands:
            return False
        updated = {k: v for k, v in self._commands.items() if k != trigger}
        self._write(updated)
        self._commands = updated
        logger.info(f"Command {trigger} removed")
        return True

    def seed_defaults(self, defaults: Dict[str, str] = DEFAULT_COMMANDS) -> bool:
        """Fill an empty table with ``defaults``. Returns True if seeding happened."""
        if self._commands:
            return False
        for trigger, reply in defaults.items():
            self._commands[normalize_trigger(trigger, self.prefix)] = reply
        self.save()
        logger.info(f"Seeded {len(defaults)} default commands")
        return True

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read commands file {self.path}: {e}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed commands file {self.path}")
            return
        commands: Dict[str, str] = {}
        for key, value in data.items():
            if not value:
                continue
            try:
                commands[normalize_trigger(str(key), self.prefix)] = str(value)
            except ValueError as e:
                logger.warning(f"Skipping command {key!r} in {self.path}: {e}")
        self._commands = commands
        logger.info(f"Loaded {len(self._commands)} commands from {self.path}")

    def save(self) -> None:
        self._write(self._commands)

    def _write(self, commands: Dict[str, str]) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".commands-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(commands, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


def dispatch(text: str, table: CommandTable, prefix: str = COMMAND_PREFIX) -> Optional[str]:
    """
    Return the reply for a chat message, or None when it is not a known command.

    The first word of the trimmed message is the trigger, so ``!help me``
    answers like ``!help``.
    """
    text = (text or "").strip()
    if not text.startswith(prefix):
        return None
    trigger = text.split(maxsplit=1)[0]
    if trigger == prefix:
        return None
    return table.lookup(trigger)


class CommandResponder:
    """Listener event handler that answers chat commands."""

    def __init__(self, table: CommandTable, gateway: DLiveGateway, target: str,
                 bot_username: Optional[str] = None, prefix: str = COMMAND_PREFIX):
        self.table = table
        self.gateway = gateway
        self.target = target
        self.bot_username = bot_username
        self.prefix = prefix

    def _is_own_message(self, sender: Optional[str]) -> bool:
        if not sender or not self.bot_username:
            return False
        return sender.casefold() == self.bot_username.casefold()

    async def __call__(self, event: ChatEvent) -> Optional[str]:
        if not event.is_text:
            return None
        if self._is_own_message(event.sender_username):
            logger.debug("Ignoring message sent by the bot itself")
            return None

        reply = dispatch(event.content, self.table, self.prefix)
        if reply is None:
            return None

        logger.info(f"Command from {event.sender_username or 'unknown'}: {event.content.split()[0]}")
        try:
            await self.gateway.send_message(self.target, reply)
        except GatewayError as e:
            logger.error(f"Reply dropped: status={e.status} body={e.body}")
            return None
        except TokenError as e:
            logger.error(f"Reply dropped, no usable token: {e}")
            return None
        return reply
