"""
Command Router

Matches incoming text messages against registered command patterns and
invokes the first handler that matches.

Patterns come in three kinds:
- ExactCommand: the first word equals a trigger ("!ping")
- PrefixCommand: anything starting with a prefix; the next word is the name,
  optionally pinned to one command name
- RegexCommand: a regular expression anchored at the start of the message

Arguments are split shell-style, so quoted words stay together. A message
with an unterminated quote still reaches its handler, with parse_error set.
"""

import inspect
import logging
import re
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Pattern, Tuple, Union

from ..exceptions import CommandParseError, HandlerError, RegistrationClosedError
from .events import MessageEvent

logger = logging.getLogger(__name__)

Handler = Callable[..., Union[Any, Awaitable[Any]]]
ErrorHook = Callable[[Any, HandlerError], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class Invocation:
    """
    A matched command.

    Attributes:
        name: Command name that matched
        args: Positional arguments, shell-style tokenized
        raw: Text following the command name, untouched
        parse_error: Why tokenizing failed, or None
    """

    name: str
    args: Tuple[str, ...] = ()
    raw: str = ""
    parse_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.parse_error is None


def tokenize(raw: str) -> Tuple[Tuple[str, ...], Optional[str]]:
    """Split arguments shell-style. Falls back to whitespace splitting on bad quoting."""
    try:
        return tuple(shlex.split(raw)), None
    except ValueError as e:
        error = CommandParseError(raw, str(e))
        logger.debug(f"Router: {error}")
        return tuple(raw.split()), error.reason


class CommandPattern(ABC):
    """Common interface of the pattern variants."""

    @abstractmethod
    def match(self, text: str) -> Optional[Invocation]:
        """Return an Invocation if the text triggers this pattern."""
        pass

    @property
    @abstractmethod
    def display(self) -> str:
        """How the pattern is shown in help output."""
        pass


class ExactCommand(CommandPattern):
    """Matches when the first word of the message equals the trigger."""

    def __init__(self, trigger: str):
        if not trigger or trigger.split() != [trigger]:
            raise ValueError(f"Invalid command trigger: {trigger!r}")
        self.trigger = trigger

    def match(self, text: str) -> Optional[Invocation]:
        parts = text.split(None, 1)
        if not parts or parts[0] != self.trigger:
            return None
        raw = parts[1] if len(parts) > 1 else ""
        args, error = tokenize(raw)
        return Invocation(name=self.trigger, args=args, raw=raw, parse_error=error)

    @property
    def display(self) -> str:
        return self.trigger

    def __repr__(self) -> str:
        return f"ExactCommand({self.trigger!r})"


class PrefixCommand(CommandPattern):
    """
    Matches any message starting with the prefix. The first word after it is
    the name. With a name given, only that command matches, so "!bot " with
    "ping" answers "!bot ping" but not "!bot pingpong".
    """

    def __init__(self, prefix: str, name: Optional[str] = None):
        if not prefix:
            raise ValueError("Prefix must not be empty")
        if name is not None and (not name or name.split() != [name]):
            raise ValueError(f"Invalid command name: {name!r}")
        self.prefix = prefix
        self.name = name

    def match(self, text: str) -> Optional[Invocation]:
        if not text.startswith(self.prefix):
            return None
        parts = text[len(self.prefix):].split(None, 1)
        if not parts or (self.name is not None and parts[0] != self.name):
            return None
        raw = parts[1] if len(parts) > 1 else ""
        args, error = tokenize(raw)
        return Invocation(name=parts[0], args=args, raw=raw, parse_error=error)

    @property
    def display(self) -> str:
        return f"{self.prefix}{self.name or '<command>'}"

    def __repr__(self) -> str:
        if self.name is not None:
            return f"PrefixCommand({self.prefix!r}, {self.name!r})"
        return f"PrefixCommand({self.prefix!r})"


class RegexCommand(CommandPattern):
    """Matches a regular expression at the start of the message. Groups become arguments."""

    def __init__(self, pattern: Union[str, Pattern], name: Optional[str] = None):
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self.name = name or self.pattern.pattern

    def match(self, text: str) -> Optional[Invocation]:
        m = self.pattern.match(text)
        if m is None:
            return None
        args = tuple(group if group is not None else "" for group in m.groups())
        return Invocation(name=self.name, args=args, raw=text[m.end():].strip())

    @property
    def display(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"RegexCommand({self.pattern.pattern!r})"


@dataclass(frozen=True)
class CommandRegistration:
    """A pattern bound to its handler, with help metadata."""

    pattern: CommandPattern
    handler: Handler
    args: Optional[str] = None
    short_help: Optional[str] = None

    @property
    def hidden(self) -> bool:
        """Registrations without help text are left out of the help listing."""
        return self.short_help is None


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of one handler invocation."""

    invocation: Optional[Invocation]
    success: bool
    value: Any = None
    error: Optional[HandlerError] = None


class CommandRouter:
    """Ordered registry of command patterns. First match wins."""

    def __init__(self, on_error: Optional[ErrorHook] = None):
        self.on_error = on_error
        self._registrations: List[CommandRegistration] = []
        self._text_handler: Optional[Handler] = None
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def registrations(self) -> Tuple[CommandRegistration, ...]:
        return tuple(self._registrations)

    def _check_open(self) -> None:
        if self._frozen:
            raise RegistrationClosedError("Commands cannot be registered after the bot has started")

    def register(
        self,
        pattern: CommandPattern,
        handler: Handler,
        args: Optional[str] = None,
        short_help: Optional[str] = None,
    ) -> CommandRegistration:
        """
        Add a handler for a pattern.

        Raises:
            RegistrationClosedError: the router is frozen
        """
        self._check_open()
        registration = CommandRegistration(pattern, handler, args, short_help)
        self._registrations.append(registration)
        logger.debug(f"Router: Registered {pattern!r}")
        return registration

    def register_text_handler(self, handler: Handler) -> None:
        """Set the handler called for messages that match no command."""
        self._check_open()
        self._text_handler = handler

    def freeze(self) -> None:
        self._frozen = True

    def match(self, text: str) -> Optional[Tuple[CommandRegistration, Invocation]]:
        for registration in self._registrations:
            invocation = registration.pattern.match(text)
            if invocation is not None:
                return registration, invocation
        return None

    async def dispatch(self, event: MessageEvent, context: Any) -> Optional[HandlerResult]:
        """
        Route a message to its handler.

        The context is bound to the invocation before the handler sees it.
        Returns None when no command matched and no text handler is set.
        """
        text = event.body.lstrip()
        matched = self.match(text)
        if matched is None:
            if self._text_handler is None:
                return None
            name, handler, invocation = "<text>", self._text_handler, None
        else:
            registration, invocation = matched
            name, handler = invocation.name, registration.handler
            if invocation.parse_error:
                logger.info(f"Router: Bad arguments for '{name}': {invocation.parse_error}")

        bound = context.for_invocation(invocation) if hasattr(context, "for_invocation") else context
        try:
            value = handler(bound)
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            error = HandlerError(name, e)
            logger.warning(f"Router: {error}", exc_info=True)
            await self._report(bound, error)
            return HandlerResult(invocation, success=False, error=error)

        return HandlerResult(invocation, success=True, value=value)

    async def _report(self, context: Any, error: HandlerError) -> None:
        if self.on_error is None:
            return
        try:
            result = self.on_error(context, error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Router: Error hook failed: {e}")

    def help_text(self, title: Optional[str] = None) -> str:
        """Markdown listing of every registration with help text."""
        lines = [title] if title else []
        lines.append("Available commands:")
        for registration in self._registrations:
            if registration.hidden:
                continue
            entry = f"`{registration.pattern.display}"
            if registration.args:
                entry += f" {registration.args}"
            entry += f"` - {registration.short_help}"
            lines.append(entry)
        return "\n".join(lines)
