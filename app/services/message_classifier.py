"""Inbound message routing policy.

Decides, before any side effect, whether a delivered message reaches the
conversational pipeline and in which direction.
"""

from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from app.logging_config import get_logger
from app.schemas.webhook import InboundMessage

logger = get_logger("message_classifier")

GROUP_SUFFIX = "@g.us"
AUDIO_TYPES = {"audio", "audiomessage", "voice", "ptt"}
TEXT_TYPES = {"text", "conversation", "extendedtextmessage", "chat"}

ADMIN_COMMANDS = {
    "bot on": "bot_on",
    "bot off": "bot_off",
    "bot status": "bot_status",
}


class Route(str, Enum):
    DROP_DUPLICATE = "drop_duplicate"
    DROP_GROUP = "drop_group"
    DROP_DISABLED = "drop_disabled"
    DROP_INELIGIBLE = "drop_ineligible"
    DROP_UNSUPPORTED = "drop_unsupported"
    ADMIN_COMMAND = "admin_command"
    AUDIO_INCOMING = "audio_incoming"
    AUDIO_OUTGOING = "audio_outgoing"
    TEXT_INCOMING = "text_incoming"


@dataclass
class ActivationPolicy:
    activate_on_receive: bool = True
    activate_on_send: bool = False
    receive_from_numbers: tuple[str, ...] = ()
    send_to_numbers: tuple[str, ...] = ()

    @classmethod
    def from_settings(cls, settings: dict) -> "ActivationPolicy":
        def _numbers(value) -> tuple[str, ...]:
            if not value:
                return ()
            if isinstance(value, str):
                value = value.split(",")
            return tuple(str(item).strip() for item in value if str(item).strip())

        receive = settings.get("activate_on_receive")
        send = settings.get("activate_on_send")
        return cls(
            activate_on_receive=True if receive is None else bool(receive),
            activate_on_send=False if send is None else bool(send),
            receive_from_numbers=_numbers(settings.get("receive_from_numbers")),
            send_to_numbers=_numbers(settings.get("send_to_numbers")),
        )


@dataclass
class Classification:
    route: Route
    remote_number: str
    is_self_message: bool = False
    command: Optional[str] = None

    @property
    def should_process(self) -> bool:
        return self.route in {
            Route.ADMIN_COMMAND,
            Route.AUDIO_INCOMING,
            Route.AUDIO_OUTGOING,
            Route.TEXT_INCOMING,
        }


def normalize_number(value: str | None) -> str:
    """Strip everything but digits (and the JID suffix, if any)."""
    if not value:
        return ""
    text = str(value).split("@", 1)[0].split(":", 1)[0]
    return "".join(ch for ch in text if ch.isdigit())


def is_group_chat(remote_jid: str | None) -> bool:
    return bool(remote_jid) and str(remote_jid).endswith(GROUP_SUFFIX)


def content_kind(message_type: str | None) -> str:
    kind = (message_type or "").strip().lower()
    if kind in AUDIO_TYPES:
        return "audio"
    if kind in TEXT_TYPES:
        return "text"
    return kind or "unknown"


def number_allowed(number: str, allow_list: Iterable[str]) -> bool:
    allowed = [normalize_number(item) for item in allow_list]
    allowed = [item for item in allowed if item]
    if not allowed:
        return True
    return normalize_number(number) in allowed


def classify_message(
    message: InboundMessage,
    *,
    own_number: str | None,
    enabled: bool,
    policy: ActivationPolicy,
) -> Classification:
    """Apply the routing rules in order; the first matching rule wins."""
    remote_number = normalize_number(message.remote_jid)

    if is_group_chat(message.remote_jid):
        return Classification(Route.DROP_GROUP, remote_number)

    own = normalize_number(own_number)
    is_self = bool(message.from_me and own and remote_number == own)

    if is_self:
        command = ADMIN_COMMANDS.get(message.text.strip().lower())
        if command:
            return Classification(Route.ADMIN_COMMAND, remote_number, is_self_message=True, command=command)

    if not enabled:
        return Classification(Route.DROP_DISABLED, remote_number, is_self_message=is_self)

    kind = content_kind(message.message_type)

    if kind == "audio":
        if not message.from_me:
            if policy.activate_on_receive and number_allowed(remote_number, policy.receive_from_numbers):
                return Classification(Route.AUDIO_INCOMING, remote_number)
        elif not is_self:
            if policy.activate_on_send and number_allowed(remote_number, policy.send_to_numbers):
                return Classification(Route.AUDIO_OUTGOING, remote_number)
        return Classification(Route.DROP_INELIGIBLE, remote_number, is_self_message=is_self)

    if kind == "text":
        if not message.from_me and message.text.strip():
            return Classification(Route.TEXT_INCOMING, remote_number)
        return Classification(Route.DROP_INELIGIBLE, remote_number, is_self_message=is_self)

    return Classification(Route.DROP_UNSUPPORTED, remote_number, is_self_message=is_self)


class MessageDeduplicator:
    """Bounded memory of delivered message ids.

    When more than `max_ids` ids are remembered, the oldest half is forgotten.
    """

    def __init__(self, max_ids: int = 500):
        self.max_ids = max(int(max_ids), 2)
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def seen(self, message_id: str | None) -> bool:
        """Return True for a repeat; otherwise remember the id and return False."""
        if not message_id:
            return False
        if message_id in self._seen:
            return True
        self._seen[message_id] = None
        if len(self._seen) > self.max_ids:
            for _ in range(len(self._seen) // 2):
                self._seen.popitem(last=False)
            logger.debug("Dedup cache trimmed", extra={"context": {"remaining": len(self._seen)}})
        return False

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._seen
