"""ClientState routing tokens.

A subscription's clientState is a ``;``-separated list of ``key:value`` tokens, for example
``processor:costco;env:dev;folder:1``. It is parsed once at the boundary into a
``ClientStateTokens`` set and every routing decision downstream reads the typed set.
Tokens are trimmed and lower-cased; the original spelling of each value is kept on
``Token.raw_value`` for the few values whose case matters (queue names, forward URLs).
"""

from typing import Iterator, Literal

from pydantic import BaseModel

from listrelay.utils.logger import get_logger

logger = get_logger("listrelay.routing.client_state")

KEY_PROCESSOR = "processor"
KEY_UIPATH = "uipath"
KEY_ENV = "env"
KEY_FOLDER = "folder"
KEY_ORGANIZATION_UNIT = "organizationunitid"
KEY_FORWARD = "forward"
KEY_MODE = "mode"
KEY_INCLUDE_FIELDS = "includefields"
KEY_EXCLUDE_FIELDS = "excludefields"


class Token:
    """One ``key:value`` token. Equality ignores the original casing."""

    __slots__ = ("key", "value", "raw_value")

    def __init__(self, key: str, value: str = "", raw_value: str = ""):
        self.key = key
        self.value = value
        self.raw_value = raw_value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Token):
            return NotImplemented
        return (self.key, self.value) == (other.key, other.value)

    def __hash__(self) -> int:
        return hash((self.key, self.value))

    def __repr__(self) -> str:
        return f"Token({self.text!r})"

    @property
    def text(self) -> str:
        return f"{self.key}:{self.value}" if self.value else self.key


class ClientStateTokens:
    """Immutable, ordered set of parsed clientState tokens."""

    def __init__(self, tokens: tuple[Token, ...] = ()):
        self._tokens = tuple(tokens)

    @classmethod
    def parse(cls, client_state: str | None) -> "ClientStateTokens":
        if not client_state:
            return cls()
        tokens = []
        for part in client_state.split(";"):
            part = part.strip()
            if not part:
                continue
            key, sep, value = part.partition(":")
            key = key.strip()
            raw_value = value.strip() if sep else ""
            tokens.append(Token(key=key.lower(), value=raw_value.lower(), raw_value=raw_value))
        return cls(tuple(tokens))

    def __iter__(self) -> Iterator[Token]:
        return iter(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)

    def __bool__(self) -> bool:
        return bool(self._tokens)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ClientStateTokens):
            return NotImplemented
        return self._tokens == other._tokens

    def __hash__(self) -> int:
        return hash(self._tokens)

    def __repr__(self) -> str:
        return f"ClientStateTokens({self.join()!r})"

    def get(self, key: str, default: str | None = None) -> str | None:
        """Value of the last token with this key (lower-cased)."""
        token = self.last(key)
        return token.value if token else default

    def get_raw(self, key: str, default: str | None = None) -> str | None:
        """Value of the last token with this key, original casing preserved."""
        token = self.last(key)
        return token.raw_value if token else default

    def first(self, key: str, default: str | None = None) -> str | None:
        key = key.lower()
        for token in self._tokens:
            if token.key == key:
                return token.value
        return default

    def has(self, key: str, value: str | None = None) -> bool:
        key = key.lower()
        for token in self._tokens:
            if token.key == key and (value is None or token.value == value.lower()):
                return True
        return False

    def contains(self, fragment: str) -> bool:
        """True when any token's text contains fragment (case-insensitive)."""
        fragment = fragment.lower()
        return any(fragment in token.text for token in self._tokens)

    def join(self) -> str:
        return ";".join(token.text for token in self._tokens)

    def last(self, key: str) -> Token | None:
        key = key.lower()
        for token in reversed(self._tokens):
            if token.key == key:
                return token
        return None


def requests_queue_dispatch(tokens: ClientStateTokens) -> bool:
    """True when the clientState opts the subscription into UiPath queue dispatch."""
    for token in tokens:
        if token.key == KEY_PROCESSOR and token.value == "uipath":
            return True
        if token.key == KEY_UIPATH and token.value:
            return True
        if token.key == "uipath=true":
            return True
    return False


def queue_name_override(tokens: ClientStateTokens) -> str | None:
    """Queue name from a ``uipath:<QueueName>`` token, original casing kept."""
    token = tokens.last(KEY_UIPATH)
    if token is None or token.value in ("", "enabled", "true"):
        return None
    return token.raw_value


ForwardMode = Literal["simple", "withData", "withChanges"]
FORWARD_MODES: tuple[ForwardMode, ...] = ("simple", "withData", "withChanges")


def parse_forward_mode(value: str | None) -> ForwardMode:
    """Case-insensitive mode lookup; unknown or missing modes fall back to simple."""
    if value:
        for mode in FORWARD_MODES:
            if mode.lower() == value.lower():
                return mode
        logger.warning("routing.forward.unknown_mode", mode=value)
    return "simple"


class ForwardConfig(BaseModel):
    url: str
    mode: ForwardMode = "simple"
    include_fields: list[str] | None = None
    exclude_fields: list[str] | None = None


def field_list(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    names = [name.strip() for name in raw.split(",") if name.strip()]
    return names or None


def forward_config(tokens: ClientStateTokens) -> ForwardConfig | None:
    """Forwarding target and options, or None when no ``forward:`` token is present."""
    url = tokens.get_raw(KEY_FORWARD)
    if not url:
        return None
    if not url.lower().startswith(("http://", "https://")):
        logger.warning("routing.forward.invalid_url", url=url)
        return None
    return ForwardConfig(
        url=url,
        mode=parse_forward_mode(tokens.get_raw(KEY_MODE)),
        include_fields=field_list(tokens.get_raw(KEY_INCLUDE_FIELDS)),
        exclude_fields=field_list(tokens.get_raw(KEY_EXCLUDE_FIELDS)),
    )
