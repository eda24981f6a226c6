"""Processor registry: an ordered list of (matcher, factory) descriptors, first match wins."""

from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from listrelay.routing.client_state import KEY_PROCESSOR, ClientStateTokens
from listrelay.utils.logger import get_logger

if TYPE_CHECKING:
    from listrelay.processors.base import ProcessingContext, Processor

logger = get_logger("listrelay.routing.registry")

Matcher = Callable[[ClientStateTokens, str, Mapping[str, Any] | None], bool]
ProcessorFactory = Callable[["ProcessingContext"], "Processor"]


class ProcessorDescriptor(BaseModel):
    name: str
    matches: Callable[..., bool]
    factory: Callable[..., Any]
    description: str = ""

    model_config = {"frozen": True}


class ProcessorRegistry:
    """Registration order is the tie-break between descriptors that both match."""

    def __init__(self) -> None:
        self._descriptors: list[ProcessorDescriptor] = []

    def register(self, descriptor: ProcessorDescriptor) -> ProcessorDescriptor:
        if any(d.name == descriptor.name for d in self._descriptors):
            raise ValueError(f"Processor already registered: {descriptor.name!r}")
        self._descriptors.append(descriptor)
        logger.debug("registry.processor.registered", processor=descriptor.name)
        return descriptor

    def processor(self, name: str, matches: Matcher, description: str = ""):
        """Decorator registering a factory under name."""

        def decorator(factory: ProcessorFactory) -> ProcessorFactory:
            self.register(
                ProcessorDescriptor(name=name, matches=matches, factory=factory, description=description)
            )
            return factory

        return decorator

    def get(self, name: str) -> ProcessorDescriptor:
        """Return the descriptor for name. Raises ValueError if unknown."""
        for descriptor in self._descriptors:
            if descriptor.name == name:
                return descriptor
        raise ValueError(f"Unknown processor: {name!r}. Registered: {self.names()}")

    def names(self) -> list[str]:
        return [d.name for d in self._descriptors]

    def descriptors(self) -> list[ProcessorDescriptor]:
        return list(self._descriptors)

    def resolve(
        self,
        client_state: ClientStateTokens | str | None,
        resource_path: str = "",
        item: Mapping[str, Any] | None = None,
    ) -> ProcessorDescriptor | None:
        """First descriptor whose matcher returns True; a matcher that raises counts as no match."""
        tokens = (
            client_state
            if isinstance(client_state, ClientStateTokens)
            else ClientStateTokens.parse(client_state)
        )
        for descriptor in self._descriptors:
            try:
                matched = descriptor.matches(tokens, resource_path or "", item)
            except Exception as e:
                logger.warning(
                    "registry.matcher.error",
                    processor=descriptor.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            if matched:
                logger.debug(
                    "registry.processor.resolved",
                    processor=descriptor.name,
                    client_state=tokens.join(),
                    resource=resource_path,
                )
                return descriptor
        logger.debug("registry.processor.none", client_state=tokens.join(), resource=resource_path)
        return None


def token_or_path_matcher(
    processor_values: Iterable[str] = (),
    token_fragments: Iterable[str] = (),
    path_fragments: Iterable[str] = (),
) -> Matcher:
    """Matcher for ``processor:<value>`` tokens, token substrings, or resource path substrings."""
    processor_values = tuple(v.lower() for v in processor_values)
    token_fragments = tuple(f.lower() for f in token_fragments)
    path_fragments = tuple(f.lower() for f in path_fragments)

    def matches(
        tokens: ClientStateTokens,
        resource_path: str,
        item: Mapping[str, Any] | None,
    ) -> bool:
        if any(tokens.has(KEY_PROCESSOR, value) for value in processor_values):
            return True
        if any(tokens.contains(fragment) for fragment in token_fragments):
            return True
        path = (resource_path or "").lower()
        return any(fragment in path for fragment in path_fragments)

    return matches
