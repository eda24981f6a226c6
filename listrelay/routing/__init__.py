"""ClientState routing: token parsing, environment selection, processor registry."""

from listrelay.routing.client_state import (
    ClientStateTokens,
    ForwardConfig,
    ForwardMode,
    parse_forward_mode,
    Token,
    forward_config,
    requests_queue_dispatch,
)
from listrelay.routing.environment import QueueSettings, resolve_queue_settings
from listrelay.routing.registry import ProcessorDescriptor, ProcessorRegistry, token_or_path_matcher

__all__ = [
    "ClientStateTokens",
    "ForwardConfig",
    "ForwardMode",
    "ProcessorDescriptor",
    "ProcessorRegistry",
    "QueueSettings",
    "Token",
    "forward_config",
    "parse_forward_mode",
    "requests_queue_dispatch",
    "resolve_queue_settings",
    "token_or_path_matcher",
]
