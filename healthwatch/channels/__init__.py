"""Channel registry — typed channel + guard definitions from healthwatch.yaml."""

from healthwatch.channels.registry import (
    Channel,
    ChannelConfig,
    ChannelRegistry,
    GuardDef,
    ProbeDefaults,
    channel_to_dict,
    parse_channel,
    parse_config,
)

__all__ = [
    "Channel",
    "ChannelConfig",
    "ChannelRegistry",
    "GuardDef",
    "ProbeDefaults",
    "channel_to_dict",
    "parse_channel",
    "parse_config",
]
