"""
gateway/ — Sharded Gateway Client

ShardManager brings up one ShardConnection per shard under the shared
identify rate limit and re-emits every shard's events, tagged with the
shard index, through a subscription bus.
"""

from shardline.gateway.codec import JSON_CODEC, Codec, select_codec
from shardline.gateway.connection import ReadyInfo, ShardConnection, ShardState
from shardline.gateway.events import DEBUG, PAYLOAD, EventBus
from shardline.gateway.info import GatewayInfo, GatewayInfoClient
from shardline.gateway.manager import ShardManager
from shardline.gateway.protocol import GatewayPayload, OpCode
from shardline.gateway.timing import IdentifyLimiter, ShardTimings, SystemClock

__all__ = [
    "Codec",
    "DEBUG",
    "EventBus",
    "GatewayInfo",
    "GatewayInfoClient",
    "GatewayPayload",
    "IdentifyLimiter",
    "JSON_CODEC",
    "OpCode",
    "PAYLOAD",
    "ReadyInfo",
    "ShardConnection",
    "ShardManager",
    "ShardState",
    "ShardTimings",
    "SystemClock",
    "select_codec",
]
