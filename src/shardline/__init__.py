"""shardline — sharded gateway client with heartbeat keepalive and session resume."""

from shardline.gateway import GatewayInfo, ShardConnection, ShardManager, ShardState

__version__ = "1.0.0"

__all__ = ["GatewayInfo", "ShardConnection", "ShardManager", "ShardState", "__version__"]
